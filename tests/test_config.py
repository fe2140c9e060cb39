import os
import pytest
import tempfile

from src.utils.config import Config

CONFIG = """
sources:
  - name: "Example"
    feed_url: "https://example.com/rss"
    selectors: [".story"]
  - name: "Paused"
    feed_url: "https://paused.example.com/rss"
    enabled: false
    delay_ms: 5000

scraping:
  user_agent: "${TEST_AGGREGATOR_AGENT}"
  timeout_ms: 4000
  delay_ms: 750

extraction:
  min_content_length: 120
"""

class TestConfig:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, 'config.yaml')
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(CONFIG)

    def teardown_method(self):
        for name in os.listdir(self.temp_dir):
            os.unlink(os.path.join(self.temp_dir, name))
        os.rmdir(self.temp_dir)
        os.environ.pop('TEST_AGGREGATOR_AGENT', None)

    def test_env_substitution_from_dotenv(self):
        with open(os.path.join(self.temp_dir, '.env'), 'w') as f:
            f.write("# local overrides\nTEST_AGGREGATOR_AGENT='TestBot/2.0'\n")

        config = Config(self.path)

        assert config.get('scraping.user_agent') == 'TestBot/2.0'

    def test_dotted_lookup_and_sections(self):
        config = Config(self.path)

        assert config.get('extraction.min_content_length') == 120
        assert config.get('extraction.missing', 'fallback') == 'fallback'
        assert config.get_orchestrator_config() == {}
        assert config.get_scraping_config()['timeout_ms'] == 4000

    def test_source_models_apply_defaults(self):
        sources = Config(self.path).get_source_models()

        assert [s.name for s in sources] == ["Example", "Paused"]
        assert sources[0].selectors == [".story"]
        assert sources[0].delay_ms == 750
        assert sources[0].timeout_ms == 4000
        assert sources[0].is_active
        assert not sources[1].is_active
        assert sources[1].delay_ms == 5000

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            Config(os.path.join(self.temp_dir, 'nope.yaml'))

    def test_invalid_yaml(self):
        with open(self.path, 'w') as f:
            f.write("sources: [unclosed\n")

        with pytest.raises(ValueError):
            Config(self.path)
