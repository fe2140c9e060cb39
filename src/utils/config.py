import yaml
import os
import re
from typing import Dict, Any, List

from ..storage.models import Source

class Config:
    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = config_path
        self._load_env_file()
        self._config = self._load_config() or {}

    def _load_env_file(self):
        """Load KEY=value pairs from a .env file next to the config file"""
        env_path = os.path.join(os.path.dirname(self.config_path), '.env')
        if not os.path.exists(env_path):
            return
        with open(env_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"\''))

    def _load_config(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                config_content = self._substitute_env_vars(file.read())
                return yaml.safe_load(config_content)
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Error parsing YAML configuration: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Replace ${VAR_NAME} with environment variable values"""
        def replace_var(match):
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r'\$\{([^}]+)\}', replace_var, content)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def get_sources(self) -> List[Dict[str, Any]]:
        return self.get('sources', []) or []

    def get_source_models(self) -> List[Source]:
        scraping = self.get_scraping_config()
        sources = []
        for entry in self.get_sources():
            sources.append(Source(
                name=entry['name'],
                domain=entry.get('domain', ''),
                feed_url=entry.get('feed_url', entry.get('rss_url', '')),
                respect_robots=entry.get('respect_robots', True),
                delay_ms=entry.get('delay_ms', scraping.get('delay_ms', 1000)),
                user_agent=entry.get('user_agent', ''),
                timeout_ms=entry.get('timeout_ms', scraping.get('timeout_ms', 10000)),
                is_active=entry.get('enabled', True),
                selectors=list(entry.get('selectors', [])),
            ))
        return sources

    def get_scraping_config(self) -> Dict[str, Any]:
        return self.get('scraping', {}) or {}

    def get_extraction_config(self) -> Dict[str, Any]:
        return self.get('extraction', {}) or {}

    def get_orchestrator_config(self) -> Dict[str, Any]:
        return self.get('orchestrator', {}) or {}

    def get_logging_config(self) -> Dict[str, Any]:
        return self.get('logging', {}) or {}

    def get_database_config(self) -> Dict[str, Any]:
        return self.get('database', {}) or {}

    def get_web_config(self) -> Dict[str, Any]:
        return self.get('web', {}) or {}

    def get_scheduling_config(self) -> Dict[str, Any]:
        return self.get('scheduling', {}) or {}

def get_config() -> Config:
    config_path = os.getenv('CONFIG_PATH', 'config.yaml')
    return Config(config_path)
