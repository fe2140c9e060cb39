import os
import tempfile

from src.scraper.deduplicator import Deduplicator, content_fingerprint, normalize_url
from src.storage.database import DatabaseManager
from src.storage.models import ScrapedContentRecord, Source

class TestNormalization:
    def test_fingerprint_ignores_whitespace_and_case(self):
        a = content_fingerprint("The Council   met\n\non Tuesday.")
        b = content_fingerprint("the council met on tuesday.")

        assert a == b
        assert len(a) == 64

    def test_fingerprint_differs_for_different_text(self):
        assert content_fingerprint("one story") != content_fingerprint("another story")

    def test_normalize_url_drops_tracking(self):
        url = "HTTPS://Example.com/news/story/?utm_source=rss&id=7&fbclid=abc#comments"

        assert normalize_url(url) == "https://example.com/news/story?id=7"

    def test_normalize_url_leaves_relative_values_alone(self):
        assert normalize_url("not a url") == "not a url"

class TestDeduplicator:
    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db_manager = DatabaseManager(self.temp_db.name)
        self.deduplicator = Deduplicator(self.db_manager)

        source_id = self.db_manager.upsert_source(Source(name='Example'))
        self.fingerprint = content_fingerprint("Stored body text")
        with self.db_manager.transaction() as conn:
            self.db_manager.insert_content(ScrapedContentRecord(
                source_id=source_id,
                source_url='https://example.com/story',
                normalized_url='https://example.com/story',
                title='Stored',
                content='Stored body text',
                content_hash=self.fingerprint,
            ), conn)

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    def test_new_url_and_content(self):
        assert self.deduplicator.check('https://example.com/other', content_fingerprint("fresh")) is None

    def test_url_checked_before_content(self):
        result = self.deduplicator.check('https://example.com/story', self.fingerprint)

        assert result.duplicate_type == 'url'

    def test_tracking_variant_of_known_url(self):
        result = self.deduplicator.check('https://example.com/story/?utm_campaign=x')

        assert result.duplicate_type == 'url'

    def test_same_content_under_new_url(self):
        result = self.deduplicator.check('https://example.com/mirror', self.fingerprint)

        assert result.duplicate_type == 'content'
        assert self.deduplicator.is_duplicate(self.fingerprint)
