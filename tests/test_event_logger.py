import sqlite3
import tempfile
import os
import pytest
from unittest.mock import Mock

from src.scraper.fetcher import FetchResult
from src.storage.database import DatabaseManager
from src.storage.models import ExtractedArticle, ExtractionFailure, Saved, DuplicateSkipped
from src.utils.event_logger import EventLogger, new_correlation_id

class TestEventLogger:
    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db_manager = DatabaseManager(self.temp_db.name)
        self.events = EventLogger(self.db_manager, snapshot_interval_seconds=3600)

    def teardown_method(self):
        self.events.shutdown()
        os.unlink(self.temp_db.name)

    def test_record_and_read_back(self):
        event_id = self.events.record("job-1", 3, 'info', 'source', "Started source",
                                      {'feed_url': 'https://example.com/rss'}, event_name='source_started')

        assert event_id is not None
        event = self.db_manager.get_events("job-1")[0]
        assert event.source_id == 3
        assert event.payload['event_type'] == 'source'
        assert event.payload['event_name'] == 'source_started'
        assert event.payload['feed_url'] == 'https://example.com/rss'

    def test_events_keep_emission_order(self):
        for i in range(20):
            self.events.lifecycle("job-1", 'step', f"step {i}")

        messages = [e.message for e in self.db_manager.get_events("job-1")]
        assert messages == [f"step {i}" for i in range(20)]

    def test_correlated_chain(self):
        cid = new_correlation_id()
        self.events.http("job-1", 1, cid, FetchResult(url='https://example.com/a', html='<html>', status=200,
                                                      response_ms=12, attempts=1))
        article = ExtractedArticle(url='https://example.com/a', title='A', content='Body', quality_score=55,
                                   strategy='meta-tags')
        self.events.extraction("job-1", 1, cid, article)
        self.events.persistence("job-1", 1, cid, 'https://example.com/a', Saved(7))
        self.events.lifecycle("job-1", 'unrelated', "other")

        chain = self.db_manager.get_correlated_events(cid)
        assert [e.payload['event_name'] for e in chain] == ['http_fetch', 'extraction_completed',
                                                            'article_persisted']
        assert chain[0].payload['http']['status'] == 200
        assert chain[1].payload['extraction']['quality_score'] == 55

    def test_failure_events_carry_error_group(self):
        cid = new_correlation_id()
        self.events.http("job-1", 1, cid, FetchResult(url='https://example.com/a', error='timed out',
                                                      error_type='timeout', attempts=1))
        self.events.extraction("job-1", 1, cid, ExtractionFailure(url='https://example.com/a', reason='empty'))
        self.events.persistence("job-1", 1, cid, 'https://example.com/a', DuplicateSkipped('url', 'seen'))

        summary = {s['error_type']: s['count'] for s in self.db_manager.get_error_summary("job-1")}
        assert summary == {'timeout': 1, 'ExtractionFailure': 1}
        assert self.db_manager.get_events("job-1", severity='warning')[0].payload['error']['type'] == 'timeout'

    def test_storage_failure_is_swallowed(self):
        db = Mock()
        db.add_event.side_effect = sqlite3.OperationalError("database is locked")
        events = EventLogger(db, snapshot_interval_seconds=0)

        assert events.record("job-1", None, 'info', 'lifecycle', "hello") is None

    def test_unknown_severity_rejected(self):
        with pytest.raises(ValueError):
            self.events.record("job-1", None, 'fatal', 'lifecycle', "nope")

    def test_ticker_follows_active_jobs(self):
        assert not self.events.ticker_running

        self.events.job_started("job-1")
        self.events.job_started("job-2")
        assert self.events.ticker_running

        self.events.job_finished("job-1")
        assert self.events.ticker_running

        self.events.job_finished("job-2")
        assert not self.events.ticker_running

    def test_snapshot_recorded_for_each_active_job(self):
        self.events.job_started("job-1")
        self.events.job_started("job-2")

        self.events.record_snapshot()

        for job_id in ("job-1", "job-2"):
            snapshots = self.db_manager.get_events(job_id, event_type='performance')
            assert len(snapshots) == 1
            perf = snapshots[0].payload['perf']
            assert perf['active_jobs'] == 2
            assert 'mem_mb' in perf
            assert perf['active_reqs'] >= 0

    def test_disabled_ticker(self):
        events = EventLogger(self.db_manager, snapshot_interval_seconds=0)
        events.job_started("job-1")

        assert not events.ticker_running
        events.job_finished("job-1")
