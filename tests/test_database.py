import pytest
import sqlite3
import tempfile
import os
import zlib
from datetime import datetime, timedelta

from src.storage.database import DatabaseManager
from src.storage.models import (
    Source, ScrapingJob, ScrapedContentRecord, JobEvent,
    JOB_NEW, JOB_SUCCESSFUL, JOB_FAILED, PROCESSING_ARCHIVED,
)

class TestDatabaseManager:
    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db_manager = DatabaseManager(self.temp_db.name)
        self.source_id = self.db_manager.upsert_source(Source(
            name="Test Source",
            domain="example.com",
            feed_url="https://example.com/rss",
            delay_ms=250,
            selectors=[".story"],
        ))

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    def _job(self, job_id="job-1", status=JOB_NEW, triggered_at=None) -> ScrapingJob:
        job = ScrapingJob(id=job_id, status=status, sources_requested=["Test Source"],
                          articles_per_source=5, triggered_at=triggered_at or datetime.now())
        self.db_manager.create_job(job)
        return job

    def _content(self, url, body, job_id=None, created_at=None, language='en') -> int:
        with self.db_manager.transaction() as conn:
            return self.db_manager.insert_content(ScrapedContentRecord(
                source_id=self.source_id,
                job_id=job_id,
                source_url=url,
                normalized_url=url,
                title=f"Title for {url}",
                content=body,
                language=language,
                content_hash=f"hash-{url}",
                quality_score=70,
                extraction_strategy='selector-cascade',
                created_at=created_at,
            ), conn)

    def test_database_initialization(self):
        with self.db_manager.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = [row[0] for row in cursor.fetchall()]

        assert 'sources' in tables
        assert 'scraping_jobs' in tables
        assert 'scraped_content' in tables
        assert 'job_events' in tables

    def test_upsert_and_get_sources(self):
        again = self.db_manager.upsert_source(Source(name="Test Source", delay_ms=900, is_active=False))

        assert again == self.source_id
        assert self.db_manager.get_sources() == []
        assert self.db_manager.get_source_by_name("Test Source") is None

        inactive = self.db_manager.get_source_by_name("Test Source", active_only=False)
        assert inactive.delay_ms == 900

    def test_source_round_trip(self):
        source = self.db_manager.get_source_by_name("Test Source")

        assert source.id == self.source_id
        assert source.selectors == [".story"]
        assert source.respect_robots is True

    def test_job_lifecycle(self):
        self._job()
        started = datetime.now()
        self.db_manager.update_job("job-1", status=JOB_SUCCESSFUL, started_at=started,
                                   completed_at=started + timedelta(seconds=3),
                                   total_extracted=4, total_saved=3)

        job = self.db_manager.get_job("job-1")
        assert job.status == JOB_SUCCESSFUL
        assert job.sources_requested == ["Test Source"]
        assert job.total_saved == 3
        assert job.duration_seconds == 3.0
        assert self.db_manager.get_job("missing") is None

    def test_request_cancel_only_touches_active_jobs(self):
        self._job("running")
        self._job("done", status=JOB_SUCCESSFUL)

        assert self.db_manager.request_cancel("running")
        assert not self.db_manager.request_cancel("done")
        assert not self.db_manager.request_cancel("missing")
        assert self.db_manager.get_job("running").cancel_requested
        assert not self.db_manager.get_job("done").cancel_requested

    def test_list_jobs_newest_first(self):
        self._job("old", triggered_at=datetime.now() - timedelta(hours=1))
        self._job("new", status=JOB_FAILED)

        assert [j.id for j in self.db_manager.list_jobs()] == ["new", "old"]
        assert [j.id for j in self.db_manager.list_jobs(status=JOB_FAILED)] == ["new"]

    def test_unique_source_url(self):
        self._content("https://example.com/a", "Body")

        with pytest.raises(sqlite3.IntegrityError):
            self._content("https://example.com/a", "Other body")

    def test_url_and_fingerprint_lookups(self):
        self._content("https://example.com/a", "Body")

        assert self.db_manager.url_exists("https://example.com/a")
        assert not self.db_manager.url_exists("https://example.com/b")
        assert self.db_manager.fingerprint_exists("hash-https://example.com/a")
        assert not self.db_manager.fingerprint_exists("nope")

    def test_get_content_filters(self):
        self._job()
        self._content("https://example.com/a", "Transit budget approved", job_id="job-1")
        self._content("https://example.com/b", "Weather report", language='de')

        records, total = self.db_manager.get_content(job_id="job-1")
        assert total == 1
        assert records[0].source_name == "Test Source"

        records, total = self.db_manager.get_content(search="weather")
        assert [r.source_url for r in records] == ["https://example.com/b"]

        _, total = self.db_manager.get_content(language='en', source="Test Source")
        assert total == 1

        _, total = self.db_manager.get_content(limit=1)
        assert total == 2

    def test_count_content_by_source(self):
        self._job()
        self._content("https://example.com/a", "A", job_id="job-1")
        self._content("https://example.com/b", "B", job_id="job-1")

        assert self.db_manager.count_content_by_source("job-1") == {self.source_id: 2}

    def test_archive_old_content(self):
        old_id = self._content("https://example.com/old", "Old body", created_at=datetime.now() - timedelta(days=40))
        new_id = self._content("https://example.com/new", "New body")

        assert self.db_manager.archive_old_content(30) == 1

        old = self.db_manager.get_content_by_id(old_id)
        assert old.processing_status == PROCESSING_ARCHIVED
        assert zlib.decompress(old.compressed_payload).decode('utf-8') == "Old body"
        assert self.db_manager.get_content_by_id(new_id).processing_status == 'completed'
        assert self.db_manager.archive_old_content(30) == 0

    def test_events_ordered_and_filtered(self):
        self._job()
        base = datetime.now()
        self.db_manager.add_event(JobEvent(job_id="job-1", severity='info', event_type='lifecycle',
                                           message="second", timestamp=base + timedelta(seconds=1)))
        self.db_manager.add_event(JobEvent(job_id="job-1", severity='warning', event_type='extraction',
                                           message="first", payload={'correlation_id': 'c1'}, timestamp=base))

        events = self.db_manager.get_events("job-1")
        assert [e.message for e in events] == ["first", "second"]
        assert [e.message for e in self.db_manager.get_events("job-1", severity='warning')] == ["first"]
        assert [e.message for e in self.db_manager.get_events("job-1", correlation_id='c1')] == ["first"]
        assert self.db_manager.get_correlated_events('c1')[0].payload['correlation_id'] == 'c1'

    def test_quality_timeline_and_errors(self):
        self._job()
        for score in (90, 40, 70):
            self.db_manager.add_event(JobEvent(job_id="job-1", event_type='extraction', message="x",
                                               payload={'extraction': {'quality_score': score}},
                                               timestamp=datetime.now()))
        self.db_manager.add_event(JobEvent(job_id="job-1", severity='error', event_type='error', message="boom",
                                           payload={'error': {'type': 'FeedUnavailable'}},
                                           timestamp=datetime.now()))
        self.db_manager.add_event(JobEvent(job_id="job-1", severity='warning', event_type='http', message="slow",
                                           payload={'error': {'type': 'timeout'}}, timestamp=datetime.now()))

        quality = self.db_manager.get_extraction_quality("job-1")
        assert quality['count'] == 3
        assert quality['avg_quality'] == pytest.approx(66.7)
        assert quality['high_quality'] == 1
        assert quality['low_quality'] == 1

        timeline = self.db_manager.get_job_timeline("job-1")
        assert [e.message for e in timeline] == ["boom"]

        summary = {s['error_type']: s['count'] for s in self.db_manager.get_error_summary("job-1")}
        assert summary == {'FeedUnavailable': 1, 'timeout': 1}

    def test_prune_events(self):
        self.db_manager.add_event(JobEvent(job_id="job-1", message="old",
                                           timestamp=datetime.now() - timedelta(days=30)))
        self.db_manager.add_event(JobEvent(job_id="job-1", message="recent", timestamp=datetime.now()))

        assert self.db_manager.prune_events(14) == 1
        assert [e.message for e in self.db_manager.get_events("job-1")] == ["recent"]

    def test_dashboard_metrics(self):
        now = datetime.now()
        self._job("a", status=JOB_SUCCESSFUL)
        self.db_manager.update_job("a", started_at=now, completed_at=now + timedelta(seconds=10), total_saved=4)
        self._job("b", status=JOB_FAILED)
        self._job("c")

        metrics = self.db_manager.get_dashboard_metrics()
        assert metrics['jobs_triggered'] == 3
        assert metrics['success_rate'] == 50
        assert metrics['articles_saved'] == 4
        assert metrics['average_job_duration'] == 10.0
        assert metrics['active_jobs'] == 1
        assert metrics['recent_failures'] == 1
