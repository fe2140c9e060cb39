import sqlite3
import os
import json
import zlib
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Tuple
from contextlib import contextmanager

from .models import (
    Source, ScrapingJob, ScrapedContentRecord, JobEvent,
    JOB_IN_PROGRESS, JOB_NEW, JOB_FAILED, JOB_SUCCESSFUL, JOB_PARTIAL,
    PROCESSING_ARCHIVED, PROCESSING_COMPLETED,
)

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='microseconds') if value else None

def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None

class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_database()

    def _init_database(self):
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT UNIQUE NOT NULL,
                    domain TEXT,
                    feed_url TEXT,
                    respect_robots BOOLEAN DEFAULT TRUE,
                    delay_ms INTEGER DEFAULT 1000,
                    user_agent TEXT,
                    timeout_ms INTEGER DEFAULT 10000,
                    selectors TEXT,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS scraping_jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    sources_requested TEXT NOT NULL,
                    articles_per_source INTEGER NOT NULL,
                    enable_tracking BOOLEAN DEFAULT FALSE,
                    triggered_at TIMESTAMP NOT NULL,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    total_extracted INTEGER DEFAULT 0,
                    total_saved INTEGER DEFAULT 0,
                    total_errors INTEGER DEFAULT 0,
                    cancel_requested BOOLEAN DEFAULT FALSE
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS scraped_content (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id INTEGER NOT NULL,
                    job_id TEXT,
                    source_url TEXT UNIQUE NOT NULL,
                    normalized_url TEXT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    author TEXT,
                    publication_date TIMESTAMP,
                    language TEXT,
                    content_hash TEXT UNIQUE NOT NULL,
                    quality_score INTEGER,
                    extraction_strategy TEXT,
                    processing_status TEXT NOT NULL DEFAULT 'completed',
                    compressed_payload BLOB,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (source_id) REFERENCES sources (id),
                    FOREIGN KEY (job_id) REFERENCES scraping_jobs (id) ON DELETE SET NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    source_id INTEGER,
                    severity TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    payload TEXT,
                    correlation_id TEXT,
                    timestamp TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_jobs_status ON scraping_jobs(status)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_jobs_triggered ON scraping_jobs(triggered_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_source ON scraped_content(source_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_job ON scraped_content(job_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_normalized_url ON scraped_content(normalized_url)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_created ON scraped_content(created_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_job ON job_events(job_id, timestamp)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_correlation ON job_events(correlation_id)')

            conn.commit()

    @contextmanager
    def get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Single write transaction; the write lock is taken up front."""
        with self.get_connection() as conn:
            conn.isolation_level = None
            conn.execute('BEGIN IMMEDIATE')
            try:
                yield conn
            except BaseException:
                conn.execute('ROLLBACK')
                raise
            else:
                conn.execute('COMMIT')

    # Sources

    def upsert_source(self, source: Source) -> int:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO sources
                (name, domain, feed_url, respect_robots, delay_ms, user_agent, timeout_ms, selectors, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    domain = excluded.domain,
                    feed_url = excluded.feed_url,
                    respect_robots = excluded.respect_robots,
                    delay_ms = excluded.delay_ms,
                    user_agent = excluded.user_agent,
                    timeout_ms = excluded.timeout_ms,
                    selectors = excluded.selectors,
                    is_active = excluded.is_active
            ''', (
                source.name, source.domain, source.feed_url, source.respect_robots,
                source.delay_ms, source.user_agent, source.timeout_ms,
                json.dumps(source.selectors), source.is_active
            ))
            conn.commit()
            cursor.execute('SELECT id FROM sources WHERE name = ?', (source.name,))
            return cursor.fetchone()[0]

    def get_sources(self, active_only: bool = True) -> List[Source]:
        with self.get_connection() as conn:
            query = "SELECT * FROM sources"
            if active_only:
                query += " WHERE is_active = TRUE"
            query += " ORDER BY name"
            return [self._row_to_source(row) for row in conn.execute(query).fetchall()]

    def get_source_by_name(self, name: str, active_only: bool = True) -> Optional[Source]:
        with self.get_connection() as conn:
            query = "SELECT * FROM sources WHERE name = ?"
            if active_only:
                query += " AND is_active = TRUE"
            row = conn.execute(query, (name,)).fetchone()
            return self._row_to_source(row) if row else None

    def _row_to_source(self, row) -> Source:
        return Source(
            id=row['id'],
            name=row['name'],
            domain=row['domain'] or '',
            feed_url=row['feed_url'] or '',
            respect_robots=bool(row['respect_robots']),
            delay_ms=row['delay_ms'],
            user_agent=row['user_agent'] or '',
            timeout_ms=row['timeout_ms'],
            is_active=bool(row['is_active']),
            selectors=json.loads(row['selectors']) if row['selectors'] else [],
        )

    # Jobs

    def create_job(self, job: ScrapingJob) -> str:
        with self.get_connection() as conn:
            conn.execute('''
                INSERT INTO scraping_jobs
                (id, status, sources_requested, articles_per_source, enable_tracking, triggered_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                job.id, job.status, json.dumps(job.sources_requested), job.articles_per_source,
                job.enable_tracking, _ts(job.triggered_at or datetime.now())
            ))
            conn.commit()
        return job.id

    def update_job(self, job_id: str, **fields):
        if not fields:
            return
        columns = []
        params = []
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = _ts(value)
            columns.append(f"{key} = ?")
            params.append(value)
        params.append(job_id)

        with self.get_connection() as conn:
            conn.execute(f"UPDATE scraping_jobs SET {', '.join(columns)} WHERE id = ?", params)
            conn.commit()

    def request_cancel(self, job_id: str) -> bool:
        """Flags an active job for cancellation; terminal jobs are left untouched."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE scraping_jobs SET cancel_requested = 1 WHERE id = ? AND status IN (?, ?)",
                (job_id, JOB_NEW, JOB_IN_PROGRESS)
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_job(self, job_id: str) -> Optional[ScrapingJob]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM scraping_jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(self, status: Optional[str] = None, limit: int = 20, offset: int = 0) -> List[ScrapingJob]:
        with self.get_connection() as conn:
            query = "SELECT * FROM scraping_jobs"
            params: List[Any] = []
            if status:
                query += " WHERE status = ?"
                params.append(status)
            query += " ORDER BY triggered_at DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            return [self._row_to_job(row) for row in conn.execute(query, params).fetchall()]

    def _row_to_job(self, row) -> ScrapingJob:
        return ScrapingJob(
            id=row['id'],
            status=row['status'],
            sources_requested=json.loads(row['sources_requested']),
            articles_per_source=row['articles_per_source'],
            enable_tracking=bool(row['enable_tracking']),
            triggered_at=_dt(row['triggered_at']),
            started_at=_dt(row['started_at']),
            completed_at=_dt(row['completed_at']),
            total_extracted=row['total_extracted'],
            total_saved=row['total_saved'],
            total_errors=row['total_errors'],
            cancel_requested=bool(row['cancel_requested']),
        )

    def get_dashboard_metrics(self) -> Dict[str, Any]:
        week_ago = _ts(datetime.now() - timedelta(days=7))
        day_ago = _ts(datetime.now() - timedelta(days=1))
        with self.get_connection() as conn:
            row = conn.execute('''
                SELECT
                    COUNT(*) AS jobs_triggered,
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS successful,
                    SUM(CASE WHEN status IN (?, ?, ?) THEN 1 ELSE 0 END) AS finished,
                    SUM(total_saved) AS articles_saved,
                    SUM(CASE WHEN status IN (?, ?) THEN 1 ELSE 0 END) AS active_jobs,
                    SUM(CASE WHEN status = ? AND triggered_at > ? THEN 1 ELSE 0 END) AS recent_failures
                FROM scraping_jobs
                WHERE triggered_at > ?
            ''', (JOB_SUCCESSFUL, JOB_SUCCESSFUL, JOB_PARTIAL, JOB_FAILED, JOB_NEW, JOB_IN_PROGRESS,
                  JOB_FAILED, day_ago, week_ago)).fetchone()

            durations = conn.execute('''
                SELECT started_at, completed_at FROM scraping_jobs
                WHERE triggered_at > ? AND started_at IS NOT NULL AND completed_at IS NOT NULL
            ''', (week_ago,)).fetchall()

        seconds = [(_dt(r['completed_at']) - _dt(r['started_at'])).total_seconds() for r in durations]
        finished = row['finished'] or 0
        return {
            'jobs_triggered': row['jobs_triggered'] or 0,
            'success_rate': round((row['successful'] or 0) / finished * 100) if finished else 0,
            'articles_saved': row['articles_saved'] or 0,
            'average_job_duration': round(sum(seconds) / len(seconds), 1) if seconds else 0,
            'active_jobs': row['active_jobs'] or 0,
            'recent_failures': row['recent_failures'] or 0,
        }

    # Content

    def url_exists(self, url: str, normalized_url: Optional[str] = None, conn=None) -> bool:
        normalized_url = normalized_url or url
        query = '''
            SELECT 1 FROM scraped_content
            WHERE source_url IN (?, ?) OR normalized_url = ?
            LIMIT 1
        '''
        params = (url, normalized_url, normalized_url)
        if conn is not None:
            return conn.execute(query, params).fetchone() is not None
        with self.get_connection() as own:
            return own.execute(query, params).fetchone() is not None

    def fingerprint_exists(self, fingerprint: str, conn=None) -> bool:
        query = 'SELECT 1 FROM scraped_content WHERE content_hash = ? LIMIT 1'
        if conn is not None:
            return conn.execute(query, (fingerprint,)).fetchone() is not None
        with self.get_connection() as own:
            return own.execute(query, (fingerprint,)).fetchone() is not None

    def insert_content(self, record: ScrapedContentRecord, conn) -> int:
        cursor = conn.execute('''
            INSERT INTO scraped_content
            (source_id, job_id, source_url, normalized_url, title, content, author, publication_date,
             language, content_hash, quality_score, extraction_strategy, processing_status,
             compressed_payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            record.source_id, record.job_id, record.source_url, record.normalized_url,
            record.title, record.content, record.author, _ts(record.publication_date),
            record.language, record.content_hash, record.quality_score,
            record.extraction_strategy, record.processing_status, record.compressed_payload,
            _ts(record.created_at or datetime.now())
        ))
        return cursor.lastrowid

    def get_content(self, source: Optional[str] = None, language: Optional[str] = None,
                    status: Optional[str] = None, search: Optional[str] = None,
                    job_id: Optional[str] = None, limit: int = 50,
                    offset: int = 0) -> Tuple[List[ScrapedContentRecord], int]:
        where = []
        params: List[Any] = []
        if source:
            where.append("s.name = ?")
            params.append(source)
        if language:
            where.append("c.language = ?")
            params.append(language)
        if status:
            where.append("c.processing_status = ?")
            params.append(status)
        if job_id:
            where.append("c.job_id = ?")
            params.append(job_id)
        if search:
            where.append("(c.title LIKE ? OR c.content LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])

        base = "FROM scraped_content c JOIN sources s ON s.id = c.source_id"
        if where:
            base += " WHERE " + " AND ".join(where)

        with self.get_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) {base}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT c.*, s.name AS source_name {base} ORDER BY c.created_at DESC, c.id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
        return [self._row_to_content(row) for row in rows], total

    def get_content_by_id(self, content_id: int) -> Optional[ScrapedContentRecord]:
        with self.get_connection() as conn:
            row = conn.execute('''
                SELECT c.*, s.name AS source_name
                FROM scraped_content c JOIN sources s ON s.id = c.source_id
                WHERE c.id = ?
            ''', (content_id,)).fetchone()
            return self._row_to_content(row) if row else None

    def count_content_by_source(self, job_id: str) -> Dict[int, int]:
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT source_id, COUNT(*) AS count FROM scraped_content
                WHERE job_id = ? GROUP BY source_id
            ''', (job_id,)).fetchall()
            return {row['source_id']: row['count'] for row in rows}

    def get_content_count(self) -> int:
        with self.get_connection() as conn:
            return conn.execute('SELECT COUNT(*) FROM scraped_content').fetchone()[0]

    def _row_to_content(self, row) -> ScrapedContentRecord:
        return ScrapedContentRecord(
            id=row['id'],
            source_id=row['source_id'],
            job_id=row['job_id'],
            source_url=row['source_url'],
            normalized_url=row['normalized_url'] or '',
            title=row['title'],
            content=row['content'],
            author=row['author'] or '',
            publication_date=_dt(row['publication_date']),
            language=row['language'] or '',
            content_hash=row['content_hash'],
            quality_score=row['quality_score'] or 0,
            extraction_strategy=row['extraction_strategy'] or '',
            processing_status=row['processing_status'],
            compressed_payload=row['compressed_payload'],
            created_at=_dt(row['created_at']),
            source_name=row['source_name'] if 'source_name' in row.keys() else '',
        )

    def archive_old_content(self, retention_days: int) -> int:
        """Moves records past retention to ``archived``, compressing the body into the payload."""
        cutoff = _ts(datetime.now() - timedelta(days=retention_days))
        archived = 0
        with self.transaction() as conn:
            rows = conn.execute('''
                SELECT id, content FROM scraped_content
                WHERE created_at < ? AND processing_status = ?
            ''', (cutoff, PROCESSING_COMPLETED)).fetchall()
            for row in rows:
                conn.execute('''
                    UPDATE scraped_content
                    SET processing_status = ?, compressed_payload = ?
                    WHERE id = ?
                ''', (PROCESSING_ARCHIVED, zlib.compress(row['content'].encode('utf-8'), 6), row['id']))
                archived += 1
        return archived

    # Events

    def add_event(self, event: JobEvent) -> int:
        with self.get_connection() as conn:
            cursor = conn.execute('''
                INSERT INTO job_events
                (job_id, source_id, severity, event_type, message, payload, correlation_id, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                event.job_id, event.source_id, event.severity, event.event_type, event.message,
                json.dumps(event.payload, default=str), event.correlation_id,
                _ts(event.timestamp or datetime.now())
            ))
            conn.commit()
            return cursor.lastrowid

    def get_events(self, job_id: str, event_type: Optional[str] = None, severity: Optional[str] = None,
                   correlation_id: Optional[str] = None, source_id: Optional[int] = None,
                   limit: int = 500, offset: int = 0) -> List[JobEvent]:
        query = "SELECT * FROM job_events WHERE job_id = ?"
        params: List[Any] = [job_id]
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        if correlation_id:
            query += " AND correlation_id = ?"
            params.append(correlation_id)
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        query += " ORDER BY timestamp, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.get_connection() as conn:
            return [self._row_to_event(row) for row in conn.execute(query, params).fetchall()]

    def get_correlated_events(self, correlation_id: str) -> List[JobEvent]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM job_events WHERE correlation_id = ? ORDER BY timestamp, id",
                (correlation_id,)
            ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def get_extraction_quality(self, job_id: str) -> Dict[str, Any]:
        with self.get_connection() as conn:
            row = conn.execute('''
                SELECT
                    COUNT(*) AS count,
                    AVG(score) AS avg_quality,
                    MIN(score) AS min_quality,
                    MAX(score) AS max_quality,
                    SUM(CASE WHEN score >= 80 THEN 1 ELSE 0 END) AS high_quality,
                    SUM(CASE WHEN score < 50 THEN 1 ELSE 0 END) AS low_quality
                FROM (
                    SELECT CAST(json_extract(payload, '$.extraction.quality_score') AS INTEGER) AS score
                    FROM job_events
                    WHERE job_id = ? AND event_type = 'extraction'
                      AND json_extract(payload, '$.extraction.quality_score') IS NOT NULL
                )
            ''', (job_id,)).fetchone()
        return {
            'count': row['count'] or 0,
            'avg_quality': round(row['avg_quality'], 1) if row['avg_quality'] is not None else None,
            'min_quality': row['min_quality'],
            'max_quality': row['max_quality'],
            'high_quality': row['high_quality'] or 0,
            'low_quality': row['low_quality'] or 0,
        }

    def get_job_timeline(self, job_id: str) -> List[JobEvent]:
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT * FROM job_events
                WHERE job_id = ? AND event_type IN ('lifecycle', 'source', 'error')
                ORDER BY timestamp, id
            ''', (job_id,)).fetchall()
            return [self._row_to_event(row) for row in rows]

    def get_error_summary(self, job_id: str) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT json_extract(payload, '$.error.type') AS error_type, COUNT(*) AS count
                FROM job_events
                WHERE job_id = ?
                  AND json_extract(payload, '$.error.type') IS NOT NULL
                GROUP BY error_type
                ORDER BY count DESC
            ''', (job_id,)).fetchall()
            return [{'error_type': row['error_type'], 'count': row['count']} for row in rows]

    def prune_events(self, retention_days: int) -> int:
        cutoff = _ts(datetime.now() - timedelta(days=retention_days))
        with self.get_connection() as conn:
            cursor = conn.execute('DELETE FROM job_events WHERE timestamp < ?', (cutoff,))
            conn.commit()
            return cursor.rowcount

    def _row_to_event(self, row) -> JobEvent:
        return JobEvent(
            id=row['id'],
            job_id=row['job_id'],
            source_id=row['source_id'],
            severity=row['severity'],
            event_type=row['event_type'],
            message=row['message'],
            payload=json.loads(row['payload']) if row['payload'] else {},
            timestamp=_dt(row['timestamp']),
        )
