import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, Any, Optional, Union

import psutil
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..storage.models import (
    JobEvent, SEVERITIES, EVENT_TYPES,
    ExtractedArticle, ExtractionFailure, Saved, DuplicateSkipped, SaveFailure,
)
from ..scraper.throttle import active_requests

LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

def new_correlation_id() -> str:
    return uuid.uuid4().hex

class EventLogger:
    """Structured, queryable job events.

    ``record`` never raises because of storage problems; a failed write is
    logged and dropped. Writes are serialized so that, per job, insertion
    order and timestamp order agree.

    The logger also owns the resource snapshot ticker, which runs only
    while at least one job is active.
    """

    SNAPSHOT_JOB_ID = 'resource_snapshot'

    def __init__(self, db_manager, snapshot_interval_seconds: int = 30):
        self.db_manager = db_manager
        self.snapshot_interval_seconds = snapshot_interval_seconds
        self.logger = logging.getLogger('events')

        self._write_lock = threading.Lock()
        self._jobs_lock = threading.Lock()
        self._active_jobs = set()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._process = psutil.Process()

    def record(self, job_id: Optional[str], source_id: Optional[int], severity: str, event_type: str,
               message: str, payload: Optional[Dict[str, Any]] = None, event_name: Optional[str] = None,
               correlation_id: Optional[str] = None) -> Optional[int]:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        data = {'event_type': event_type, 'event_name': event_name or event_type}
        if correlation_id:
            data['correlation_id'] = correlation_id
        data.update(payload or {})

        self.logger.log(LEVELS[severity], f"[{(job_id or '-')[:8]}] {message}")

        with self._write_lock:
            event = JobEvent(
                job_id=job_id,
                source_id=source_id,
                severity=severity,
                event_type=event_type,
                message=message,
                payload=data,
                timestamp=datetime.now(),
            )
            try:
                return self.db_manager.add_event(event)
            except Exception as e:
                self.logger.error(f"Failed to store {event_type} event for job {job_id}: {e}")
                return None

    # Typed helpers

    def lifecycle(self, job_id: str, event_name: str, message: str, severity: str = 'info',
                  **data) -> Optional[int]:
        return self.record(job_id, None, severity, 'lifecycle', message, data, event_name=event_name)

    def phase(self, job_id: str, phase: str, previous: Optional[str] = None) -> Optional[int]:
        return self.lifecycle(job_id, 'phase_transition', f"Phase: {phase}", phase=phase, previous_phase=previous)

    def source(self, job_id: str, source_id: Optional[int], event_name: str, message: str,
               severity: str = 'info', correlation_id: Optional[str] = None, **data) -> Optional[int]:
        return self.record(job_id, source_id, severity, 'source', message, data,
                           event_name=event_name, correlation_id=correlation_id)

    def http(self, job_id: str, source_id: Optional[int], correlation_id: str, fetch_result) -> Optional[int]:
        payload = {'http': fetch_result.to_payload()}
        if fetch_result.ok:
            return self.record(job_id, source_id, 'debug', 'http',
                               f"GET {fetch_result.url} -> {fetch_result.status} ({fetch_result.response_ms}ms)",
                               payload, event_name='http_fetch', correlation_id=correlation_id)

        payload['error'] = {'type': fetch_result.error_type or 'http_error', 'message': fetch_result.error}
        return self.record(job_id, source_id, 'warning', 'http',
                           f"GET {fetch_result.url} failed: {fetch_result.error}",
                           payload, event_name='http_fetch_failed', correlation_id=correlation_id)

    def extraction(self, job_id: str, source_id: Optional[int], correlation_id: str,
                   outcome: Union[ExtractedArticle, ExtractionFailure],
                   error_type: str = 'ExtractionFailure') -> Optional[int]:
        if isinstance(outcome, ExtractedArticle):
            payload = {
                'url': outcome.url,
                'extraction': {
                    'strategy': outcome.strategy,
                    'quality_score': outcome.quality_score,
                    'content_length': len(outcome.content),
                    'paragraphs': outcome.paragraph_count,
                    'language': outcome.language,
                },
            }
            if outcome.traces is not None:
                payload['traces'] = [trace.__dict__ for trace in outcome.traces]
            return self.record(job_id, source_id, 'info', 'extraction',
                               f"Extracted '{outcome.title[:60]}' via {outcome.strategy} "
                               f"(quality {outcome.quality_score})",
                               payload, event_name='extraction_completed', correlation_id=correlation_id)

        payload = {
            'url': outcome.url,
            'extraction': {'strategies_tried': outcome.strategies_tried},
            'error': {'type': error_type, 'message': outcome.reason},
        }
        if outcome.traces is not None:
            payload['traces'] = [trace.__dict__ for trace in outcome.traces]
        return self.record(job_id, source_id, 'warning', 'extraction',
                           f"Extraction failed for {outcome.url}: {outcome.reason}",
                           payload, event_name='extraction_failed', correlation_id=correlation_id)

    def persistence(self, job_id: str, source_id: Optional[int], correlation_id: str, url: str,
                    outcome: Union[Saved, DuplicateSkipped, SaveFailure]) -> Optional[int]:
        if isinstance(outcome, Saved):
            return self.record(job_id, source_id, 'info', 'persistence', f"Saved {url} as #{outcome.record_id}",
                               {'url': url, 'record_id': outcome.record_id},
                               event_name='article_persisted', correlation_id=correlation_id)
        if isinstance(outcome, DuplicateSkipped):
            return self.record(job_id, source_id, 'info', 'persistence',
                               f"Skipped duplicate ({outcome.duplicate_type}): {url}",
                               {'url': url, 'duplicate_type': outcome.duplicate_type, 'reason': outcome.reason},
                               event_name='duplicate_skipped', correlation_id=correlation_id)
        return self.record(job_id, source_id, 'error', 'persistence', f"Save failed for {url}: {outcome.message}",
                           {'url': url, 'error': {'type': outcome.error_type, 'message': outcome.message}},
                           event_name='save_failed', correlation_id=correlation_id)

    def error(self, job_id: str, source_id: Optional[int], error_type: str, message: str,
              severity: str = 'error', event_name: str = 'error',
              correlation_id: Optional[str] = None, **data) -> Optional[int]:
        payload = dict(data)
        payload['error'] = {'type': error_type, 'message': message}
        return self.record(job_id, source_id, severity, 'error', message, payload,
                           event_name=event_name, correlation_id=correlation_id)

    # Resource snapshots

    def snapshot(self) -> Dict[str, Any]:
        with self._jobs_lock:
            active_jobs = len(self._active_jobs)
        try:
            memory = self._process.memory_info().rss / (1024 * 1024)
            cpu = self._process.cpu_percent(interval=None)
        except psutil.Error as e:
            self.logger.debug(f"Could not read process stats: {e}")
            memory, cpu = None, None
        return {
            'mem_mb': round(memory, 1) if memory is not None else None,
            'cpu_pct': cpu,
            'active_reqs': active_requests.value,
            'active_jobs': active_jobs,
        }

    def record_snapshot(self):
        perf = self.snapshot()
        with self._jobs_lock:
            jobs = list(self._active_jobs)
        for job_id in jobs:
            self.record(job_id, None, 'debug', 'performance',
                        f"Resources: {perf['mem_mb']}MB, {perf['active_reqs']} active requests",
                        {'perf': perf}, event_name='resource_snapshot')

    def job_started(self, job_id: str):
        with self._jobs_lock:
            if not self._active_jobs:
                self._start_ticker()
            self._active_jobs.add(job_id)

    def job_finished(self, job_id: str):
        with self._jobs_lock:
            self._active_jobs.discard(job_id)
            if not self._active_jobs:
                self._stop_ticker()

    @property
    def ticker_running(self) -> bool:
        return self._scheduler is not None and \
            self._scheduler.get_job(self.SNAPSHOT_JOB_ID) is not None

    def _start_ticker(self):
        if self.snapshot_interval_seconds <= 0:
            return
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
            self._scheduler.start()
        self._scheduler.add_job(
            self.record_snapshot,
            IntervalTrigger(seconds=self.snapshot_interval_seconds),
            id=self.SNAPSHOT_JOB_ID,
            name='Record resource snapshot',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _stop_ticker(self):
        if self._scheduler is not None and self._scheduler.get_job(self.SNAPSHOT_JOB_ID):
            self._scheduler.remove_job(self.SNAPSHOT_JOB_ID)

    def shutdown(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
