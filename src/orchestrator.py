import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, Future, as_completed
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

from .storage.database import DatabaseManager
from .storage.models import (
    Source, ScrapingJob, SourceResult, SourcePersistenceResult,
    JOB_NEW, JOB_IN_PROGRESS, JOB_SUCCESSFUL, JOB_PARTIAL, JOB_FAILED, JOB_CANCELLED,
)
from .scraper.errors import InvalidTriggerRequest

SOURCE_SUCCEEDED = 'succeeded'
SOURCE_DUPLICATE_ONLY = 'duplicate_only'
SOURCE_DEGRADED = 'degraded'
SOURCE_FAILED = 'failed'

SourceOutcome = Tuple[SourceResult, SourcePersistenceResult]

def classify_source(result: SourceResult, persisted: SourcePersistenceResult) -> str:
    """Outcome of one source for job status purposes.

    A source whose candidates were all already stored is benign, not failed.
    """
    if persisted.saved_count > 0:
        return SOURCE_DEGRADED if persisted.save_failures else SOURCE_SUCCEEDED
    if persisted.duplicates_skipped > 0 and not persisted.save_failures and not result.error:
        return SOURCE_DUPLICATE_ONLY
    return SOURCE_FAILED

def compute_job_status(source_outcomes: List[str]) -> str:
    if not source_outcomes:
        return JOB_FAILED
    if all(o in (SOURCE_SUCCEEDED, SOURCE_DUPLICATE_ONLY) for o in source_outcomes):
        return JOB_SUCCESSFUL
    if all(o == SOURCE_FAILED for o in source_outcomes):
        return JOB_FAILED
    return JOB_PARTIAL

class JobOrchestrator:
    """Owns the job lifecycle.

    ``trigger`` validates, stores the job and returns its id at once; the job
    runs on a bounded executor. Per-source results are folded into the job's
    counters in one place, after every source has finished.
    """

    def __init__(self, db_manager: DatabaseManager, processor, events,
                 orchestrator_config: Optional[Dict[str, Any]] = None):
        config = orchestrator_config or {}
        self.db_manager = db_manager
        self.processor = processor
        self.events = events

        self.source_concurrency = max(1, config.get('source_concurrency', 4))
        self.max_concurrent_jobs = max(1, config.get('max_concurrent_jobs', 2))
        self.max_articles_per_source = config.get('max_articles_per_source', 1000)

        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent_jobs, thread_name_prefix='job')
        self._futures: Dict[str, Future] = {}
        # jobs that have not yet reached finalization; only these accept cancellation
        self._active = set()
        self._cancelled = set()
        self._lock = threading.Lock()
        self.logger = logging.getLogger('orchestrator')

    def validate(self, sources: Any, articles_per_source: Any) -> List[str]:
        if not isinstance(sources, (list, tuple)) or not sources:
            raise InvalidTriggerRequest("At least one source is required")
        names = []
        for name in sources:
            if not isinstance(name, str) or not name.strip():
                raise InvalidTriggerRequest(f"Invalid source name: {name!r}")
            if name.strip() not in names:
                names.append(name.strip())

        if isinstance(articles_per_source, bool) or not isinstance(articles_per_source, int):
            raise InvalidTriggerRequest("articlesPerSource must be an integer")
        if not 1 <= articles_per_source <= self.max_articles_per_source:
            raise InvalidTriggerRequest(
                f"articlesPerSource must be between 1 and {self.max_articles_per_source}"
            )
        return names

    def trigger(self, sources: List[str], articles_per_source: int, enable_tracking: bool = False) -> str:
        names = self.validate(sources, articles_per_source)

        job = ScrapingJob(
            id=str(uuid.uuid4()),
            status=JOB_NEW,
            sources_requested=names,
            articles_per_source=articles_per_source,
            enable_tracking=bool(enable_tracking),
            triggered_at=datetime.now(),
        )
        resolved = self.resolve_sources(names)
        self.db_manager.create_job(job)
        self.events.lifecycle(job.id, 'job_triggered', f"Job triggered for {', '.join(names)}",
                              sources=names, articles_per_source=articles_per_source,
                              enable_tracking=job.enable_tracking,
                              resolved_sources=[name for name, source in resolved.items() if source],
                              unknown_sources=[name for name, source in resolved.items() if not source])

        with self._lock:
            self._futures = {k: f for k, f in self._futures.items() if not f.done()}
            self._active.add(job.id)
            self._futures[job.id] = self._executor.submit(self.run_job, job.id, resolved)
        self.logger.info(f"Job {job.id} queued ({len(names)} sources, {articles_per_source} per source)")
        return job.id

    def resolve_sources(self, names: List[str]) -> Dict[str, Optional[Source]]:
        """Active source records for ``names``; unknown or inactive names map to None."""
        return {name: self.db_manager.get_source_by_name(name) for name in names}

    def run_job(self, job_id: str, sources: Optional[Dict[str, Optional[Source]]] = None):
        job = self.db_manager.get_job(job_id)
        if job is None:
            self.logger.error(f"Job {job_id} vanished before it could run")
            with self._lock:
                self._active.discard(job_id)
            return
        if sources is None:
            sources = self.resolve_sources(job.sources_requested)

        self.events.job_started(job_id)
        try:
            if self.is_cancelled(job_id):
                self._close(job_id)
                self._finalize(job, [], cancelled=True)
                return

            started_at = datetime.now()
            self.db_manager.update_job(job_id, status=JOB_IN_PROGRESS, started_at=started_at)
            job.status, job.started_at = JOB_IN_PROGRESS, started_at
            self.events.lifecycle(job_id, 'job_started', f"Job started with {len(job.sources_requested)} sources")
            self.events.phase(job_id, 'initialization')

            self.events.phase(job_id, 'extraction', previous='initialization')
            outcomes = self._run_sources(job, sources)

            self.events.phase(job_id, 'persistence', previous='extraction')
            self._reconcile(job, outcomes)

            self.events.phase(job_id, 'completion', previous='persistence')
            self._finalize(job, outcomes, cancelled=self._close(job_id))

        except Exception as e:
            self.logger.error(f"Job {job_id} failed at orchestrator level: {e}")
            try:
                self.db_manager.update_job(job_id, status=JOB_FAILED, completed_at=datetime.now())
            except Exception as update_error:
                self.logger.error(f"Could not mark job {job_id} failed: {update_error}")
            self.events.error(job_id, None, type(e).__name__, f"Job failed: {e}", event_name='job_failed')
        finally:
            with self._lock:
                self._active.discard(job_id)
            self.events.job_finished(job_id)
            with self._lock:
                self._cancelled.discard(job_id)

    def _close(self, job_id: str) -> bool:
        """Stops accepting cancellation for the job and returns whether it was cancelled."""
        with self._lock:
            self._active.discard(job_id)
            return job_id in self._cancelled

    def _run_sources(self, job: ScrapingJob, sources: Dict[str, Optional[Source]]) -> List[SourceOutcome]:
        results: Dict[str, SourceOutcome] = {}
        workers = min(self.source_concurrency, len(job.sources_requested))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='source') as pool:
            futures = {
                pool.submit(self.processor.process, job, name, lambda: self.is_cancelled(job.id),
                            sources.get(name)): name
                for name in job.sources_requested
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    self.logger.error(f"Source {name} escaped its boundary: {e}")
                    results[name] = (SourceResult(source_name=name, error=f"{type(e).__name__}: {e}"),
                                     SourcePersistenceResult(source_name=name))

        return [results[name] for name in job.sources_requested]

    def _reconcile(self, job: ScrapingJob, outcomes: List[SourceOutcome]):
        stored = self.db_manager.count_content_by_source(job.id)
        report = []
        mismatches = 0
        for result, persisted in outcomes:
            actual = stored.get(persisted.source_id, 0) if persisted.source_id is not None else 0
            match = actual == persisted.saved_count
            if not match:
                mismatches += 1
            report.append({
                'source': persisted.source_name,
                'reported_saved': persisted.saved_count,
                'stored': actual,
                'match': match,
            })

        if mismatches:
            self.events.lifecycle(job.id, 'job_reconciliation',
                                  f"Reconciliation found {mismatches} mismatched sources",
                                  severity='warning', sources=report)
        else:
            self.events.lifecycle(job.id, 'job_reconciliation', "Reconciliation matched stored content",
                                  sources=report)

    def _finalize(self, job: ScrapingJob, outcomes: List[SourceOutcome], cancelled: bool = False):
        per_source = []
        labels = []
        total_extracted = total_saved = total_errors = total_duplicates = 0

        for result, persisted in outcomes:
            label = classify_source(result, persisted)
            labels.append(label)
            total_extracted += result.extraction_successes
            total_saved += persisted.saved_count
            total_duplicates += persisted.duplicates_skipped
            total_errors += result.extraction_failures + persisted.save_failures + (1 if result.error else 0)
            per_source.append({
                'source': result.source_name,
                'outcome': label,
                'extracted': result.extraction_successes,
                'extraction_failures': result.extraction_failures,
                'saved': persisted.saved_count,
                'duplicates': persisted.duplicates_skipped,
                'save_failures': persisted.save_failures,
                'error': result.error,
                'teardown_fault': result.teardown_fault,
            })

        status = JOB_CANCELLED if cancelled else compute_job_status(labels)
        completed_at = datetime.now()
        self.db_manager.update_job(
            job.id,
            status=status,
            completed_at=completed_at,
            total_extracted=total_extracted,
            total_saved=total_saved,
            total_errors=total_errors,
        )

        duration = (completed_at - job.started_at).total_seconds() if job.started_at else 0.0
        severity = {JOB_FAILED: 'error', JOB_PARTIAL: 'warning'}.get(status, 'info')
        self.events.lifecycle(
            job.id, 'job_completed',
            f"Job {status}: {total_extracted} extracted, {total_saved} saved, {total_errors} errors",
            severity=severity, status=status, sources=per_source,
            totals={'extracted': total_extracted, 'saved': total_saved,
                    'duplicates': total_duplicates, 'errors': total_errors},
            perf={'duration_seconds': round(duration, 3)},
        )
        self.logger.info(f"Job {job.id} finished as {status} in {duration:.1f}s")
        return status

    def cancel_job(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._active or not self.db_manager.request_cancel(job_id):
                return False
            self._cancelled.add(job_id)
        self.events.lifecycle(job_id, 'job_cancel_requested', "Cancellation requested", severity='warning')
        return True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def wait(self, job_id: str, timeout: Optional[float] = None):
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)

    def get_job(self, job_id: str) -> Optional[ScrapingJob]:
        return self.db_manager.get_job(job_id)

    def list_jobs(self, status: Optional[str] = None, limit: int = 20, offset: int = 0) -> List[ScrapingJob]:
        return self.db_manager.list_jobs(status=status, limit=limit, offset=offset)

    def shutdown(self, wait: bool = True):
        self.logger.info("Shutting down job orchestrator")
        self._executor.shutdown(wait=wait)
        self.events.shutdown()
