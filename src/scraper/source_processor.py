import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Callable, Tuple, Union

from ..storage.models import (
    Source, ScrapingJob, ExtractionCandidate, ExtractedArticle, ExtractionFailure,
    SourceResult, SourcePersistenceResult, Saved, DuplicateSkipped, SaveFailure,
)
from ..utils.event_logger import new_correlation_id
from .deduplicator import Deduplicator
from .errors import FeedUnavailable, SourceNotFound, TeardownFault
from .throttle import RequestThrottle

@dataclass
class CandidateOutcome:
    url: str
    skipped: bool = False
    extraction: Optional[Union[ExtractedArticle, ExtractionFailure]] = None
    persistence: Optional[Union[Saved, DuplicateSkipped, SaveFailure]] = None

class SourceProcessor:
    """Runs one source of one job: feed, then each candidate through fetch,
    extraction and persistence.

    Every fault inside a source ends up in its ``SourceResult``; ``process``
    does not raise.
    """

    def __init__(self, db_manager, feed_reader, fetcher, extractor, gateway, events,
                 request_concurrency: int = 2,
                 executor_factory: Optional[Callable[..., ThreadPoolExecutor]] = None):
        self.db_manager = db_manager
        self.feed_reader = feed_reader
        self.fetcher = fetcher
        self.extractor = extractor
        self.gateway = gateway
        self.events = events
        self.deduplicator = Deduplicator(db_manager)
        self.request_concurrency = max(1, request_concurrency)
        self.executor_factory = executor_factory or ThreadPoolExecutor
        self.logger = logging.getLogger('scraper')

    def process(self, job: ScrapingJob, source_name: str, is_cancelled: Callable[[], bool],
                source: Optional[Source] = None) -> Tuple[SourceResult, SourcePersistenceResult]:
        """``source`` is the record resolved when the job was triggered; None means the
        name did not match an active source then."""
        started = time.monotonic()
        result = SourceResult(source_name=source_name)
        persisted = SourcePersistenceResult(source_name=source_name)
        logger = logging.getLogger(f'scraper.{source_name}')

        try:
            if source is None:
                raise SourceNotFound(source_name)
            result.source_id = persisted.source_id = source.id

            self.events.source(job.id, source.id, 'source_started', f"Processing source {source.name}",
                               feed_url=source.feed_url)

            def on_retry(attempt: int, error: Exception):
                self.events.record(job.id, source.id, 'warning', 'http',
                                   f"Feed fetch attempt {attempt} failed for {source.name}: {error}",
                                   {'http': {'url': source.feed_url, 'method': 'GET', 'attempt': attempt},
                                    'error': {'type': type(error).__name__, 'message': str(error)}},
                                   event_name='feed_retry')

            candidates = self.feed_reader.fetch_candidates(source, job.articles_per_source, on_retry=on_retry)
            result.feed_items_found = len(candidates)

            outcomes = self._run_candidates(job, source, candidates, is_cancelled, result)
            self._fold(outcomes, result, persisted)

        except FeedUnavailable as e:
            result.error = str(e)
            logger.warning(str(e))
            self.events.error(job.id, result.source_id, type(e).__name__, str(e),
                              event_name='source_failed', source=source_name)
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.error(f"Unhandled fault in source {source_name}: {e}")
            self.events.error(job.id, result.source_id, type(e).__name__, str(e),
                              event_name='source_failed', source=source_name)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.events.source(
            job.id, result.source_id, 'source_completed',
            f"Source {source_name}: {result.extraction_successes} extracted, "
            f"{persisted.saved_count} saved, {persisted.duplicates_skipped} duplicates",
            severity='warning' if result.error else 'info',
            extraction={
                'candidates': result.candidates_seen,
                'attempts': result.extraction_attempts,
                'successes': result.extraction_successes,
                'failures': result.extraction_failures,
            },
            persistence={
                'saved': persisted.saved_count,
                'duplicates': persisted.duplicates_skipped,
                'save_failures': persisted.save_failures,
            },
            duration_ms=result.duration_ms,
        )
        return result, persisted

    def _run_candidates(self, job: ScrapingJob, source: Source, candidates: List[ExtractionCandidate],
                        is_cancelled: Callable[[], bool], result: SourceResult) -> List[CandidateOutcome]:
        throttle = RequestThrottle(source.delay_ms, self.request_concurrency)
        executor = self.executor_factory(max_workers=self.request_concurrency,
                                         thread_name_prefix=f'source-{source.name}')
        try:
            # Submission order is feed order; workers pick candidates FIFO.
            futures = [
                executor.submit(self._process_candidate, job, source, candidate, throttle, is_cancelled)
                for candidate in candidates
            ]
            return [future.result() for future in futures]
        finally:
            try:
                executor.shutdown(wait=True)
            except Exception as e:
                fault = TeardownFault(source.name, e)
                result.teardown_fault = str(fault)
                self.logger.warning(str(fault))
                self.events.error(job.id, source.id, 'TeardownFault', str(fault),
                                  severity='warning', event_name='teardown_fault')

    def _process_candidate(self, job: ScrapingJob, source: Source, candidate: ExtractionCandidate,
                           throttle: RequestThrottle, is_cancelled: Callable[[], bool]) -> CandidateOutcome:
        if is_cancelled():
            return CandidateOutcome(candidate.url, skipped=True)

        correlation_id = new_correlation_id()
        url = candidate.url
        self.events.source(job.id, source.id, 'candidate_queued', f"Candidate {candidate.position + 1}: {url}",
                           severity='debug', correlation_id=correlation_id,
                           url=url, position=candidate.position)
        try:
            duplicate = self.deduplicator.check(url)
            if duplicate:
                self.events.persistence(job.id, source.id, correlation_id, url, duplicate)
                return CandidateOutcome(url, persistence=duplicate)

            with throttle.slot():
                fetched = self.fetcher.fetch(url, source)
            self.events.http(job.id, source.id, correlation_id, fetched)

            if not fetched.ok:
                failure = ExtractionFailure(url=url, reason=f"Fetch failed: {fetched.error}")
                self.events.extraction(job.id, source.id, correlation_id, failure,
                                       error_type=fetched.error_type or 'FetchFailed')
                return CandidateOutcome(url, extraction=failure)

            extracted = self.extractor.extract_from_html(url, fetched.html, job.enable_tracking,
                                                         source_selectors=source.selectors,
                                                         fallback_title=candidate.title)
            self.events.extraction(job.id, source.id, correlation_id, extracted)
            if isinstance(extracted, ExtractionFailure):
                return CandidateOutcome(url, extraction=extracted)

            if extracted.published_date is None:
                extracted.published_date = candidate.published

            saved = self.gateway.save(extracted, source, job.id)
            self.events.persistence(job.id, source.id, correlation_id, url, saved)
            return CandidateOutcome(url, extraction=extracted, persistence=saved)

        except Exception as e:
            self.logger.error(f"Candidate {url} from {source.name} failed: {e}")
            failure = ExtractionFailure(url=url, reason=f"{type(e).__name__}: {e}")
            self.events.extraction(job.id, source.id, correlation_id, failure, error_type=type(e).__name__)
            return CandidateOutcome(url, extraction=failure)

    def _fold(self, outcomes: List[CandidateOutcome], result: SourceResult, persisted: SourcePersistenceResult):
        for outcome in outcomes:
            if outcome.skipped:
                continue
            result.candidates_seen += 1

            if outcome.extraction is not None:
                result.extraction_attempts += 1
                if isinstance(outcome.extraction, ExtractedArticle):
                    result.extraction_successes += 1
                else:
                    result.extraction_failures += 1

            if isinstance(outcome.persistence, Saved):
                persisted.saved_count += 1
                persisted.article_ids.append(outcome.persistence.record_id)
            elif isinstance(outcome.persistence, DuplicateSkipped):
                persisted.duplicates_skipped += 1
            elif isinstance(outcome.persistence, SaveFailure):
                persisted.save_failures += 1
