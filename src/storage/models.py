from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

JOB_NEW = 'new'
JOB_IN_PROGRESS = 'in-progress'
JOB_SUCCESSFUL = 'successful'
JOB_PARTIAL = 'partial'
JOB_FAILED = 'failed'
JOB_CANCELLED = 'cancelled'

TERMINAL_STATUSES = (JOB_SUCCESSFUL, JOB_PARTIAL, JOB_FAILED, JOB_CANCELLED)
ACTIVE_STATUSES = (JOB_NEW, JOB_IN_PROGRESS)

SEVERITIES = ('debug', 'info', 'warning', 'error')
EVENT_TYPES = ('lifecycle', 'source', 'extraction', 'persistence', 'http', 'performance', 'error')

PROCESSING_COMPLETED = 'completed'
PROCESSING_ARCHIVED = 'archived'

@dataclass
class Source:
    id: Optional[int] = None
    name: str = ""
    domain: str = ""
    feed_url: str = ""
    respect_robots: bool = True
    delay_ms: int = 1000
    user_agent: str = ""
    timeout_ms: int = 10000
    is_active: bool = True
    selectors: List[str] = field(default_factory=list)

@dataclass
class ScrapingJob:
    id: Optional[str] = None
    status: str = JOB_NEW
    sources_requested: List[str] = field(default_factory=list)
    articles_per_source: int = 5
    enable_tracking: bool = False
    triggered_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_extracted: int = 0
    total_saved: int = 0
    total_errors: int = 0
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now()
        return round((end - self.started_at).total_seconds(), 3)

@dataclass
class ExtractionCandidate:
    url: str = ""
    title: str = ""
    published: Optional[datetime] = None
    summary: str = ""
    position: int = 0

@dataclass
class ExtractionTrace:
    field: str
    selector: str
    method: str
    value: str

@dataclass
class ExtractedArticle:
    url: str = ""
    title: str = ""
    content: str = ""
    author: str = ""
    published_date: Optional[datetime] = None
    language: str = ""
    fingerprint: str = ""
    quality_score: int = 0
    strategy: str = ""
    traces: Optional[List[ExtractionTrace]] = None
    raw_html: Optional[str] = None

    @property
    def paragraph_count(self) -> int:
        return len([p for p in self.content.split('\n\n') if p.strip()])

@dataclass
class ExtractionFailure:
    url: str
    reason: str
    strategies_tried: List[str] = field(default_factory=list)
    traces: Optional[List[ExtractionTrace]] = None

@dataclass
class ScrapedContentRecord:
    id: Optional[int] = None
    source_id: Optional[int] = None
    job_id: Optional[str] = None
    source_url: str = ""
    normalized_url: str = ""
    title: str = ""
    content: str = ""
    author: str = ""
    publication_date: Optional[datetime] = None
    language: str = ""
    content_hash: str = ""
    quality_score: int = 0
    extraction_strategy: str = ""
    processing_status: str = PROCESSING_COMPLETED
    compressed_payload: Optional[bytes] = None
    created_at: Optional[datetime] = None
    source_name: str = ""

# Persistence outcomes. None of these are raised.

@dataclass
class Saved:
    record_id: int

@dataclass
class DuplicateSkipped:
    duplicate_type: str
    reason: str = ""

@dataclass
class SaveFailure:
    error_type: str
    message: str

@dataclass
class SourceResult:
    """Extraction-phase accounting for one source within one job."""
    source_name: str
    source_id: Optional[int] = None
    feed_items_found: int = 0
    candidates_seen: int = 0
    extraction_attempts: int = 0
    extraction_successes: int = 0
    extraction_failures: int = 0
    error: Optional[str] = None
    teardown_fault: Optional[str] = None
    duration_ms: int = 0

@dataclass
class SourcePersistenceResult:
    """Persistence-phase accounting for one source within one job."""
    source_name: str
    source_id: Optional[int] = None
    saved_count: int = 0
    duplicates_skipped: int = 0
    save_failures: int = 0
    article_ids: List[int] = field(default_factory=list)

@dataclass
class JobEvent:
    id: Optional[int] = None
    job_id: Optional[str] = None
    source_id: Optional[int] = None
    severity: str = 'info'
    event_type: str = 'lifecycle'
    message: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @property
    def correlation_id(self) -> Optional[str]:
        return self.payload.get('correlation_id')
