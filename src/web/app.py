from fastapi import FastAPI, HTTPException, Query, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from ..engine import AggregationEngine, build_engine
from ..orchestrator import JobOrchestrator
from ..scraper.errors import InvalidTriggerRequest
from ..storage.database import DatabaseManager
from ..storage.models import ScrapingJob, ScrapedContentRecord, JobEvent, SEVERITIES, EVENT_TYPES
from ..utils.config import get_config

app = FastAPI(title="Veritas Aggregator", version="1.0.0")

_engine: Optional[AggregationEngine] = None

def set_engine(engine: Optional[AggregationEngine]):
    global _engine
    _engine = engine

def get_engine() -> AggregationEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_config())
    return _engine

def get_db() -> DatabaseManager:
    return get_engine().db_manager

def get_orchestrator() -> JobOrchestrator:
    return get_engine().orchestrator

class TriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sources: List[str]
    articles_per_source: int = Field(..., alias='articlesPerSource')
    enable_tracking: bool = Field(False, alias='enableTracking')

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def job_to_dict(job: ScrapingJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "sources": job.sources_requested,
        "articles_per_source": job.articles_per_source,
        "enable_tracking": job.enable_tracking,
        "triggered_at": _iso(job.triggered_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "duration_seconds": job.duration_seconds,
        "total_extracted": job.total_extracted,
        "total_saved": job.total_saved,
        "total_errors": job.total_errors,
        "cancel_requested": job.cancel_requested,
    }

def event_to_dict(event: JobEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "job_id": event.job_id,
        "source_id": event.source_id,
        "severity": event.severity,
        "event_type": event.event_type,
        "message": event.message,
        "correlation_id": event.correlation_id,
        "payload": event.payload,
        "timestamp": _iso(event.timestamp),
    }

def content_to_dict(record: ScrapedContentRecord, full: bool = False) -> Dict[str, Any]:
    data = {
        "id": record.id,
        "title": record.title,
        "url": record.source_url,
        "source": record.source_name,
        "source_id": record.source_id,
        "job_id": record.job_id,
        "author": record.author,
        "publication_date": _iso(record.publication_date),
        "language": record.language,
        "quality_score": record.quality_score,
        "extraction_strategy": record.extraction_strategy,
        "processing_status": record.processing_status,
        "created_at": _iso(record.created_at),
    }
    if full:
        data["content"] = record.content
        data["content_hash"] = record.content_hash
        data["has_payload"] = record.compressed_payload is not None
    return data

def _require_job(job_id: str, db: DatabaseManager) -> ScrapingJob:
    job = db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@app.post("/api/scraper/trigger")
async def trigger_scraping(request: TriggerRequest,
                           orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        job_id = orchestrator.trigger(request.sources, request.articles_per_source, request.enable_tracking)
    except InvalidTriggerRequest as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "jobId": job_id,
        "status": "started",
        "message": f"Scraping job started for {len(request.sources)} sources"
    }

@app.get("/api/scraper/jobs")
async def list_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: DatabaseManager = Depends(get_db)
):
    return [job_to_dict(job) for job in db.list_jobs(status=status, limit=limit, offset=offset)]

@app.get("/api/scraper/jobs/{job_id}")
async def get_job(job_id: str, db: DatabaseManager = Depends(get_db)):
    return job_to_dict(_require_job(job_id, db))

@app.delete("/api/scraper/jobs/{job_id}")
async def cancel_job(job_id: str,
                     db: DatabaseManager = Depends(get_db),
                     orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = _require_job(job_id, db)
    if not orchestrator.cancel_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job is already {job.status}")
    return {"jobId": job_id, "status": "cancelling"}

@app.get("/api/scraper/jobs/{job_id}/logs")
async def get_job_logs(
    job_id: str,
    event_type: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    correlation_id: Optional[str] = Query(None),
    source_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    db: DatabaseManager = Depends(get_db)
):
    if severity and severity not in SEVERITIES:
        raise HTTPException(status_code=400, detail=f"Unknown severity: {severity}")
    if event_type and event_type not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown event type: {event_type}")
    _require_job(job_id, db)

    events = db.get_events(job_id, event_type=event_type, severity=severity,
                           correlation_id=correlation_id, source_id=source_id,
                           limit=limit, offset=offset)
    return {"jobId": job_id, "count": len(events), "events": [event_to_dict(e) for e in events]}

@app.get("/api/scraper/jobs/{job_id}/quality")
async def get_job_quality(job_id: str, db: DatabaseManager = Depends(get_db)):
    _require_job(job_id, db)
    return db.get_extraction_quality(job_id)

@app.get("/api/scraper/jobs/{job_id}/timeline")
async def get_job_timeline(job_id: str, db: DatabaseManager = Depends(get_db)):
    _require_job(job_id, db)
    return [event_to_dict(e) for e in db.get_job_timeline(job_id)]

@app.get("/api/scraper/jobs/{job_id}/errors")
async def get_job_errors(job_id: str, db: DatabaseManager = Depends(get_db)):
    _require_job(job_id, db)
    return db.get_error_summary(job_id)

@app.get("/api/scraper/events/{correlation_id}")
async def get_correlated_events(correlation_id: str, db: DatabaseManager = Depends(get_db)):
    return [event_to_dict(e) for e in db.get_correlated_events(correlation_id)]

@app.get("/api/scraper/content")
async def get_content(
    source: Optional[str] = Query(None),
    language: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    job_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: DatabaseManager = Depends(get_db)
):
    records, total = db.get_content(source=source, language=language, status=status,
                                    search=search, job_id=job_id, limit=limit, offset=offset)
    return {"total": total, "items": [content_to_dict(r) for r in records]}

@app.get("/api/scraper/content/{content_id}")
async def get_content_item(content_id: int, db: DatabaseManager = Depends(get_db)):
    record = db.get_content_by_id(content_id)
    if not record:
        raise HTTPException(status_code=404, detail="Content not found")
    return content_to_dict(record, full=True)

@app.get("/api/scraper/sources")
async def get_sources(db: DatabaseManager = Depends(get_db)):
    return [
        {
            "id": source.id,
            "name": source.name,
            "domain": source.domain,
            "feed_url": source.feed_url,
            "respect_robots": source.respect_robots,
            "delay_ms": source.delay_ms,
            "timeout_ms": source.timeout_ms,
            "is_active": source.is_active,
        }
        for source in db.get_sources(active_only=True)
    ]

@app.get("/api/scraper/metrics")
async def get_metrics(db: DatabaseManager = Depends(get_db)):
    metrics = db.get_dashboard_metrics()
    metrics["total_content"] = db.get_content_count()
    metrics["generated_at"] = datetime.now().isoformat()
    return metrics

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0"
    }
