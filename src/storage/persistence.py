import sqlite3
import zlib
import logging
from datetime import datetime
from typing import Union

from .database import DatabaseManager
from .models import (
    ExtractedArticle, Source, ScrapedContentRecord,
    Saved, DuplicateSkipped, SaveFailure,
)
from ..scraper.deduplicator import Deduplicator, normalize_url

SaveOutcome = Union[Saved, DuplicateSkipped, SaveFailure]

class PersistenceGateway:
    """Writes accepted articles, one transaction per article.

    Duplicate checks run inside the same transaction as the insert, so two
    workers racing on the same URL or fingerprint cannot both save it.
    A failed save is reported, never retried.
    """

    def __init__(self, db_manager: DatabaseManager, store_raw_html: bool = False):
        self.db_manager = db_manager
        self.deduplicator = Deduplicator(db_manager)
        self.store_raw_html = store_raw_html
        self.logger = logging.getLogger('persistence')

    def save(self, article: ExtractedArticle, source: Source, job_id: str) -> SaveOutcome:
        if source.id is None:
            return SaveFailure('MissingSource', f"Source {source.name} has no stored id")

        record = self._to_record(article, source, job_id)
        try:
            with self.db_manager.transaction() as conn:
                duplicate = self.deduplicator.check(article.url, article.fingerprint, conn=conn)
                if duplicate:
                    return duplicate
                record_id = self.db_manager.insert_content(record, conn)
            return Saved(record_id)

        except sqlite3.IntegrityError as e:
            # A unique index fired between check and insert
            message = str(e)
            if 'source_url' in message:
                return DuplicateSkipped('url', message)
            if 'content_hash' in message:
                return DuplicateSkipped('content', message)
            self.logger.error(f"Constraint violation saving {article.url}: {e}")
            return SaveFailure('IntegrityError', message)
        except sqlite3.Error as e:
            self.logger.error(f"Database error saving {article.url}: {e}")
            return SaveFailure(type(e).__name__, str(e))

    def _to_record(self, article: ExtractedArticle, source: Source, job_id: str) -> ScrapedContentRecord:
        payload = None
        if self.store_raw_html and article.raw_html:
            payload = zlib.compress(article.raw_html.encode('utf-8'), 6)

        return ScrapedContentRecord(
            source_id=source.id,
            job_id=job_id,
            source_url=article.url,
            normalized_url=normalize_url(article.url),
            title=article.title,
            content=article.content,
            author=article.author,
            publication_date=article.published_date,
            language=article.language,
            content_hash=article.fingerprint,
            quality_score=article.quality_score,
            extraction_strategy=article.strategy,
            compressed_payload=payload,
            created_at=datetime.now(),
        )
