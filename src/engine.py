import logging
from dataclasses import dataclass

from .orchestrator import JobOrchestrator
from .scraper.content_extractor import ContentExtractor
from .scraper.feed_reader import FeedReader
from .scraper.fetcher import PageFetcher
from .scraper.source_processor import SourceProcessor
from .storage.database import DatabaseManager
from .storage.persistence import PersistenceGateway
from .utils.config import Config
from .utils.event_logger import EventLogger

logger = logging.getLogger('engine')

@dataclass
class AggregationEngine:
    config: Config
    db_manager: DatabaseManager
    events: EventLogger
    orchestrator: JobOrchestrator

    def seed_sources(self) -> int:
        count = 0
        for source in self.config.get_source_models():
            self.db_manager.upsert_source(source)
            count += 1
        logger.info(f"Loaded {count} sources from configuration")
        return count

    def shutdown(self):
        self.orchestrator.shutdown(wait=False)

def build_engine(config: Config) -> AggregationEngine:
    db_config = config.get_database_config()
    scraping_config = config.get_scraping_config()
    orchestrator_config = config.get_orchestrator_config()
    logging_config = config.get_logging_config()

    db_manager = DatabaseManager(db_config.get('path', 'data/aggregator.db'))
    events = EventLogger(db_manager, logging_config.get('snapshot_interval_seconds', 30))

    fetcher = PageFetcher(scraping_config)
    processor = SourceProcessor(
        db_manager=db_manager,
        feed_reader=FeedReader(scraping_config),
        fetcher=fetcher,
        extractor=ContentExtractor(config.get_extraction_config(), fetcher=fetcher),
        gateway=PersistenceGateway(db_manager, orchestrator_config.get('store_raw_html', False)),
        events=events,
        request_concurrency=orchestrator_config.get('request_concurrency', 2),
    )
    orchestrator = JobOrchestrator(db_manager, processor, events, orchestrator_config)
    return AggregationEngine(config, db_manager, events, orchestrator)
