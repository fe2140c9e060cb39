import requests
import feedparser
import threading
import time
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Callable

from ..storage.models import Source, ExtractionCandidate
from .errors import FeedUnavailable

class FeedReader:
    """Turns a source's RSS/Atom document into extraction candidates, in feed order."""

    def __init__(self, scraping_config: Dict[str, Any], sleep: Callable[[float], None] = time.sleep):
        self.scraping_config = scraping_config
        self.retry_attempts = max(1, scraping_config.get('retry_attempts', 3))
        self.default_user_agent = scraping_config.get('user_agent', 'VeritasAggregator/1.0')
        self.feed_timeout_ms = scraping_config.get('feed_timeout_ms', 10000)
        self._sleep = sleep

        self._local = threading.local()
        self.logger = logging.getLogger('scraper.feed')

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            session = requests.Session()
            session.headers.update({
                'Accept': 'application/rss+xml, application/atom+xml, application/xml, text/xml',
            })
            self._local.session = session
        return session

    def fetch_candidates(self, source: Source, limit: int,
                         on_retry: Optional[Callable[[int, Exception], None]] = None) -> List[ExtractionCandidate]:
        if not source.feed_url:
            raise FeedUnavailable(source.name, "no feed URL configured")

        feed = self._fetch_feed(source, on_retry)

        candidates = []
        seen = set()
        for entry in feed.entries:
            if len(candidates) >= limit:
                break
            url = (entry.get('link') or '').strip()
            if not url or url in seen:
                continue
            seen.add(url)
            candidates.append(ExtractionCandidate(
                url=url,
                title=(entry.get('title') or '').strip(),
                published=self._entry_date(entry),
                summary=(entry.get('summary') or '').strip(),
                position=len(candidates),
            ))

        self.logger.info(f"{source.name}: {len(feed.entries)} feed items, {len(candidates)} candidates")
        return candidates

    def _fetch_feed(self, source: Source, on_retry=None):
        timeout = (source.timeout_ms or self.feed_timeout_ms) / 1000.0
        headers = {'User-Agent': source.user_agent or self.default_user_agent}
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                response = self.session.get(source.feed_url, headers=headers, timeout=timeout)
                response.raise_for_status()

                feed = feedparser.parse(response.content)
                if feed.bozo and not feed.entries:
                    raise ValueError(f"Unparseable feed document: {feed.get('bozo_exception')}")
                return feed

            except Exception as e:
                last_error = e
                self.logger.warning(
                    f"Feed fetch attempt {attempt + 1}/{self.retry_attempts} failed for {source.name}: {e}"
                )
                if on_retry:
                    on_retry(attempt + 1, e)
                if attempt < self.retry_attempts - 1:
                    self._sleep(2 ** attempt)

        raise FeedUnavailable(source.name, str(last_error))

    def _entry_date(self, entry) -> Optional[datetime]:
        parsed = entry.get('published_parsed') or entry.get('updated_parsed')
        if not parsed:
            return None
        try:
            return datetime(*parsed[:6])
        except (TypeError, ValueError):
            return None
