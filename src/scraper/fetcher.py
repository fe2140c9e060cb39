import requests
import threading
import time
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Any
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

from ..storage.models import Source

DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'Accept-Encoding': 'gzip, deflate',
    'Connection': 'keep-alive',
}

@dataclass
class FetchResult:
    url: str
    html: Optional[str] = None
    status: Optional[int] = None
    response_ms: int = 0
    attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.html is not None and self.error is None

    def to_payload(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'method': 'GET',
            'status': self.status,
            'response_ms': self.response_ms,
            'attempt': self.attempts,
        }

class PageFetcher:
    """Fetches article pages under a source's politeness policy.

    Requests time out after the source's ``timeout_ms``; a timeout or HTTP
    error is reported in the result, never raised.
    """

    def __init__(self, scraping_config: Dict[str, Any]):
        self.scraping_config = scraping_config
        self.default_user_agent = scraping_config.get('user_agent', 'VeritasAggregator/1.0')
        self.default_timeout_ms = scraping_config.get('timeout_ms', 10000)
        self.retry_attempts = max(1, scraping_config.get('page_retry_attempts', 1))

        self._local = threading.local()
        self._robots: Dict[str, Optional[RobotFileParser]] = {}
        self._robots_lock = threading.Lock()
        self.logger = logging.getLogger('scraper.fetcher')

    @property
    def session(self) -> requests.Session:
        # one session per worker thread; Session objects are not shared across threads
        session = getattr(self._local, 'session', None)
        if session is None:
            session = requests.Session()
            session.headers.update(DEFAULT_HEADERS)
            self._local.session = session
        return session

    def _headers(self, source: Source) -> Dict[str, str]:
        return {'User-Agent': source.user_agent or self.default_user_agent}

    def _timeout(self, source: Source) -> float:
        return (source.timeout_ms or self.default_timeout_ms) / 1000.0

    def fetch(self, url: str, source: Source) -> FetchResult:
        result = FetchResult(url=url)

        if source.respect_robots and not self.allowed_by_robots(url, source):
            result.error = "Disallowed by robots.txt"
            result.error_type = 'robots_disallowed'
            return result

        for attempt in range(self.retry_attempts):
            result.attempts = attempt + 1
            started = time.monotonic()
            try:
                response = self.session.get(url, headers=self._headers(source),
                                            timeout=self._timeout(source))
                result.status = response.status_code
                response.raise_for_status()
                result.response_ms = int((time.monotonic() - started) * 1000)
                result.html = response.text
                result.error = None
                result.error_type = None
                return result
            except requests.Timeout as e:
                result.error = f"Request timed out after {self._timeout(source):.1f}s: {e}"
                result.error_type = 'timeout'
            except Exception as e:
                result.error = str(e)
                result.error_type = type(e).__name__
            result.response_ms = int((time.monotonic() - started) * 1000)

            self.logger.warning(f"Attempt {attempt + 1} failed for {url}: {result.error}")
            if attempt < self.retry_attempts - 1:
                time.sleep(2 ** attempt)

        return result

    def allowed_by_robots(self, url: str, source: Source) -> bool:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        with self._robots_lock:
            if origin not in self._robots:
                self._robots[origin] = self._load_robots(origin, source)
            parser = self._robots[origin]

        if parser is None:
            return True
        return parser.can_fetch(self._headers(source)['User-Agent'], url)

    def _load_robots(self, origin: str, source: Source) -> Optional[RobotFileParser]:
        try:
            response = self.session.get(f"{origin}/robots.txt", headers=self._headers(source),
                                        timeout=self._timeout(source))
            if response.status_code >= 400:
                return None
            parser = RobotFileParser()
            parser.parse(response.text.splitlines())
            return parser
        except Exception as e:
            self.logger.debug(f"Could not load robots.txt from {origin}: {e}")
            return None
