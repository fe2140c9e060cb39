import pytest
import requests
import threading
from datetime import datetime
from unittest.mock import Mock, patch

from src.scraper.errors import FeedUnavailable
from src.scraper.feed_reader import FeedReader
from src.scraper.fetcher import PageFetcher
from src.storage.models import Source

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
  <title>Example News</title>
  <link>https://example.com</link>
  <item><title>First story</title><link>https://example.com/first</link>
    <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate><description>One</description></item>
  <item><title>Second story</title><link>https://example.com/second</link></item>
  <item><title>Second again</title><link>https://example.com/second</link></item>
  <item><title>Third story</title><link>https://example.com/third</link></item>
  <item><title>Fourth story</title><link>https://example.com/fourth</link></item>
</channel></rss>
"""

def feed_response(content=RSS):
    response = Mock()
    response.content = content
    response.raise_for_status.return_value = None
    return response

class TestFeedReader:
    def setup_method(self):
        self.sleeps = []
        self.reader = FeedReader({'retry_attempts': 3, 'user_agent': 'TestBot/1.0'},
                                 sleep=self.sleeps.append)
        self.source = Source(id=1, name='Example', feed_url='https://example.com/rss', timeout_ms=5000)

    @patch('src.scraper.feed_reader.requests.Session.get')
    def test_candidates_in_feed_order_and_bounded(self, mock_get):
        mock_get.return_value = feed_response()

        candidates = self.reader.fetch_candidates(self.source, limit=3)

        assert [c.url for c in candidates] == [
            'https://example.com/first',
            'https://example.com/second',
            'https://example.com/third',
        ]
        assert [c.position for c in candidates] == [0, 1, 2]
        assert candidates[0].title == 'First story'
        assert candidates[0].published == datetime(2024, 1, 1, 10, 0)
        assert candidates[1].published is None

    @patch('src.scraper.feed_reader.requests.Session.get')
    def test_request_uses_source_policy(self, mock_get):
        mock_get.return_value = feed_response()

        self.reader.fetch_candidates(self.source, limit=1)

        args, kwargs = mock_get.call_args
        assert args[0] == 'https://example.com/rss'
        assert kwargs['timeout'] == 5.0
        assert kwargs['headers']['User-Agent'] == 'TestBot/1.0'

    @patch('src.scraper.feed_reader.requests.Session.get')
    def test_unreachable_feed_raises_after_retries(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("connection refused")
        retries = []

        with pytest.raises(FeedUnavailable) as exc_info:
            self.reader.fetch_candidates(self.source, limit=5,
                                         on_retry=lambda attempt, error: retries.append(attempt))

        assert mock_get.call_count == 3
        assert retries == [1, 2, 3]
        assert self.sleeps == [1, 2]
        assert exc_info.value.source_name == 'Example'

    @patch('src.scraper.feed_reader.requests.Session.get')
    def test_recovers_on_second_attempt(self, mock_get):
        mock_get.side_effect = [requests.Timeout("slow"), feed_response()]

        candidates = self.reader.fetch_candidates(self.source, limit=2)

        assert len(candidates) == 2
        assert self.sleeps == [1]

    @patch('src.scraper.feed_reader.requests.Session.get')
    def test_unparseable_feed_is_unavailable(self, mock_get):
        mock_get.return_value = feed_response(b"<html><body>not a feed")

        with pytest.raises(FeedUnavailable):
            self.reader.fetch_candidates(self.source, limit=5)

    def test_source_without_feed_url(self):
        with pytest.raises(FeedUnavailable):
            self.reader.fetch_candidates(Source(name='No feed'), limit=5)

class TestPageFetcher:
    def setup_method(self):
        self.fetcher = PageFetcher({'user_agent': 'TestBot/1.0', 'page_retry_attempts': 2})
        self.source = Source(name='Example', respect_robots=False, timeout_ms=2000)

    @patch('src.scraper.fetcher.requests.Session.get')
    def test_fetch_success(self, mock_get):
        response = Mock(status_code=200, text='<html>ok</html>')
        response.raise_for_status.return_value = None
        mock_get.return_value = response

        result = self.fetcher.fetch('https://example.com/a', self.source)

        assert result.ok
        assert result.html == '<html>ok</html>'
        assert result.status == 200
        assert result.attempts == 1
        assert mock_get.call_args[1]['timeout'] == 2.0

    @patch('src.scraper.fetcher.time.sleep')
    @patch('src.scraper.fetcher.requests.Session.get')
    def test_timeout_is_reported_not_raised(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.Timeout("read timed out")

        result = self.fetcher.fetch('https://example.com/a', self.source)

        assert not result.ok
        assert result.error_type == 'timeout'
        assert result.attempts == 2
        mock_sleep.assert_called_once_with(1)

    @patch('src.scraper.fetcher.requests.Session.get')
    def test_robots_disallow(self, mock_get):
        robots = Mock(status_code=200, text="User-agent: *\nDisallow: /private")

        def get(url, **kwargs):
            if url.endswith('/robots.txt'):
                return robots
            response = Mock(status_code=200, text='<html></html>')
            response.raise_for_status.return_value = None
            return response

        mock_get.side_effect = get
        source = Source(name='Polite', respect_robots=True)

        blocked = self.fetcher.fetch('https://example.com/private/page', source)
        allowed = self.fetcher.fetch('https://example.com/public/page', source)

        assert blocked.error_type == 'robots_disallowed'
        assert allowed.ok

    def test_each_worker_thread_gets_its_own_session(self):
        sessions = []
        worker = threading.Thread(target=lambda: sessions.append(self.fetcher.session))
        worker.start()
        worker.join()

        assert self.fetcher.session is self.fetcher.session
        assert sessions[0] is not self.fetcher.session
        assert self.fetcher.session.headers['Accept'].startswith('text/html')
