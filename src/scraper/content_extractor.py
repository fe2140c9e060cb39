import re
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Union

from langdetect import DetectorFactory, LangDetectException, detect

from ..storage.models import ExtractedArticle, ExtractionFailure, Source
from .deduplicator import content_fingerprint
from .recorder import ExtractionRecorder
from .strategies import Page, PARAGRAPH_SEPARATOR, default_strategies, normalize_whitespace

DetectorFactory.seed = 0

ExtractionOutcome = Union[ExtractedArticle, ExtractionFailure]

class ContentExtractor:
    def __init__(self, extraction_config: Optional[Dict[str, Any]] = None, fetcher=None,
                 strategies: Optional[List[Any]] = None):
        config = extraction_config or {}
        self.min_content_length = config.get('min_content_length', 100)
        self.fallback_min_length = config.get('fallback_min_length', 1)
        self.max_content_length = config.get('max_content_length', 50000)
        self.promo_min_length = config.get('promo_min_length', 15)
        self.default_language = config.get('default_language', 'en')

        self.length_weight = config.get('length_weight', 40)
        self.paragraph_weight = config.get('paragraph_weight', 30)
        self.author_weight = config.get('author_weight', 15)
        self.date_weight = config.get('date_weight', 15)
        self.target_length = config.get('target_length', 3000)
        self.target_paragraphs = config.get('target_paragraphs', 8)

        self.fetcher = fetcher
        self.strategies = strategies or default_strategies(self.min_content_length)
        self.logger = logging.getLogger('scraper.extractor')

    def extract(self, url: str, tracking_enabled: bool = False,
                source: Optional[Source] = None) -> ExtractionOutcome:
        if self.fetcher is None or source is None:
            raise ValueError("extract() needs a fetcher and a source; use extract_from_html() for raw pages")

        fetched = self.fetcher.fetch(url, source)
        if not fetched.ok:
            return ExtractionFailure(url=url, reason=f"Fetch failed: {fetched.error}")
        return self.extract_from_html(url, fetched.html, tracking_enabled,
                                      source_selectors=source.selectors)

    def extract_from_html(self, url: str, html: str, tracking_enabled: bool = False,
                          source_selectors: Optional[List[str]] = None,
                          fallback_title: str = "") -> ExtractionOutcome:
        recorder = ExtractionRecorder(tracking_enabled)
        page = Page.parse(url, html, recorder, source_selectors, self.promo_min_length)
        tried = []

        for strategy in self.strategies:
            tried.append(strategy.name)
            try:
                result = strategy.attempt(page)
            except Exception as e:
                self.logger.warning(f"Strategy {strategy.name} raised for {url}: {e}")
                continue
            if result is None:
                continue

            threshold = self.fallback_min_length if strategy is self.strategies[-1] else self.min_content_length
            content = self._clean_content(result.content)
            if len(content) < threshold:
                continue

            title = result.title or recorder.text(page.soup, 'h1', 'title') or \
                recorder.text(page.soup, 'title', 'title') or fallback_title
            title = normalize_whitespace(title)
            if not title:
                return ExtractionFailure(url=url, reason="Missing title", strategies_tried=tried,
                                         traces=recorder.get_traces())

            article = ExtractedArticle(
                url=url,
                title=title,
                content=content,
                author=normalize_whitespace(result.author),
                published_date=self._parse_date(result.date) if result.date else None,
                strategy=result.strategy,
                traces=recorder.get_traces(),
                raw_html=html,
            )
            article.language = self.detect_language(content)
            article.fingerprint = content_fingerprint(content)
            article.quality_score = self.quality_score(article)
            return article

        return ExtractionFailure(
            url=url,
            reason=f"No strategy produced at least {self.min_content_length} characters",
            strategies_tried=tried,
            traces=recorder.get_traces(),
        )

    def quality_score(self, article: ExtractedArticle) -> int:
        """Advisory 0-100 score from length, paragraph count and metadata presence."""
        length_part = min(len(article.content) / max(self.target_length, 1), 1.0)
        paragraph_part = min(article.paragraph_count / max(self.target_paragraphs, 1), 1.0)

        score = length_part * self.length_weight + paragraph_part * self.paragraph_weight
        if article.author:
            score += self.author_weight
        if article.published_date:
            score += self.date_weight
        return max(0, min(100, int(round(score))))

    def detect_language(self, text: str) -> str:
        sample = (text or '')[:2000]
        if len(sample.strip()) < 20:
            return self.default_language
        try:
            return detect(sample)
        except LangDetectException:
            return self.default_language

    def _clean_content(self, content: str) -> str:
        paragraphs = [normalize_whitespace(p) for p in content.split(PARAGRAPH_SEPARATOR)]
        content = PARAGRAPH_SEPARATOR.join(p for p in paragraphs if p)
        if len(content) > self.max_content_length:
            content = content[:self.max_content_length].rstrip()
        return content

    def _parse_date(self, date_str: str) -> Optional[datetime]:
        date_str = date_str.strip()
        try:
            parsed = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
            return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
        except ValueError:
            pass

        date_formats = [
            '%Y-%m-%dT%H:%M:%S%z',
            '%Y-%m-%dT%H:%M:%SZ',
            '%Y-%m-%d %H:%M:%S',
            '%Y-%m-%d',
            '%d %B %Y',
            '%B %d %Y',
        ]

        date_str = re.sub(r'[^\w\s:+-]', ' ', date_str).strip()
        date_str = re.sub(r'\s+', ' ', date_str)

        for fmt in date_formats:
            try:
                parsed = datetime.strptime(date_str, fmt)
                return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
            except ValueError:
                continue

        return None
