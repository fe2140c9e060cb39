"""Content extraction strategies.

Each strategy exposes ``name`` and ``attempt(page)``; ``attempt`` returns a
``StrategyResult`` or ``None``. The extractor tries them in order and keeps
the first result whose body clears its threshold.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Iterable

import extruct
from bs4 import BeautifulSoup, Tag
from w3lib.html import get_base_url

from .recorder import ExtractionRecorder

logger = logging.getLogger('scraper.extractor')

PARAGRAPH_SEPARATOR = '\n\n'

ARTICLE_TYPES = {'NewsArticle', 'Article', 'ReportageNewsArticle', 'BlogPosting', 'AnalysisNewsArticle'}

STRUCTURED_SYNTAXES = ['json-ld', 'microdata', 'opengraph']

GENERIC_CONTENT_SELECTORS = [
    '[itemprop="articleBody"]',
    'article [class*="body"]:not([class*="meta"])',
    'article [class*="content"]:not([class*="header"])',
    'main [class*="story-body"]',
    '.article-text',
    '.story-content',
    '[data-component="text-block"]',
    '[data-testid="article-body"]',
    'div[class*="Text-sc"]',
    'article div[class*="Paragraph"]',
    'section[name="articleBody"]',
    '.content__article-body',
    'article',
    '.article-content',
    '.story-body',
    '.entry-content',
    '.post-content',
    'main',
]

# Non-content page furniture, removed before selectors run.
NON_CONTENT_SELECTORS = [
    'script', 'style', 'noscript', 'nav', 'footer', 'aside', 'form',
    'figure', 'figcaption', '[class*="caption"]',
    '.social-share', '.share-buttons', '.newsletter-signup',
    '.advertisement', '.ad-container', '.related-articles', '.comments',
]

AUTHOR_SELECTORS = ['.author', '.byline', '.by-author', '.article-author', '[rel="author"]']
DATE_SELECTORS = ['.date', '.published']

def parse_structured_data(html: str, url: str) -> Dict[str, List[Dict[str, Any]]]:
    """JSON-LD, microdata and OpenGraph items in extruct's uniform shape; {} when unparseable."""
    try:
        return extruct.extract(
            html,
            base_url=get_base_url(html, url),
            syntaxes=STRUCTURED_SYNTAXES,
            uniform=True,
            errors='ignore',
        )
    except Exception as e:
        logger.debug(f"Structured data extraction failed for {url}: {e}")
        return {}

@dataclass
class Page:
    url: str
    html: str
    soup: BeautifulSoup
    recorder: ExtractionRecorder
    source_selectors: List[str] = field(default_factory=list)
    promo_min_length: int = 15
    _structured: Optional[Dict[str, List[Dict[str, Any]]]] = field(default=None, repr=False)

    @classmethod
    def parse(cls, url: str, html: str, recorder: Optional[ExtractionRecorder] = None,
              source_selectors: Optional[List[str]] = None, promo_min_length: int = 15) -> 'Page':
        return cls(
            url=url,
            html=html,
            soup=BeautifulSoup(html, 'html.parser'),
            recorder=recorder or ExtractionRecorder(False),
            source_selectors=list(source_selectors or []),
            promo_min_length=promo_min_length,
        )

    def structured_data(self) -> Dict[str, List[Dict[str, Any]]]:
        if self._structured is None:
            self._structured = parse_structured_data(self.html, self.url)
        return self._structured

@dataclass
class StrategyResult:
    strategy: str
    title: str = ""
    paragraphs: List[str] = field(default_factory=list)
    author: str = ""
    date: str = ""

    @property
    def content(self) -> str:
        return PARAGRAPH_SEPARATOR.join(self.paragraphs)

def normalize_whitespace(text: str) -> str:
    return re.sub(r'\s+', ' ', text or '').strip()

def first_text(value: Any) -> str:
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, str) and v.strip()), '')
    return value if isinstance(value, str) else ''

def is_promotional(block: Tag, min_length: int = 15) -> bool:
    """True when the block is nothing but one upper-case link longer than ``min_length``.

    Filtering looks at markup only; the wording of the text never matters.
    """
    text = normalize_whitespace(block.get_text(' '))
    links = block.find_all('a')
    if len(links) != 1:
        return False
    if normalize_whitespace(links[0].get_text(' ')) != text:
        return False
    if text != text.upper() or not any(c.isalpha() for c in text):
        return False
    return len(text) > min_length

def split_plain_paragraphs(text: str) -> List[str]:
    text = (text or '').replace('\r\n', '\n')
    blocks = re.split(r'\n\s*\n', text)
    if len(blocks) == 1:
        blocks = text.split('\n')
    return [normalize_whitespace(b) for b in blocks if normalize_whitespace(b)]

def opengraph_properties(page: Page) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for item in page.structured_data().get('opengraph', []):
        for key, value in item.items():
            text = normalize_whitespace(first_text(value))
            if key.startswith('og:') and text and key not in merged:
                merged[key] = text
    return merged

def page_metadata(page: Page) -> Dict[str, str]:
    soup, rec = page.soup, page.recorder

    author = ''
    for selector in AUTHOR_SELECTORS:
        author = rec.text(soup, selector, 'author')
        if author:
            break
    if not author:
        author = rec.attr(soup, 'meta[name="author"]', 'content', 'author')

    date = rec.attr(soup, 'time', 'datetime', 'date')
    for selector in DATE_SELECTORS:
        if date:
            break
        date = rec.text(soup, selector, 'date')
    if not date:
        date = rec.attr(soup, 'meta[property="article:published_time"]', 'content', 'date')

    return {'author': author, 'date': date}

class StructuredDataStrategy:
    """Reads schema.org article markup, JSON-LD before microdata."""
    name = 'structured-data'

    SYNTAX_SELECTORS = (
        ('json-ld', 'script[type="application/ld+json"]'),
        ('microdata', '[itemscope][itemtype]'),
    )

    def attempt(self, page: Page) -> Optional[StrategyResult]:
        data = page.structured_data()
        for syntax, selector in self.SYNTAX_SELECTORS:
            for item in self._iter_items(data.get(syntax, [])):
                if not self._is_article(item):
                    continue
                page.recorder.record_structured('article', selector, syntax, item)
                body = first_text(item.get('articleBody'))
                if not body.strip():
                    continue
                if '<' in body:
                    body = BeautifulSoup(body, 'html.parser').get_text('\n\n')
                return StrategyResult(
                    strategy=self.name,
                    title=normalize_whitespace(first_text(item.get('headline')) or first_text(item.get('name'))),
                    paragraphs=split_plain_paragraphs(body),
                    author=self._author(item.get('author')),
                    date=first_text(item.get('datePublished')),
                )
        return None

    def _iter_items(self, data: Any) -> Iterable[Dict[str, Any]]:
        if isinstance(data, list):
            for entry in data:
                yield from self._iter_items(entry)
        elif isinstance(data, dict):
            yield data
            if isinstance(data.get('@graph'), list):
                yield from self._iter_items(data['@graph'])

    def _is_article(self, item: Dict[str, Any]) -> bool:
        types = item.get('@type')
        if isinstance(types, str):
            types = [types]
        return bool(types) and any(t in ARTICLE_TYPES for t in types if isinstance(t, str))

    def _author(self, author: Any) -> str:
        if isinstance(author, str):
            return author.strip()
        if isinstance(author, dict):
            return first_text(author.get('name')).strip()
        if isinstance(author, list):
            names = [self._author(a) for a in author]
            return ', '.join(n for n in names if n)
        return ''

class SelectorCascadeStrategy:
    """Tries source-specific selectors, then generic article-body selectors.

    Every element a selector matches contributes to the body, in document
    order, so articles split across sibling blocks are not truncated.
    """
    name = 'selector-cascade'

    def __init__(self, min_content_length: int = 100,
                 generic_selectors: Optional[List[str]] = None):
        self.min_content_length = min_content_length
        self.generic_selectors = generic_selectors or GENERIC_CONTENT_SELECTORS

    def attempt(self, page: Page) -> Optional[StrategyResult]:
        soup = strip_non_content(page.soup, NON_CONTENT_SELECTORS)
        rec = page.recorder

        title = rec.text(soup, 'h1', 'title') or \
            rec.record('title', 'meta[property="og:title"][content]', 'opengraph',
                       opengraph_properties(page).get('og:title', ''))

        for selector in page.source_selectors + self.generic_selectors:
            try:
                elements = soup.select(selector)
            except Exception:
                rec.record('content', selector, 'select-all', '')
                continue

            paragraphs = self._collect(elements, page.promo_min_length)
            content = PARAGRAPH_SEPARATOR.join(paragraphs)
            rec.record('content', selector, 'select-all', content)

            if len(content) >= self.min_content_length:
                meta = page_metadata(page)
                return StrategyResult(
                    strategy=self.name,
                    title=title,
                    paragraphs=paragraphs,
                    author=meta['author'],
                    date=meta['date'],
                )
        return None

    def _collect(self, elements: List[Tag], promo_min_length: int) -> List[str]:
        paragraphs = []
        taken = set()
        for element in elements:
            # nested matches are already covered by their ancestor
            if any(id(parent) in taken for parent in element.parents):
                continue
            taken.add(id(element))

            inner = element.find_all('p')
            if element.name == 'p':
                inner = [element]
            blocks = inner or [element]
            for block in blocks:
                if is_promotional(block, promo_min_length):
                    continue
                text = normalize_whitespace(block.get_text(' '))
                if text:
                    paragraphs.append(text)
        return paragraphs

def strip_non_content(soup: BeautifulSoup, selectors: List[str]) -> BeautifulSoup:
    cleaned = BeautifulSoup(str(soup), 'html.parser')
    for selector in selectors:
        for element in cleaned.select(selector):
            element.decompose()
    return cleaned

class MetaTagStrategy:
    """Last resort: page-level descriptive metadata, else the page's visible body text.

    Any page that loaded with visible text yields content here.
    """
    name = 'meta-tags'

    def attempt(self, page: Page) -> Optional[StrategyResult]:
        soup, rec = page.soup, page.recorder
        og = opengraph_properties(page)

        title = rec.record('title', 'meta[property="og:title"][content]', 'opengraph',
                           og.get('og:title', '')) or \
            rec.attr(soup, 'meta[name="twitter:title"]', 'content', 'title') or \
            rec.text(soup, 'title', 'title')

        description = rec.record('content', 'meta[property="og:description"][content]', 'opengraph',
                                 og.get('og:description', '')) or \
            rec.attr(soup, 'meta[name="description"]', 'content', 'content') or \
            rec.attr(soup, 'meta[name="twitter:description"]', 'content', 'content')

        if description:
            paragraphs = split_plain_paragraphs(description)
        else:
            body = strip_non_content(soup, ['script', 'style', 'noscript', 'template'])
            text = normalize_whitespace((body.body or body).get_text(' '))
            paragraphs = [rec.record('content', 'body', 'text', text)] if text else []

        if not paragraphs:
            return None

        meta = page_metadata(page)
        return StrategyResult(
            strategy=self.name,
            title=title,
            paragraphs=paragraphs,
            author=meta['author'],
            date=meta['date'],
        )

def default_strategies(min_content_length: int = 100) -> List[Any]:
    return [
        StructuredDataStrategy(),
        SelectorCascadeStrategy(min_content_length=min_content_length),
        MetaTagStrategy(),
    ]
