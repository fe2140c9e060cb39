import hashlib
import re
from typing import Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from ..storage.models import DuplicateSkipped

TRACKING_PARAMS = {
    'fbclid', 'gclid', 'ref', '_ga', '_gac', '_gid', 'mc_cid', 'mc_eid',
}

def normalize_content(text: str) -> str:
    text = text or ''
    text = re.sub(r'https?://\S+', '', text)
    text = re.sub(r'[“”‘’]', '"', text)
    text = re.sub(r'[–—]', '-', text)
    text = re.sub(r'\s+', ' ', text)
    return text.strip().lower()

def content_fingerprint(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode('utf-8')).hexdigest()

def normalize_url(url: str) -> str:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    query = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith('utm_') and k.lower() not in TRACKING_PARAMS
    ]
    path = parsed.path
    if path.endswith('/') and path != '/':
        path = path.rstrip('/')

    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path,
                       parsed.params, urlencode(query), ''))

class Deduplicator:
    """URL and content-fingerprint checks against already persisted content.

    URLs are checked first: a re-scraped URL is reported as ``url`` even when
    its content also matches.
    """

    def __init__(self, db_manager):
        self.db_manager = db_manager

    def is_known_url(self, url: str, conn=None) -> bool:
        return self.db_manager.url_exists(url, normalize_url(url), conn=conn)

    def is_duplicate(self, fingerprint: str, conn=None) -> bool:
        return self.db_manager.fingerprint_exists(fingerprint, conn=conn)

    def check(self, url: str, fingerprint: Optional[str] = None, conn=None) -> Optional[DuplicateSkipped]:
        if self.is_known_url(url, conn=conn):
            return DuplicateSkipped('url', f"URL already stored: {url}")
        if fingerprint and self.is_duplicate(fingerprint, conn=conn):
            return DuplicateSkipped('content', f"Content fingerprint already stored: {fingerprint[:8]}")
        return None
