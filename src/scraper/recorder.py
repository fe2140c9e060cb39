import json
from typing import List, Any, Optional
from bs4 import BeautifulSoup

from ..storage.models import ExtractionTrace

class ExtractionRecorder:
    """Wraps selector lookups and, when enabled, records every attempt as a trace.

    A disabled recorder performs the lookup and nothing else.
    """

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.traces: List[ExtractionTrace] = []

    def text(self, soup: BeautifulSoup, selector: str, field: str) -> str:
        element = soup.select_one(selector)
        value = element.get_text(' ', strip=True) if element else ''
        return self.record(field, selector, 'text', value)

    def attr(self, soup: BeautifulSoup, selector: str, attribute: str, field: str) -> str:
        element = soup.select_one(selector)
        value = element.get(attribute, '') if element else ''
        if isinstance(value, list):
            value = ' '.join(value)
        return self.record(field, f"{selector}[{attribute}]", 'attr', (value or '').strip())

    def record_structured(self, field: str, selector: str, method: str, value: Any):
        if self.enabled:
            serialized = value if isinstance(value, str) else json.dumps(value, default=str)
            self.traces.append(ExtractionTrace(field, selector, method, serialized))

    def record(self, field: str, selector: str, method: str, value: str) -> str:
        if self.enabled:
            self.traces.append(ExtractionTrace(field, selector, method, value))
        return value

    def get_traces(self) -> Optional[List[ExtractionTrace]]:
        return list(self.traces) if self.enabled else None
