import threading
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest
from requests.structures import CaseInsensitiveDict

from offline_crawler import BasicStats, ConsoleOutput, CrawlRow, Settings

SEED = "http://example.com/"


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Union[str, bytes] = b"", headers=None):
        self.status_code = status_code
        self.content = body.encode("utf-8") if isinstance(body, str) else body
        self.headers = CaseInsensitiveDict(headers or {})


Page = Union[FakeResponse, Exception, Callable[[str], FakeResponse]]


class FakeSession:
    """Serves canned responses by exact URL and records every request."""

    def __init__(self, pages: Dict[str, Page], default: Optional[Page] = None):
        self.pages = pages
        self.default = default
        self.requests: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def _respond(self, method: str, url: str) -> FakeResponse:
        with self._lock:
            self.requests.append((method, url))
        page = self.pages.get(url, self.default)
        if page is None:
            return FakeResponse(404, "<html>not found</html>", {"Content-Type": "text/html"})
        if isinstance(page, Exception):
            raise page
        if callable(page):
            return page(url)
        return page

    def get(self, url, **kwargs):
        return self._respond("GET", url)

    def head(self, url, **kwargs):
        return self._respond("HEAD", url)

    def requested_urls(self) -> List[str]:
        return [u for _, u in self.requests]


class RecordingOutput(ConsoleOutput):
    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.rows: List[CrawlRow] = []
        self.stats: Optional[BasicStats] = None
        self.notices: List[str] = []

    def add_table_header(self) -> None:
        pass

    def add_table_row(self, row: CrawlRow) -> None:
        self.rows.append(row)

    def add_total_stats(self, stats: BasicStats) -> None:
        self.stats = stats

    def add_notice(self, message: str) -> None:
        self.notices.append(message)


def html_response(body: str, status: int = 200, **headers) -> FakeResponse:
    h = {"Content-Type": "text/html; charset=utf-8"}
    h.update({k.replace("_", "-"): v for k, v in headers.items()})
    return FakeResponse(status, body, h)


@pytest.fixture
def make_settings():
    def _make(**kwargs) -> Settings:
        kwargs.setdefault("url", SEED)
        return Settings(**kwargs)

    return _make
