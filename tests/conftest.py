from typing import Dict, List, Optional, Tuple

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from site_archiver import (
    HtmlRenderer,
    PageFetchError,
    RenderedPage,
    Settings,
    bs4_parse,
    extract_anchor_links,
    page_title,
)


class FakeResponse:
    def __init__(self, url: str, status: int = 200, body: bytes = b"", headers=None):
        self.url = url
        self.status_code = status
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.encoding = "utf-8"
        self.apparent_encoding = "utf-8"
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Serves canned bodies by URL; anything unregistered is a 404."""

    def __init__(self):
        self.routes: Dict[str, Tuple[int, bytes, Dict[str, str]]] = {}
        self.head_status: Dict[str, int] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []
        self.headers = CaseInsensitiveDict({"User-Agent": "test-agent"})

    def add(
        self,
        url: str,
        body=b"",
        *,
        status: int = 200,
        content_type: Optional[str] = None,
        head_status: Optional[int] = None,
    ) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        headers = {"Content-Type": content_type} if content_type else {}
        self.routes[url] = (status, body, headers)
        if head_status is not None:
            self.head_status[url] = head_status

    def request(self, method, url, timeout=None, stream=False, headers=None, **kwargs):
        self.calls.append((method, url, dict(headers or {})))
        if url in self.errors:
            raise self.errors[url]
        status, body, hdrs = self.routes.get(url, (404, b"not found", {}))
        if method == "HEAD":
            return FakeResponse(url, self.head_status.get(url, status), b"", hdrs)
        if headers and "Range" in headers and status == 200:
            return FakeResponse(url, 206, body[:1], hdrs)
        return FakeResponse(url, status, body, hdrs)

    def methods_for(self, url: str) -> List[str]:
        return [m for m, u, _ in self.calls if u == url]


class FakeRenderer(HtmlRenderer):
    """Renders canned HTML; ``failures`` maps URL -> (reason, retryable)."""

    def __init__(self, pages: Dict[str, str], failures=None, redirects=None):
        self.pages = pages
        self.failures: Dict[str, Tuple[str, bool]] = dict(failures or {})
        self.redirects: Dict[str, str] = dict(redirects or {})
        self.fetched: List[str] = []
        self.closed = False

    def fetch(self, url: str) -> RenderedPage:
        self.fetched.append(url)
        if url in self.failures:
            reason, retryable = self.failures[url]
            raise PageFetchError(url, reason, retryable=retryable)
        final_url = self.redirects.get(url, url)
        html = self.pages.get(final_url)
        if html is None:
            raise PageFetchError(url, "HTTP 404")
        soup = bs4_parse(html)
        return RenderedPage(
            url=final_url,
            html=html,
            title=page_title(soup),
            links=extract_anchor_links(soup, final_url),
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        global_rps=10000.0,
        per_host_rps=10000.0,
        burst=10000,
        jitter=0.0,
        retry_backoff=0.0,
        workers=4,
        render_js=False,
        archive_root=str(tmp_path / "archives"),
        data_file=str(tmp_path / "data" / "archives.json"),
    )


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


def request_error(message: str = "connection refused") -> requests.ConnectionError:
    return requests.ConnectionError(message)
