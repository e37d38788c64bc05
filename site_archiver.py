#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import mimetypes
import os
import posixpath
import random
import re
import sys
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from threading import Lock, RLock
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)
from urllib.parse import (
    parse_qsl,
    quote,
    unquote,
    urldefrag,
    urlencode,
    urljoin,
    urlparse,
    urlunparse,
)

import esprima
import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"'\s]+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\(\s*)?([\"']?)([^\"')\s;]+)\1\s*\)?",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')

TRACKING_PARAM_PREFIXES = (
    "utm_",
    "gclid",
    "fbclid",
    "mc_",
    "yclid",
    "icid",
    "cmpid",
)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}

# Stylesheet hosts that cannot be captured meaningfully; unmapped links to them
# are dropped instead of left dangling.
EXTERNAL_FONT_HOSTS = (
    "fonts.googleapis.com",
    "fonts.gstatic.com",
    "use.typekit.net",
    "fonts.bunny.net",
    "use.fontawesome.com",
)

ASSETS_DIR = "assets"
MANIFEST_NAME = ".manifest.json"


class AssetKind(str, Enum):
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    IMAGE = "image"
    FONT = "font"
    MODEL = "model"
    OTHER = "other"


EXTENSION_KINDS: Dict[str, AssetKind] = {
    ".css": AssetKind.STYLESHEET,
    ".js": AssetKind.SCRIPT,
    ".mjs": AssetKind.SCRIPT,
    ".cjs": AssetKind.SCRIPT,
    ".png": AssetKind.IMAGE,
    ".jpg": AssetKind.IMAGE,
    ".jpeg": AssetKind.IMAGE,
    ".gif": AssetKind.IMAGE,
    ".svg": AssetKind.IMAGE,
    ".webp": AssetKind.IMAGE,
    ".avif": AssetKind.IMAGE,
    ".ico": AssetKind.IMAGE,
    ".bmp": AssetKind.IMAGE,
    ".tif": AssetKind.IMAGE,
    ".tiff": AssetKind.IMAGE,
    ".woff": AssetKind.FONT,
    ".woff2": AssetKind.FONT,
    ".ttf": AssetKind.FONT,
    ".otf": AssetKind.FONT,
    ".eot": AssetKind.FONT,
    ".glb": AssetKind.MODEL,
    ".gltf": AssetKind.MODEL,
    ".obj": AssetKind.MODEL,
    ".fbx": AssetKind.MODEL,
    ".stl": AssetKind.MODEL,
    ".usdz": AssetKind.MODEL,
    ".dae": AssetKind.MODEL,
    ".ply": AssetKind.MODEL,
    ".3ds": AssetKind.MODEL,
}

# Extensions a bare JS string literal may end in to count as an asset reference.
LITERAL_EXTENSIONS = set(EXTENSION_KINDS) | {
    ".json",
    ".webmanifest",
    ".mp4",
    ".webm",
    ".mp3",
    ".ogg",
    ".wav",
}

# Ordered: more specific tokens first ("json" before "js", "woff2" before "woff").
URL_EXTENSION_HINTS: Tuple[Tuple[str, str], ...] = (
    ("stylesheet", ".css"),
    ("css", ".css"),
    ("json", ".json"),
    ("javascript", ".js"),
    ("woff2", ".woff2"),
    ("woff", ".woff"),
    ("ttf", ".ttf"),
    ("png", ".png"),
    ("jpeg", ".jpg"),
    ("jpg", ".jpg"),
    ("gif", ".gif"),
    ("svg", ".svg"),
    ("webp", ".webp"),
    ("glb", ".glb"),
    ("gltf", ".gltf"),
    ("js", ".js"),
)
DEFAULT_EXTENSION = ".bin"

PRELOAD_KINDS = {
    "style": AssetKind.STYLESHEET,
    "script": AssetKind.SCRIPT,
    "image": AssetKind.IMAGE,
    "font": AssetKind.FONT,
}

_JS_QUOTED = r"(?P<q>['\"`])(?P<u>[^'\"`\s]+?)(?P=q)"
_LITERAL_EXT_ALT = "|".join(
    sorted((e.lstrip(".") for e in LITERAL_EXTENSIONS), key=len, reverse=True)
)

# (pattern class, regex). Every regex exposes the candidate as group "u".
JS_REFERENCE_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("fetch", re.compile(r"\bfetch\(\s*" + _JS_QUOTED)),
    ("import", re.compile(r"\bimport\s*\(\s*" + _JS_QUOTED)),
    ("import", re.compile(r"\bimport\s+(?:[\w$*{}\s,]+?\s+from\s+)?" + _JS_QUOTED)),
    ("import", re.compile(r"\brequire\(\s*" + _JS_QUOTED)),
    ("url", re.compile(r"\bnew\s+URL\(\s*" + _JS_QUOTED)),
    (
        "request",
        re.compile(
            r"\baxios(?:\.(?:get|post|put|patch|delete|head|request))?\(\s*"
            + _JS_QUOTED
        ),
    ),
    ("request", re.compile(r"\$\.(?:ajax|get|getJSON|post)\(\s*" + _JS_QUOTED)),
    ("request", re.compile(r"\.open\(\s*['\"][A-Za-z]+['\"]\s*,\s*" + _JS_QUOTED)),
    (
        "literal",
        re.compile(
            r"(?P<q>['\"`])(?P<u>[^'\"`\s]+?\.(?:"
            + _LITERAL_EXT_ALT
            + r")(?:\?[^'\"`\s]*)?)(?P=q)",
            re.IGNORECASE,
        ),
    ),
)

TEMPLATE_MARKERS = ("${", "{{", "}}", "<%", "%>")
PLACEHOLDER_MARKERS = (
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "example.com",
    "example.org",
    "example.net",
    "your-domain",
    "yourdomain",
)
API_PATH_HINTS = ("/api/", "/graphql", "/rest/", "/wp-json/", "/v1/", "/v2/", "/v3/")

JS_SCRIPT_TYPES = {
    "",
    "text/javascript",
    "application/javascript",
    "module",
    "text/ecmascript",
    "application/ecmascript",
}

# -------------------- Errors --------------------


class ArchiveError(RuntimeError):
    pass


class PageFetchError(ArchiveError):
    def __init__(self, url: str, reason: str, *, retryable: bool = False):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.retryable = retryable


class SeedUnreachableError(ArchiveError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"could not capture seed URL {url}: {reason}")
        self.url = url
        self.reason = reason


class DownloadError(ArchiveError):
    pass


class ArchiveNotFoundError(ArchiveError, KeyError):
    def __init__(self, archive_id: str):
        super().__init__(f"unknown archive: {archive_id}")
        self.archive_id = archive_id

    def __str__(self) -> str:
        return self.args[0]


# -------------------- Settings --------------------


@dataclass
class Settings:
    # HTTP
    timeout: float = 15.0
    workers: int = 8
    max_bytes: int = 50_000_000

    # Crawl
    max_pages: int = 50
    max_depth: int = 2
    strip_params: bool = True
    allow_params: Set[str] = field(default_factory=set)
    page_retries: int = 2
    retry_backoff: float = 1.0

    # Rendering
    render_js: bool = True
    render_timeout_ms: int = 30000
    wait_until: str = "networkidle"
    settle_ms: int = 0

    # Extraction
    mine_stylesheets: bool = True
    mine_scripts: bool = True
    nested_depth: int = 3
    max_nested_fetches: int = 200

    # Materialization
    model_placeholders: bool = True

    # Rewriting
    rewrite_js: bool = False  # regex
    rewrite_js_ast: bool = False  # esprima
    fallback_matching: bool = True

    # Throttle
    global_rps: float = 8.0
    per_host_rps: float = 4.0
    burst: int = 4
    jitter: float = 0.1
    max_backoff: float = 60.0
    auto_throttle: bool = True

    # Storage
    archive_root: str = "archives"
    data_file: str = "data/archives.json"
    max_jobs: int = 2


# -------------------- Throttle --------------------


class TokenBucket:
    """Refilling token bucket; ``reserve`` returns how long the caller must sleep."""

    def __init__(self, rate: float, capacity: float):
        self.rate = max(rate, 0.001)
        self.capacity = max(capacity, 1.0)
        self._tokens = self.capacity
        self._stamp = time.monotonic()
        self._lock = Lock()

    def reserve(self, tokens: float = 1.0) -> float:
        with self._lock:
            now = time.monotonic()
            self._tokens = min(
                self.capacity, self._tokens + (now - self._stamp) * self.rate
            )
            self._stamp = now
            self._tokens -= tokens
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    v = value.strip()
    if v.isdigit():
        return float(v)
    try:
        when = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if not when.tzinfo:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(tz=timezone.utc)).total_seconds())


class Throttle:
    """Global and per-host rate limits plus backoff after 429/503 answers.

    One instance is owned by one archive job; jobs never share throttles.
    """

    def __init__(self, settings: Settings):
        self.s = settings
        self.global_bucket = TokenBucket(settings.global_rps, settings.burst)
        self._hosts: Dict[str, TokenBucket] = {}
        self._blocked_until: Dict[str, float] = {}
        self._strikes: Dict[str, int] = {}
        self._lock = Lock()

    def _bucket(self, host: str) -> TokenBucket:
        with self._lock:
            if host not in self._hosts:
                self._hosts[host] = TokenBucket(self.s.per_host_rps, self.s.burst)
            return self._hosts[host]

    def acquire(self, url: str) -> None:
        host = urlparse(url).netloc
        wait = max(self.global_bucket.reserve(), self._bucket(host).reserve())
        with self._lock:
            wait = max(wait, self._blocked_until.get(host, 0.0) - time.monotonic())
        if wait > 0 and self.s.jitter > 0:
            wait += random.uniform(0, self.s.jitter * wait)
        if wait > 0:
            time.sleep(wait)

    def on_result(self, url: str, status: int, headers: Mapping[str, str]) -> None:
        if not self.s.auto_throttle:
            return
        host = urlparse(url).netloc
        with self._lock:
            if status in (429, 503):
                delay = parse_retry_after(headers.get("Retry-After"))
                if delay is None:
                    self._strikes[host] = self._strikes.get(host, 0) + 1
                    delay = 2 ** min(self._strikes[host], 6)
                delay = min(self.s.max_backoff, delay)
                logging.info("backing off %s for %.1fs (HTTP %d)", host, delay, status)
                self._blocked_until[host] = max(
                    self._blocked_until.get(host, 0.0), time.monotonic() + delay
                )
            elif 200 <= status < 300:
                self._strikes.pop(host, None)


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.startswith(
        ("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")
    ):
        return False
    return True


def is_http_url(u: str) -> bool:
    p = urlparse(u)
    return p.scheme in ("http", "https") and bool(p.netloc)


def is_same_origin(base: str, other: str) -> bool:
    b, o = urlparse(base), urlparse(other)
    return (b.scheme, b.netloc.lower()) == (o.scheme, o.netloc.lower())


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=4,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=64, pool_maxsize=64)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_json(path: Path, data: Union[dict, list]) -> None:
    ensure_parent_dir(path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def utc_timestamp() -> str:
    # RFC3339 UTC timestamp without microseconds
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def short_h(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()[:8]


def kind_for_url(url: str) -> AssetKind:
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    return EXTENSION_KINDS.get(ext, AssetKind.OTHER)


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if ct in ("application/javascript", "text/javascript"):
        return ".js"
    if ct == "application/json":
        return ".json"
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "image/jpeg":
        return ".jpg"
    if ct == "font/woff2":
        return ".woff2"
    if ct == "font/woff":
        return ".woff"
    if ct == "model/gltf-binary":
        return ".glb"
    if ct == "model/gltf+json":
        return ".gltf"
    if ct == "application/manifest+json":
        return ".webmanifest"
    return mimetypes.guess_extension(ct)


def infer_extension(url: str, content_type: Optional[str] = None) -> str:
    ext = guess_ext_from_type(content_type)
    if ext:
        return ext
    low = url.lower()
    for token, hint in URL_EXTENSION_HINTS:
        if token in low:
            return hint
    return DEFAULT_EXTENSION


def has_literal_extension(u: str) -> bool:
    ext = os.path.splitext(urlparse(u).path)[1].lower()
    return ext in LITERAL_EXTENSIONS


def plausible_js_reference(u: str) -> bool:
    if not 3 <= len(u) <= 200:
        return False
    if any(m in u for m in TEMPLATE_MARKERS):
        return False
    if not can_fetch_url(u):
        return False
    low = u.lower()
    if any(m in low for m in PLACEHOLDER_MARKERS):
        return False
    if has_literal_extension(u):
        return True
    return any(h in low for h in API_PATH_HINTS)


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="minimal")


def page_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return ""


def extract_anchor_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    base = effective_base_url(soup, base_url)
    urls: Dict[str, None] = {}
    for a in soup.select("a[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        urls[urljoin(base, href.strip())] = None
    return list(urls)


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts:
            urls.append(parts[0])
    return urls


def _replace_group(m: "re.Match[str]", group: Union[int, str], new: str) -> str:
    start, end = m.span(group)
    offset = m.start(0)
    text = m.group(0)
    return text[: start - offset] + new + text[end - offset :]


# -------------------- URL normalize --------------------


def normalize_url(u: str, *, strip_params: bool, allow_params: Set[str]) -> str:
    p = urlparse(u)
    p = p._replace(fragment="")
    if not strip_params or not p.query:
        return urlunparse((p.scheme, p.netloc, p.path, p.params, p.query, ""))
    qs = parse_qsl(p.query, keep_blank_values=True)
    allow_lc = {k.lower() for k in allow_params}
    keep = []
    for k, v in qs:
        kl = k.lower()
        if kl in allow_lc:
            keep.append((k, v))
            continue
        drop = any(kl.startswith(pref) for pref in TRACKING_PARAM_PREFIXES)
        if not drop:
            keep.append((k, v))
    new_q = urlencode(keep, doseq=True)
    return urlunparse((p.scheme, p.netloc, p.path, p.params, new_q, ""))


def canonical_url(u: str, settings: Settings) -> str:
    """Key for a URL's version chain: lowercase host, ``/`` for an empty path."""
    p = urlparse(
        normalize_url(
            u.strip(),
            strip_params=settings.strip_params,
            allow_params=settings.allow_params,
        )
    )
    return urlunparse(p._replace(netloc=p.netloc.lower(), path=p.path or "/"))


def slash_variants(u: str) -> List[str]:
    p = urlparse(u)
    path = p.path or "/"
    if path == "/":
        alt = [urlunparse(p._replace(path="/")), urlunparse(p._replace(path=""))]
    elif path.endswith("/"):
        alt = [urlunparse(p._replace(path=path.rstrip("/")))]
    else:
        alt = [urlunparse(p._replace(path=path + "/"))]
    return [v for v in alt if v != u]


# -------------------- Output layout --------------------


def _path_segments(path: str) -> List[str]:
    return [sanitize_filename(unquote(seg)) for seg in path.split("/") if seg]


def page_path_for_url(page_url: str) -> str:
    """Archive-relative file path for a captured page.

    ``/`` becomes ``index.html``, ``/docs/`` becomes ``docs/index.html`` and
    ``/about`` becomes ``about.html``; paths with an extension are kept. A query
    string embeds a short hash so query variants of one path stay distinct.
    """
    p = urlparse(page_url)
    path = p.path or "/"
    segs = _path_segments(path)
    if path.endswith("/") or not segs:
        segs.append("index.html")
    elif not os.path.splitext(segs[-1])[1]:
        segs[-1] += ".html"
    if p.query:
        stem, ext = posixpath.splitext(segs[-1])
        segs[-1] = f"{stem}-{short_h(p.query)}{ext}"
    return posixpath.join(*segs)


def asset_path_for_url(asset_url: str, content_type: Optional[str] = None) -> str:
    """Path-preserving archive-relative location: ``assets/<host>/<url path>``."""
    au = urlparse(asset_url)
    host = sanitize_filename(au.netloc.lower()) or "host"
    segs = _path_segments(au.path)
    if au.path.endswith("/") or not segs:
        segs.append("index")
    stem, ext = os.path.splitext(segs[-1])
    if au.query:
        stem = f"{stem}-{short_h(asset_url)}"
    if not ext:
        ext = infer_extension(asset_url, content_type)
    segs[-1] = stem + ext
    return posixpath.join(ASSETS_DIR, host, *segs)


class PathRegistry:
    """Archive-relative paths handed out so far, compared case-insensitively.

    A clash with a path owned by another URL embeds that URL's hash in the stem.
    """

    def __init__(self, reserved: Iterable[str] = ()):
        self._owners: Dict[str, str] = {p.lower(): "" for p in reserved}
        self._lock = Lock()

    def claim(self, url: str, path: str) -> str:
        with self._lock:
            owner = self._owners.get(path.lower())
            if owner is None or owner == url:
                self._owners[path.lower()] = url
                return path
            stem, ext = posixpath.splitext(path)
            alt = f"{stem}-{short_h(url)}{ext}"
            self._owners[alt.lower()] = url
            logging.debug("path collision on %s; %s -> %s", path, url, alt)
            return alt


def relative_ref(target: str, from_dir: str) -> str:
    # on-disk names may hold "#", "%" or spaces
    return quote(posixpath.relpath(target, from_dir or "."), safe="/")


# -------------------- Data model --------------------


@dataclass
class CapturedPage:
    url: str
    html: str
    title: str
    links: List[str]
    output_path: str
    final_url: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self.final_url or self.url


@dataclass
class Asset:
    url: str
    kind: AssetKind
    found_on: str


UrlMapping = Dict[str, str]


class ArchiveStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ArchiveRecord:
    id: str
    url: str
    original_url: str
    version: int = 1
    status: str = ArchiveStatus.PROCESSING.value
    created_at: str = field(default_factory=utc_timestamp)
    completed_at: Optional[str] = None
    page_count: Optional[int] = None
    asset_count: Optional[int] = None
    failed_asset_count: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ArchiveRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def new_archive_id() -> str:
    return uuid.uuid4().hex


# -------------------- HTTP + throttle --------------------


def throttled_request(
    session: requests.Session,
    throttle: Throttle,
    method: str,
    url: str,
    *,
    timeout: float,
    stream: bool = False,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    throttle.acquire(url)
    r = session.request(
        method,
        url,
        timeout=timeout,
        stream=stream,
        headers=headers,
        allow_redirects=True,
    )
    throttle.on_result(url, r.status_code, r.headers)
    return r


def throttled_get(
    session: requests.Session,
    throttle: Throttle,
    url: str,
    *,
    timeout: float,
    stream: bool = False,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    return throttled_request(
        session, throttle, "GET", url, timeout=timeout, stream=stream, headers=headers
    )


# -------------------- Rendering --------------------


@dataclass
class RenderedPage:
    url: str
    html: str
    title: str
    links: List[str]


class HtmlRenderer:
    def fetch(self, url: str) -> RenderedPage:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RequestsRenderer(HtmlRenderer):
    """Plain HTTP fetch; no JavaScript runs, so client-rendered markup is lost."""

    def __init__(self, session: requests.Session, throttle: Throttle, timeout: float):
        self.session = session
        self.throttle = throttle
        self.timeout = timeout

    def fetch(self, url: str) -> RenderedPage:
        try:
            r = throttled_get(self.session, self.throttle, url, timeout=self.timeout)
        except requests.RequestException as e:
            raise PageFetchError(url, str(e), retryable=True) from e
        if r.status_code >= 400:
            raise PageFetchError(
                url,
                f"HTTP {r.status_code}",
                retryable=r.status_code in RETRYABLE_STATUS,
            )
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise PageFetchError(url, f"not an HTML document ({ct or 'no type'})")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        final_url = r.url or url
        soup = bs4_parse(r.text)
        return RenderedPage(
            url=final_url,
            html=r.text,
            title=page_title(soup),
            links=extract_anchor_links(soup, final_url),
        )


class PlaywrightRenderer(HtmlRenderer):
    """Headless Chromium fetch that waits for the network to settle.

    The browser is started lazily in the calling thread and must be closed from
    that same thread.
    """

    def __init__(
        self,
        throttle: Throttle,
        *,
        wait_until: str = "networkidle",
        timeout_ms: int = 30000,
        settle_ms: int = 0,
        user_agent: Optional[str] = None,
    ):
        self.throttle = throttle
        self.wait_until = wait_until
        self.timeout_ms = timeout_ms
        self.settle_ms = settle_ms
        self.user_agent = user_agent
        self._pl = None
        self._browser = None

    def _ensure_browser(self):
        if self._browser is None:
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(headless=True)
        return self._browser

    def fetch(self, url: str) -> RenderedPage:
        browser = self._ensure_browser()
        self.throttle.acquire(url)
        context = browser.new_context(user_agent=self.user_agent)
        try:
            page = context.new_page()
            response = page.goto(url, wait_until=self.wait_until, timeout=self.timeout_ms)
            if response is not None and response.status >= 400:
                self.throttle.on_result(url, response.status, response.headers)
                raise PageFetchError(
                    url,
                    f"HTTP {response.status}",
                    retryable=response.status in RETRYABLE_STATUS,
                )
            if self.settle_ms:
                page.wait_for_timeout(self.settle_ms)
            html = page.content()
            title = page.title()
            links = page.eval_on_selector_all(
                "a[href]", "els => els.map(a => a.href)"
            )
            final_url = page.url
        except PlaywrightTimeoutError as e:
            raise PageFetchError(
                url, f"timed out after {self.timeout_ms} ms", retryable=True
            ) from e
        except PlaywrightError as e:
            raise PageFetchError(url, str(e), retryable=True) from e
        finally:
            context.close()
        self.throttle.on_result(url, 200, {})
        return RenderedPage(
            url=final_url,
            html=html,
            title=(title or "").strip(),
            links=list(dict.fromkeys(u for u in links if can_fetch_url(u))),
        )

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._pl is not None:
            self._pl.stop()
            self._pl = None


def get_renderer(
    settings: Settings, session: requests.Session, throttle: Throttle
) -> HtmlRenderer:
    if settings.render_js:
        return PlaywrightRenderer(
            throttle,
            wait_until=settings.wait_until,
            timeout_ms=settings.render_timeout_ms,
            settle_ms=settings.settle_ms,
            user_agent=session.headers.get("User-Agent"),
        )
    return RequestsRenderer(session, throttle, settings.timeout)


# -------------------- Crawler --------------------


class Crawler:
    """Bounded breadth-first capture of same-origin pages.

    All traversal state lives inside one ``crawl`` call, so one instance may be
    reused but never shares a visited set between jobs.
    """

    def __init__(self, renderer: HtmlRenderer, settings: Settings):
        self.renderer = renderer
        self.settings = settings

    def normalize(self, url: str) -> str:
        return normalize_url(
            url,
            strip_params=self.settings.strip_params,
            allow_params=self.settings.allow_params,
        )

    def fetch_with_retry(self, url: str) -> RenderedPage:
        attempt = 0
        while True:
            try:
                return self.renderer.fetch(url)
            except PageFetchError as e:
                if not e.retryable or attempt >= self.settings.page_retries:
                    raise
                wait = min(
                    self.settings.max_backoff,
                    self.settings.retry_backoff * 2**attempt,
                )
                attempt += 1
                logging.info(
                    "retrying %s in %.1fs (attempt %d/%d): %s",
                    url,
                    wait,
                    attempt,
                    self.settings.page_retries,
                    e.reason,
                )
                time.sleep(wait)

    def crawl(
        self,
        seed_url: str,
        max_depth: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> List[CapturedPage]:
        max_depth = self.settings.max_depth if max_depth is None else max_depth
        max_pages = self.settings.max_pages if max_pages is None else max_pages
        seed = self.normalize(seed_url)
        origins = [seed]
        frontier: deque[Tuple[str, int]] = deque([(seed, 0)])
        enqueued: Set[str] = {seed}
        visited: Set[str] = set()
        paths = PathRegistry(reserved=[MANIFEST_NAME])
        pages: List[CapturedPage] = []

        while frontier and len(pages) < max_pages:
            url, depth = frontier.popleft()
            if url in visited or depth > max_depth:
                continue
            visited.add(url)

            logging.info(
                "fetch page [%d/%d] depth=%d: %s",
                len(pages) + 1,
                max_pages,
                depth,
                url,
            )
            try:
                rendered = self.fetch_with_retry(url)
            except PageFetchError as e:
                if url == seed:
                    raise SeedUnreachableError(seed_url, e.reason) from e
                logging.warning("skipping page %s: %s", url, e.reason)
                continue

            if url == seed and not is_same_origin(seed, rendered.url):
                # the seed redirected (http -> https, bare -> www)
                origins.append(rendered.url)

            links: Dict[str, None] = {}
            for link in rendered.links:
                if not is_http_url(link):
                    continue
                n = self.normalize(link)
                if any(is_same_origin(o, n) for o in origins):
                    links[n] = None

            pages.append(
                CapturedPage(
                    url=url,
                    html=rendered.html,
                    title=rendered.title,
                    links=list(links),
                    output_path=paths.claim(url, page_path_for_url(url)),
                    final_url=rendered.url,
                )
            )

            if depth < max_depth:
                for n in links:
                    if n not in enqueued:
                        frontier.append((n, depth + 1))
                        enqueued.add(n)

        logging.info("crawled %d page(s) from %s", len(pages), seed_url)
        return pages


# -------------------- Extraction --------------------

Reference = Tuple[str, Optional[AssetKind]]


def css_references(css_text: str, base_url: str) -> List[Reference]:
    refs: List[Reference] = []
    for m in CSS_IMPORT_RE.finditer(css_text):
        u = m.group(2).strip()
        if can_fetch_url(u):
            refs.append((urljoin(base_url, u), AssetKind.STYLESHEET))
    for m in CSS_URL_RE.finditer(css_text):
        u = m.group(2).strip()
        if can_fetch_url(u):
            refs.append((urljoin(base_url, u), None))
    return refs


def js_references(js_text: str, page_url: str, script_url: str) -> List[Reference]:
    """Asset-looking string literals in script text.

    Module specifiers (``import``/``require``) resolve against the script's own
    URL; everything else runs in the page's context and resolves against it.
    """
    refs: List[Reference] = []
    for cls, pattern in JS_REFERENCE_PATTERNS:
        for m in pattern.finditer(js_text):
            u = m.group("u").strip()
            if not plausible_js_reference(u):
                continue
            if cls == "import":
                refs.append((urljoin(script_url, u), AssetKind.SCRIPT))
            else:
                refs.append((urljoin(page_url, u), None))
    return refs


def page_references(soup: BeautifulSoup, page_url: str) -> List[Reference]:
    base = effective_base_url(soup, page_url)
    refs: List[Reference] = []

    def add(raw: Optional[str], hint: Optional[AssetKind]) -> None:
        if can_fetch_url(raw):
            refs.append((urljoin(base, raw.strip()), hint))

    for link in soup.select("link[href]"):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" in rels:
            add(link.get("href"), AssetKind.STYLESHEET)
        elif any("icon" in r for r in rels):
            add(link.get("href"), AssetKind.IMAGE)
        elif "modulepreload" in rels:
            add(link.get("href"), AssetKind.SCRIPT)
        elif "preload" in rels:
            as_type = (link.get("as") or "").lower()
            if as_type in PRELOAD_KINDS:
                add(link.get("href"), PRELOAD_KINDS[as_type])
    for tag in soup.select("script[src]"):
        add(tag.get("src"), AssetKind.SCRIPT)
    for tag in soup.select("img[src], input[type=image][src]"):
        add(tag.get("src"), AssetKind.IMAGE)
    for tag in soup.select("img[srcset], source[srcset]"):
        for u in parse_srcset(tag.get("srcset", "")):
            add(u, AssetKind.IMAGE)
    for tag in soup.select("source[src], video[src], audio[src], track[src]"):
        add(tag.get("src"), None)
    for tag in soup.select("video[poster]"):
        add(tag.get("poster"), AssetKind.IMAGE)
    for tag in soup.find_all("model-viewer"):
        for attr in ("src", "ios-src"):
            add(tag.get(attr), AssetKind.MODEL)
    for tag in soup.select("[style]"):
        refs.extend(css_references(tag.get("style") or "", base))
    for style in soup.find_all("style"):
        refs.extend(css_references(style.get_text(), base))
    for script in soup.find_all("script"):
        if script.get("src"):
            continue
        if (script.get("type") or "").strip().lower() not in JS_SCRIPT_TYPES:
            continue
        refs.extend(js_references(script.get_text(), base, base))
    return refs


class ReferenceExtractor:
    """Static asset discovery over captured markup and the files it references.

    External stylesheets and scripts are fetched once each to mine nested
    references; those fetches are bounded by ``nested_depth`` and
    ``max_nested_fetches`` and a failed fetch simply contributes nothing.
    """

    def __init__(self, session: requests.Session, throttle: Throttle, settings: Settings):
        self.session = session
        self.throttle = throttle
        self.settings = settings

    def extract(self, pages: Iterable[CapturedPage]) -> List[Asset]:
        found: Dict[str, Asset] = {}
        to_mine: deque[Tuple[Asset, int]] = deque()

        for page in pages:
            soup = bs4_parse(page.html)
            for url, hint in page_references(soup, page.base_url):
                asset = self._record(found, url, hint, page.url)
                if asset is not None and self._minable(asset):
                    to_mine.append((asset, 1))

        mined: Set[str] = set()
        fetches = 0
        while to_mine:
            asset, level = to_mine.popleft()
            if asset.url in mined:
                continue
            if fetches >= self.settings.max_nested_fetches:
                logging.info(
                    "nested reference fetch limit reached (%d); %d file(s) not mined",
                    fetches,
                    len(to_mine) + 1,
                )
                break
            mined.add(asset.url)
            fetches += 1
            text = self.fetch_text(asset.url)
            if text is None:
                continue
            if asset.kind is AssetKind.STYLESHEET:
                nested = css_references(text, asset.url)
            else:
                nested = js_references(text, asset.found_on, asset.url)
            for url, hint in nested:
                child = self._record(found, url, hint, asset.found_on)
                if (
                    child is not None
                    and self._minable(child)
                    and level < self.settings.nested_depth
                ):
                    to_mine.append((child, level + 1))

        assets = list(found.values())
        by_kind: Dict[str, int] = {}
        for a in assets:
            by_kind[a.kind.value] = by_kind.get(a.kind.value, 0) + 1
        logging.info("found %d asset(s): %s", len(assets), by_kind)
        return assets

    def _minable(self, asset: Asset) -> bool:
        if asset.kind is AssetKind.STYLESHEET:
            return self.settings.mine_stylesheets
        if asset.kind is AssetKind.SCRIPT:
            return self.settings.mine_scripts
        return False

    @staticmethod
    def _record(
        found: Dict[str, Asset], url: str, hint: Optional[AssetKind], found_on: str
    ) -> Optional[Asset]:
        url = urldefrag(url)[0]
        if not is_http_url(url) or url in found:
            return None
        kind = kind_for_url(url)
        if kind is AssetKind.OTHER and hint is not None:
            kind = hint
        asset = Asset(url=url, kind=kind, found_on=found_on)
        found[url] = asset
        return asset

    def fetch_text(self, url: str) -> Optional[str]:
        try:
            r = throttled_get(
                self.session, self.throttle, url, timeout=self.settings.timeout
            )
        except requests.RequestException as e:
            logging.warning("could not fetch %s for nested references: %s", url, e)
            return None
        if r.status_code >= 400:
            logging.debug("nested fetch %s -> HTTP %s", url, r.status_code)
            return None
        if not r.encoding:
            r.encoding = "utf-8"
        return r.text


# -------------------- Materializer --------------------


class AssetMaterializer:
    """Probe, place and download assets on a bounded worker pool.

    Each asset succeeds or fails on its own; only successful downloads (and
    empty placeholders for missing 3-D models) enter the returned mapping.
    ``reserved`` holds archive-relative paths already taken, e.g. by pages.
    """

    def __init__(
        self,
        session: requests.Session,
        throttle: Throttle,
        settings: Settings,
        reserved: Iterable[str] = (),
    ):
        self.session = session
        self.throttle = throttle
        self.settings = settings
        self.paths = PathRegistry(reserved)
        self._lock = Lock()
        self.failed: Dict[str, str] = {}
        self.placeholders: Set[str] = set()

    def claim(self, url: str, path: str) -> str:
        """Reserve ``path`` for ``url``; a clash embeds the URL hash in the stem."""
        return self.paths.claim(url, path)

    def materialize(
        self, assets: Iterable[Asset], output_root: Union[str, Path]
    ) -> UrlMapping:
        output_root = Path(output_root)
        unique: Dict[str, Asset] = {}
        for a in assets:
            unique.setdefault(a.url, a)
        if not unique:
            return {}

        results: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            probes = dict(zip(unique, pool.map(self.probe, unique)))

            # claims run in input order so clashes resolve the same way every run
            planned: Dict[str, str] = {}
            for url, a in unique.items():
                ok, content_type, reason = probes[url]
                if ok:
                    planned[url] = self.claim(url, asset_path_for_url(url, content_type))
                    continue
                rel = self._fail(a, output_root, reason)
                if rel is not None:
                    results[url] = rel

            future_map = {
                pool.submit(self.fetch_one, unique[url], rel, output_root): url
                for url, rel in planned.items()
            }
            for fut in as_completed(future_map):
                rel = fut.result()
                if rel is not None:
                    results[future_map[fut]] = rel

        # input order, independent of completion order
        mapping = {u: results[u] for u in unique if u in results}
        logging.info(
            "materialized %d/%d asset(s), %d failed",
            len(mapping) - len(self.placeholders),
            len(unique),
            len(self.failed),
        )
        return mapping

    def fetch_one(self, asset: Asset, rel: str, output_root: Path) -> Optional[str]:
        try:
            size = self.download(asset.url, output_root / rel)
        except (requests.RequestException, DownloadError, OSError) as e:
            return self._fail(asset, output_root, str(e), rel)
        logging.debug("downloaded %s -> %s (%d bytes)", asset.url, rel, size)
        return rel

    def probe(self, url: str) -> Tuple[bool, Optional[str], str]:
        """HEAD the URL, falling back to a one-byte ranged GET."""
        try:
            r = throttled_request(
                self.session, self.throttle, "HEAD", url, timeout=self.settings.timeout
            )
            if r.status_code < 400:
                return True, r.headers.get("Content-Type"), ""
            reason = f"HEAD HTTP {r.status_code}"
        except requests.RequestException as e:
            reason = f"HEAD failed: {e}"
        try:
            r = throttled_get(
                self.session,
                self.throttle,
                url,
                timeout=self.settings.timeout,
                stream=True,
                headers={"Range": "bytes=0-0"},
            )
            r.close()
        except requests.RequestException as e:
            return False, None, f"{reason}; ranged GET failed: {e}"
        if r.status_code < 400:
            return True, r.headers.get("Content-Type"), ""
        return False, None, f"{reason}; ranged GET HTTP {r.status_code}"

    def download(self, url: str, target: Path) -> int:
        resp = throttled_get(
            self.session, self.throttle, url, timeout=self.settings.timeout, stream=True
        )
        try:
            if resp.status_code >= 400:
                raise DownloadError(f"HTTP {resp.status_code}")
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.settings.max_bytes:
                raise DownloadError(f"too large ({cl} bytes)")
            ensure_parent_dir(target)
            written = 0
            try:
                with open(target, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        if not chunk:
                            continue
                        written += len(chunk)
                        if written > self.settings.max_bytes:
                            raise DownloadError(
                                f"exceeded {self.settings.max_bytes} bytes"
                            )
                        f.write(chunk)
                if written == 0:
                    raise DownloadError("empty response")
            except (requests.RequestException, DownloadError, OSError):
                target.unlink(missing_ok=True)
                raise
            return written
        finally:
            resp.close()

    def _fail(
        self,
        asset: Asset,
        output_root: Path,
        reason: str,
        rel: Optional[str] = None,
    ) -> Optional[str]:
        with self._lock:
            self.failed[asset.url] = reason
        logging.warning("asset failed %s: %s", asset.url, reason)
        if asset.kind is not AssetKind.MODEL or not self.settings.model_placeholders:
            return None
        rel = rel or self.claim(asset.url, asset_path_for_url(asset.url))
        target = output_root / rel
        ensure_parent_dir(target)
        target.touch()
        with self._lock:
            self.placeholders.add(asset.url)
        logging.info("empty placeholder for missing model %s -> %s", asset.url, rel)
        return rel


# -------------------- Rewriters --------------------


def build_page_map(pages: Iterable[CapturedPage], settings: Settings) -> Dict[str, str]:
    """Normalized page URL (plus slash variants and final URLs) -> output path."""
    page_map: Dict[str, str] = {}
    pages = list(pages)
    for page in pages:
        page_map[page.url] = page.output_path
    for page in pages:
        keys = [page.url]
        if page.final_url:
            keys.append(
                normalize_url(
                    page.final_url,
                    strip_params=settings.strip_params,
                    allow_params=settings.allow_params,
                )
            )
        for key in keys:
            for variant in [key] + slash_variants(key):
                page_map.setdefault(variant, page.output_path)
    return page_map


class ReferenceResolver:
    """URL -> archive path lookups shared by every rewrite of one job.

    Exact lookups come first. ``fallback`` is a separate best-effort strategy
    for references that only match by path or filename; a miss there leaves the
    reference untouched.
    """

    def __init__(
        self,
        mapping: Mapping[str, str],
        page_map: Mapping[str, str],
        settings: Settings,
    ):
        self.mapping = dict(mapping)
        self.page_map = dict(page_map)
        self.settings = settings
        self.local_paths: Set[str] = set(self.mapping.values()) | set(
            self.page_map.values()
        )
        self._by_path: Dict[str, List[str]] = {}
        self._by_name: Dict[str, List[str]] = {}
        for url in self.mapping:
            path = urlparse(url).path
            self._by_path.setdefault(path, []).append(url)
            name = posixpath.basename(path)
            if name:
                self._by_name.setdefault(name, []).append(url)

    def is_local(self, ref: str, from_dir: str) -> bool:
        """True when ``ref`` already points at a file inside the archive."""
        p = urlparse(ref)
        if p.scheme or p.netloc or p.path.startswith("/") or not p.path:
            return False
        target = posixpath.normpath(posixpath.join(from_dir, unquote(p.path)))
        return target in self.local_paths

    def asset_path(self, ref: str, base_url: str) -> Optional[str]:
        absu = urldefrag(urljoin(base_url, ref.strip()))[0]
        hit = self.mapping.get(absu)
        if hit is not None:
            return hit
        if not self.settings.fallback_matching:
            return None
        return self.fallback(ref.strip(), absu)

    def fallback(self, ref: str, absu: str) -> Optional[str]:
        parsed = urlparse(absu)
        if parsed.query:
            bare = urlunparse(parsed._replace(query=""))
            if bare in self.mapping:
                logging.debug("mapped %s by dropping its query", ref)
                return self.mapping[bare]
        if ref.startswith("/") and not ref.startswith("//"):
            candidates = self._by_path.get(parsed.path, [])
            if len(candidates) == 1:
                logging.debug("mapped %s by path via %s", ref, candidates[0])
                return self.mapping[candidates[0]]
        name = posixpath.basename(parsed.path)
        candidates = self._by_name.get(name, []) if name else []
        if len(candidates) == 1:
            logging.debug("mapped %s by filename via %s", ref, candidates[0])
            return self.mapping[candidates[0]]
        return None

    def page_path(self, absu: str) -> Optional[str]:
        n = normalize_url(
            absu,
            strip_params=self.settings.strip_params,
            allow_params=self.settings.allow_params,
        )
        return self.page_map.get(n)

    def map_ref(self, ref: Optional[str], base_url: str, from_dir: str) -> Optional[str]:
        """Relative replacement for an asset reference, or None to keep it."""
        if not can_fetch_url(ref) or self.is_local(ref, from_dir):
            return None
        target = self.asset_path(ref, base_url)
        if target is None:
            return None
        return relative_ref(target, from_dir)


def rewrite_css_text(
    css_text: str, css_base_url: str, resolver: ReferenceResolver, from_dir: str
) -> str:
    def repl(m: "re.Match[str]") -> str:
        new = resolver.map_ref(m.group(2), css_base_url, from_dir)
        if new is None or new == m.group(2):
            return m.group(0)
        return _replace_group(m, 2, new)

    t = CSS_URL_RE.sub(repl, css_text)
    return CSS_IMPORT_RE.sub(repl, t)


def rewrite_js_text_regex(
    js_text: str, page_url: str, resolver: ReferenceResolver, from_dir: str
) -> str:
    def repl(m: "re.Match[str]") -> str:
        u = m.group("u")
        if not plausible_js_reference(u):
            return m.group(0)
        new = resolver.map_ref(u, page_url, from_dir)
        if new is None or new == u:
            return m.group(0)
        return _replace_group(m, "u", new)

    for _, pattern in JS_REFERENCE_PATTERNS:
        js_text = pattern.sub(repl, js_text)
    return js_text


def rewrite_js_text_ast(
    js_text: str,
    page_url: str,
    resolver: ReferenceResolver,
    from_dir: str,
    *,
    module: bool = False,
) -> str:
    parse = esprima.parseModule if module else esprima.parseScript
    try:
        ast = parse(js_text, range=True, tolerant=True).toDict()
    except Exception as e:
        logging.warning("AST parse failed, script left as is: %s", e)
        return js_text

    replacements: List[Tuple[int, int, str]] = []

    def add_literal_rewrite(lit_node) -> None:
        if not isinstance(lit_node, dict) or lit_node.get("type") != "Literal":
            return
        value = lit_node.get("value")
        if not isinstance(value, str) or not plausible_js_reference(value):
            return
        new = resolver.map_ref(value, page_url, from_dir)
        if new is None:
            return
        start, end = lit_node["range"]
        q = js_text[start] if js_text[start] in ("'", '"') else '"'
        replacements.append((start, end, f"{q}{new}{q}"))

    def prop_name(member) -> Optional[str]:
        if not isinstance(member, dict) or member.get("type") != "MemberExpression":
            return None
        if member.get("computed"):
            return None
        prop = member.get("property") or {}
        return prop.get("name") if prop.get("type") == "Identifier" else None

    def walk(node) -> None:
        if isinstance(node, list):
            for x in node:
                walk(x)
            return
        if not isinstance(node, dict):
            return
        t = node.get("type")
        if t in ("ImportDeclaration", "ImportExpression"):
            add_literal_rewrite(node.get("source"))
        if t in ("CallExpression", "NewExpression"):
            callee = node.get("callee") or {}
            args = node.get("arguments") or []
            first = args[0] if args else None
            if callee.get("type") == "Identifier" and callee.get("name") in (
                "fetch",
                "require",
                "URL",
                "Request",
                "axios",
            ):
                add_literal_rewrite(first)
            elif callee.get("type") == "Import":
                add_literal_rewrite(first)
            elif prop_name(callee) == "open" and len(args) >= 2:
                add_literal_rewrite(args[1])
            elif prop_name(callee) in ("get", "post", "getJSON", "ajax"):
                add_literal_rewrite(first)
        if t == "AssignmentExpression" and prop_name(node.get("left")) in (
            "src",
            "href",
        ):
            add_literal_rewrite(node.get("right"))
        for k, v in node.items():
            if k != "range":
                walk(v)

    walk(ast)
    if not replacements:
        return js_text
    out = []
    last = len(js_text)
    for s, e, new in sorted(set(replacements), key=lambda x: x[0], reverse=True):
        out.append(js_text[e:last])
        out.append(new)
        last = s
    out.append(js_text[:last])
    return "".join(reversed(out))


# (tag, attribute) pairs whose value is a single asset URL
ASSET_ATTRS: Tuple[Tuple[str, str], ...] = (
    ("script", "src"),
    ("img", "src"),
    ("input", "src"),
    ("source", "src"),
    ("video", "src"),
    ("video", "poster"),
    ("audio", "src"),
    ("track", "src"),
    ("model-viewer", "src"),
    ("model-viewer", "ios-src"),
)
ASSET_LINK_RELS = {"stylesheet", "icon", "preload", "modulepreload"}
SRI_ATTRS = ("integrity", "crossorigin")


class ReferenceRewriter:
    """Point every captured reference at its archived copy.

    Replacements are relative to the referring file's own directory, so the
    tree can be moved or served from any prefix. Rewriting output that was
    already rewritten with the same mapping leaves it unchanged.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def rewrite(
        self,
        pages: Sequence[CapturedPage],
        mapping: Mapping[str, str],
        output_root: Union[str, Path],
    ) -> List[Path]:
        output_root = Path(output_root)
        resolver = ReferenceResolver(
            mapping, build_page_map(pages, self.settings), self.settings
        )
        written: List[Path] = []
        for page in pages:
            target = output_root / page.output_path
            ensure_parent_dir(target)
            target.write_text(self.rewrite_page(page, resolver), encoding="utf-8")
            written.append(target)
        logging.info("wrote %d rewritten page(s)", len(written))

        for url, rel in mapping.items():
            if posixpath.splitext(rel)[1].lower() != ".css":
                continue
            path = output_root / rel
            if not path.is_file():
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            new_text = rewrite_css_text(text, url, resolver, posixpath.dirname(rel))
            if new_text != text:
                path.write_text(new_text, encoding="utf-8")
                written.append(path)
        return written

    def rewrite_page(self, page: CapturedPage, resolver: ReferenceResolver) -> str:
        soup = bs4_parse(page.html)
        base = effective_base_url(soup, page.base_url)
        # a remote <base> would re-anchor every relative path at the origin
        for tag in soup.find_all("base"):
            tag.decompose()
        page_dir = posixpath.dirname(page.output_path)

        self._rewrite_links(soup, base, resolver, page_dir)
        for tag_name, attr in ASSET_ATTRS:
            for tag in soup.find_all(tag_name):
                new = resolver.map_ref(tag.get(attr), base, page_dir)
                if new is not None:
                    tag[attr] = new
                    for rm in SRI_ATTRS:
                        tag.attrs.pop(rm, None)
        self._rewrite_srcsets(soup, base, resolver, page_dir)

        for tag in soup.select("[style]"):
            css = tag.get("style") or ""
            new_css = rewrite_css_text(css, base, resolver, page_dir)
            if new_css != css:
                tag["style"] = new_css
        for style in soup.find_all("style"):
            css = style.string
            if css:
                new_css = rewrite_css_text(str(css), base, resolver, page_dir)
                if new_css != css:
                    style.string = new_css

        if self.settings.rewrite_js or self.settings.rewrite_js_ast:
            self._rewrite_inline_scripts(soup, base, resolver, page_dir)

        self._rewrite_anchors(soup, base, resolver, page_dir)
        return serialize_html(soup)

    def _rewrite_links(
        self,
        soup: BeautifulSoup,
        base: str,
        resolver: ReferenceResolver,
        page_dir: str,
    ) -> None:
        for link in soup.select("link[href]"):
            rels = {r.lower() for r in (link.get("rel") or [])}
            if not (rels & ASSET_LINK_RELS or any("icon" in r for r in rels)):
                continue
            href = link.get("href")
            new = resolver.map_ref(href, base, page_dir)
            if new is not None:
                link["href"] = new
                for rm in SRI_ATTRS:
                    link.attrs.pop(rm, None)
                continue
            if "stylesheet" in rels and not resolver.is_local(href or "", page_dir):
                host = urlparse(urljoin(base, href or "")).netloc.lower()
                if host in EXTERNAL_FONT_HOSTS:
                    logging.debug("dropping uncaptured font stylesheet %s", href)
                    link.decompose()
                    continue
            if can_fetch_url(href) and not resolver.is_local(href, page_dir):
                logging.debug("could not map link %s", href)

    def _rewrite_srcsets(
        self,
        soup: BeautifulSoup,
        base: str,
        resolver: ReferenceResolver,
        page_dir: str,
    ) -> None:
        for tag in soup.select("img[srcset], source[srcset]"):
            srcset_val = tag.get("srcset", "")
            parts = []
            changed = False
            for candidate in SRCSET_SPLIT_RE.split(srcset_val.strip()):
                comp = WS_RE.split(candidate.strip()) if candidate else []
                if not comp or not comp[0]:
                    continue
                new = resolver.map_ref(comp[0], base, page_dir)
                if new is not None:
                    changed = True
                parts.append(" ".join([new or comp[0]] + comp[1:]))
            if changed:
                tag["srcset"] = ", ".join(parts)

    def _rewrite_inline_scripts(
        self,
        soup: BeautifulSoup,
        base: str,
        resolver: ReferenceResolver,
        page_dir: str,
    ) -> None:
        for script in soup.find_all("script"):
            if script.get("src") or not script.string:
                continue
            script_type = (script.get("type") or "").strip().lower()
            if script_type not in JS_SCRIPT_TYPES:
                continue
            text = str(script.string)
            if self.settings.rewrite_js_ast:
                new_text = rewrite_js_text_ast(
                    text, base, resolver, page_dir, module=script_type == "module"
                )
            else:
                new_text = rewrite_js_text_regex(text, base, resolver, page_dir)
            if new_text != text:
                script.string = new_text

    def _rewrite_anchors(
        self,
        soup: BeautifulSoup,
        base: str,
        resolver: ReferenceResolver,
        page_dir: str,
    ) -> None:
        for a in soup.select("a[href]"):
            href = a.get("href")
            if not can_fetch_url(href) or resolver.is_local(href, page_dir):
                continue
            absu = urljoin(base, href.strip())
            target = resolver.page_path(absu)
            if target is None:
                continue
            rel = relative_ref(target, page_dir)
            frag = urlparse(absu).fragment
            a["href"] = f"{rel}#{frag}" if frag else rel


# -------------------- Metadata store --------------------


class MetadataStore:
    """Archive records keyed by id. Every mutation is serialized per store."""

    def create(self, record: ArchiveRecord) -> ArchiveRecord:
        raise NotImplementedError

    def get(self, archive_id: str) -> Optional[ArchiveRecord]:
        raise NotImplementedError

    def update(self, archive_id: str, patch: Mapping[str, object]) -> ArchiveRecord:
        raise NotImplementedError

    def list_by_original_url(self, url: str) -> List[ArchiveRecord]:
        raise NotImplementedError

    def list_all(self) -> List[ArchiveRecord]:
        raise NotImplementedError


class MemoryMetadataStore(MetadataStore):
    def __init__(self, init: Optional[Mapping[str, Mapping]] = None):
        self._records: Dict[str, dict] = {k: dict(v) for k, v in (init or {}).items()}
        self._lock = RLock()

    def create(self, record: ArchiveRecord) -> ArchiveRecord:
        with self._lock:
            if record.id in self._records:
                raise ArchiveError(f"archive {record.id} already exists")
            self._records[record.id] = record.to_dict()
            self._persist()
        return record

    def get(self, archive_id: str) -> Optional[ArchiveRecord]:
        with self._lock:
            data = self._records.get(archive_id)
            return None if data is None else ArchiveRecord.from_dict(data)

    def update(self, archive_id: str, patch: Mapping[str, object]) -> ArchiveRecord:
        known = {f.name for f in fields(ArchiveRecord)}
        unknown = set(patch) - known
        if unknown or "id" in patch:
            raise ValueError(f"cannot patch field(s): {sorted(unknown | ({'id'} & set(patch)))}")
        with self._lock:
            data = self._records.get(archive_id)
            if data is None:
                raise ArchiveNotFoundError(archive_id)
            merged = {**data, **patch}
            self._records[archive_id] = merged
            self._persist()
            return ArchiveRecord.from_dict(merged)

    def list_by_original_url(self, url: str) -> List[ArchiveRecord]:
        with self._lock:
            matches = [
                ArchiveRecord.from_dict(d)
                for d in self._records.values()
                if d.get("original_url") == url or d.get("url") == url
            ]
        return sorted(matches, key=lambda r: r.version)

    def list_all(self) -> List[ArchiveRecord]:
        with self._lock:
            records = [ArchiveRecord.from_dict(d) for d in self._records.values()]
        return sorted(records, key=lambda r: (r.created_at, r.original_url, r.version))

    def _persist(self) -> None:
        pass


class JsonMetadataStore(MemoryMetadataStore):
    """Single JSON file, replaced atomically on every write."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        records = data.get("archives", []) if isinstance(data, dict) else data
        logging.debug("loaded %d archive record(s) from %s", len(records), self.path)
        return {r["id"]: r for r in records}

    def _persist(self) -> None:
        atomic_write_json(self.path, {"archives": list(self._records.values())})


# -------------------- Manifest --------------------


def write_manifest(
    out_dir: Path,
    record: ArchiveRecord,
    pages: Sequence[CapturedPage],
    mapping: Mapping[str, str],
    failed: Mapping[str, str],
) -> Path:
    path = out_dir / MANIFEST_NAME
    atomic_write_json(
        path,
        {
            "site": record.url,
            "archive_id": record.id,
            "version": record.version,
            "created_utc": utc_timestamp(),
            "pages": {p.url: p.output_path for p in pages},
            "assets": dict(mapping),
            "failed_assets": dict(failed),
            "layout": {
                "pages": "mirrors the site's URL paths",
                "assets_dir": f"{ASSETS_DIR}/<host>/",
            },
        },
    )
    return path


# -------------------- Orchestrator --------------------


class ArchiveService:
    """Runs crawl -> extract -> materialize -> rewrite for archive jobs.

    A job record goes from ``processing`` to exactly one of ``completed`` or
    ``failed``. Every capture of a URL is a new version; earlier versions are
    never touched.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[MetadataStore] = None,
        *,
        session: Optional[requests.Session] = None,
        renderer_factory: Optional[Callable[[Throttle], HtmlRenderer]] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else JsonMetadataStore(settings.data_file)
        self.session = session if session is not None else build_session()
        self.renderer_factory = renderer_factory or (
            lambda throttle: get_renderer(self.settings, self.session, throttle)
        )
        self._create_lock = Lock()
        self._pool: Optional[ThreadPoolExecutor] = None

    def archive_dir(self, archive_id: str) -> Path:
        return Path(self.settings.archive_root) / archive_id

    # -- records --

    def create_archive(self, url: str) -> ArchiveRecord:
        key = canonical_url(url, self.settings)
        with self._create_lock:
            versions = self.store.list_by_original_url(key)
            version = max((r.version for r in versions), default=0) + 1
            record = ArchiveRecord(
                id=new_archive_id(), url=url, original_url=key, version=version
            )
            self.store.create(record)
        logging.info("archive %s created for %s (version %d)", record.id, key, version)
        return record

    def get_archive(self, archive_id: str) -> ArchiveRecord:
        record = self.store.get(archive_id)
        if record is None:
            raise ArchiveNotFoundError(archive_id)
        return record

    def list_versions(self, url: str) -> List[ArchiveRecord]:
        return self.store.list_by_original_url(canonical_url(url, self.settings))

    def list_archives(self) -> List[ArchiveRecord]:
        return self.store.list_all()

    # -- pipeline stages --

    def crawl(
        self,
        seed_url: str,
        max_depth: Optional[int] = None,
        max_pages: Optional[int] = None,
        *,
        throttle: Optional[Throttle] = None,
    ) -> List[CapturedPage]:
        renderer = self.renderer_factory(throttle or Throttle(self.settings))
        try:
            return Crawler(renderer, self.settings).crawl(seed_url, max_depth, max_pages)
        finally:
            renderer.close()

    def extract_and_download(
        self,
        pages: Sequence[CapturedPage],
        output_root: Union[str, Path],
        *,
        throttle: Optional[Throttle] = None,
    ) -> UrlMapping:
        _, mapping, _ = self._extract_and_download(
            pages, Path(output_root), throttle or Throttle(self.settings)
        )
        return mapping

    def _extract_and_download(
        self, pages: Sequence[CapturedPage], output_root: Path, throttle: Throttle
    ) -> Tuple[List[Asset], UrlMapping, AssetMaterializer]:
        assets = ReferenceExtractor(self.session, throttle, self.settings).extract(pages)
        materializer = AssetMaterializer(
            self.session,
            throttle,
            self.settings,
            reserved=[p.output_path for p in pages] + [MANIFEST_NAME],
        )
        mapping = materializer.materialize(assets, output_root)
        return assets, mapping, materializer

    def rewrite(
        self,
        pages: Sequence[CapturedPage],
        mapping: Mapping[str, str],
        output_root: Union[str, Path],
    ) -> None:
        ReferenceRewriter(self.settings).rewrite(pages, mapping, output_root)

    # -- jobs --

    def run_archive(self, archive_id: str) -> ArchiveRecord:
        record = self.get_archive(archive_id)
        out_dir = self.archive_dir(archive_id)
        throttle = Throttle(self.settings)
        started = time.perf_counter()
        try:
            logging.info("archive %s: crawling %s", archive_id, record.url)
            pages = self.crawl(record.url, throttle=throttle)
            logging.info("archive %s: extracting and downloading assets", archive_id)
            assets, mapping, materializer = self._extract_and_download(
                pages, out_dir, throttle
            )
            logging.info("archive %s: rewriting %d page(s)", archive_id, len(pages))
            self.rewrite(pages, mapping, out_dir)
            write_manifest(out_dir, record, pages, mapping, materializer.failed)
        except Exception as e:
            logging.exception(
                "archive %s failed after %.1fs", archive_id, time.perf_counter() - started
            )
            self.store.update(
                archive_id,
                {
                    "status": ArchiveStatus.FAILED.value,
                    "error": str(e) or e.__class__.__name__,
                    "completed_at": utc_timestamp(),
                },
            )
            raise
        record = self.store.update(
            archive_id,
            {
                "status": ArchiveStatus.COMPLETED.value,
                "completed_at": utc_timestamp(),
                "page_count": len(pages),
                "asset_count": len(assets),
                "failed_asset_count": len(materializer.failed),
            },
        )
        logging.info(
            "archive %s completed in %.1fs: %d page(s), %d/%d asset(s) -> %s",
            archive_id,
            time.perf_counter() - started,
            len(pages),
            len(mapping),
            len(assets),
            out_dir,
        )
        return record

    def submit(self, url: str) -> Tuple[ArchiveRecord, "Future[ArchiveRecord]"]:
        record = self.create_archive(url)
        with self._create_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=max(1, self.settings.max_jobs),
                    thread_name_prefix="archive",
                )
            pool = self._pool
        return record, pool.submit(self.run_archive, record.id)

    def shutdown(self, wait: bool = True) -> None:
        with self._create_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)


# -------------------- Config loader --------------------

CONFIG_GROUPS = (
    "crawl",
    "render",
    "throttle",
    "download",
    "rewrite",
    "storage",
    "general",
)


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Mapping) -> Dict[str, object]:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return flat


# -------------------- CLI --------------------

TOP_LEVEL_OPTIONS = {"archive_root", "data_file", "verbose"}


def build_arg_parser(
    defaults: Optional[Mapping[str, object]] = None,
) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Capture websites into self-contained, versioned local snapshots.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument(
        "--archive-root", default="archives", help="directory holding job output"
    )
    p.add_argument(
        "--data-file",
        default="data/archives.json",
        help="JSON file holding archive records",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("archive", help="capture a new version of a URL")
    a.add_argument("url", help="http(s) seed URL")
    # crawl
    a.add_argument("--max-depth", type=int, default=2, help="max link depth")
    a.add_argument("--max-pages", type=int, default=50, help="max pages per job")
    a.add_argument(
        "--no-strip-params", action="store_true", help="keep tracking query parameters"
    )
    a.add_argument(
        "--allow-param",
        action="append",
        default=[],
        help="query parameter name to keep",
    )
    a.add_argument("--page-retries", type=int, default=2, help="retries per page")
    a.add_argument(
        "--retry-backoff", type=float, default=1.0, help="base page retry delay"
    )
    # render
    a.add_argument(
        "--no-render",
        action="store_true",
        help="fetch pages over plain HTTP instead of headless Chromium",
    )
    a.add_argument(
        "--render-timeout-ms", type=int, default=30000, help="page load timeout ms"
    )
    a.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )
    a.add_argument(
        "--settle-ms", type=int, default=0, help="extra wait after load, in ms"
    )
    # download
    a.add_argument("--timeout", type=float, default=15.0, help="asset timeout seconds")
    a.add_argument("--workers", type=int, default=8, help="concurrent downloads")
    a.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per asset"
    )
    a.add_argument(
        "--no-mine-scripts",
        action="store_true",
        help="do not scan external scripts for nested references",
    )
    a.add_argument(
        "--no-model-placeholders",
        action="store_true",
        help="leave missing 3-D models out instead of writing empty files",
    )
    # rewrite
    a.add_argument(
        "--rewrite-js",
        action="store_true",
        help="best-effort regex rewrite of asset strings in inline scripts",
    )
    a.add_argument(
        "--rewrite-js-ast",
        action="store_true",
        help="AST-based rewrite of asset strings in inline scripts",
    )
    a.add_argument(
        "--no-fallback-matching",
        action="store_true",
        help="only rewrite references whose absolute URL was captured",
    )
    # throttle
    a.add_argument("--global-rps", type=float, default=8.0, help="global requests/sec")
    a.add_argument(
        "--per-host-rps", type=float, default=4.0, help="per-host requests/sec"
    )
    a.add_argument("--burst", type=int, default=4, help="token-bucket burst")
    a.add_argument("--jitter", type=float, default=0.1, help="delay jitter 0..1")

    v = sub.add_parser("versions", help="list captured versions of a URL")
    v.add_argument("url")

    s = sub.add_parser("status", help="show one archive record")
    s.add_argument("archive_id")

    sub.add_parser("list", help="list every archive record")

    if defaults:
        # keys owned by the top level must not be re-declared on a subcommand,
        # whose defaults would overwrite values given on the command line
        p.set_defaults(**{k: v for k, v in defaults.items() if k in TOP_LEVEL_OPTIONS})
        a.set_defaults(
            **{k: v for k, v in defaults.items() if k not in TOP_LEVEL_OPTIONS}
        )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", default=None)
    preliminary, _ = pre.parse_known_args(argv)
    defaults = None
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            defaults = flatten_config(cfg)
    return build_arg_parser(defaults).parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings(
        archive_root=args.archive_root,
        data_file=args.data_file,
    )
    if args.command != "archive":
        return settings
    settings.max_depth = max(0, args.max_depth)
    settings.max_pages = max(1, args.max_pages)
    settings.strip_params = not args.no_strip_params
    settings.allow_params = set(args.allow_param or [])
    settings.page_retries = max(0, args.page_retries)
    settings.retry_backoff = max(0.0, args.retry_backoff)
    settings.render_js = not args.no_render
    settings.render_timeout_ms = max(1000, args.render_timeout_ms)
    settings.wait_until = args.wait_until
    settings.settle_ms = max(0, args.settle_ms)
    settings.timeout = args.timeout
    settings.workers = max(1, args.workers)
    settings.max_bytes = max(1024, args.max_bytes)
    settings.mine_scripts = not args.no_mine_scripts
    settings.model_placeholders = not args.no_model_placeholders
    settings.rewrite_js = args.rewrite_js
    settings.rewrite_js_ast = args.rewrite_js_ast
    settings.fallback_matching = not args.no_fallback_matching
    settings.global_rps = max(0.01, args.global_rps)
    settings.per_host_rps = max(0.01, args.per_host_rps)
    settings.burst = max(1, args.burst)
    settings.jitter = max(0.0, min(1.0, args.jitter))
    return settings


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    store = JsonMetadataStore(settings.data_file)

    if args.command == "versions":
        records = store.list_by_original_url(canonical_url(args.url, settings))
        if not records:
            print(f"No archives for {args.url}")
        for r in records:
            print(f"v{r.version}\t{r.id}\t{r.status}\t{r.created_at}")
        return

    if args.command == "list":
        records = store.list_all()
        for r in records:
            print(f"{r.id}\t{r.original_url}\tv{r.version}\t{r.status}\t{r.created_at}")
        print(f"{len(records)} archive(s)")
        return

    if args.command == "status":
        record = store.get(args.archive_id)
        if record is None:
            print(f"Unknown archive: {args.archive_id}")
            sys.exit(1)
        print(json.dumps(record.to_dict(), indent=2))
        return

    if not is_http_url(args.url):
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    service = ArchiveService(settings, store)
    record = service.create_archive(args.url)
    try:
        record = service.run_archive(record.id)
    except Exception:
        failed = store.get(record.id)
        print(f"Archive {record.id} failed: {failed.error if failed else 'unknown error'}")
        sys.exit(1)
    print("Archive complete")
    print(f"Id: {record.id} (version {record.version})")
    print(f"Pages: {record.page_count}  Assets: {record.asset_count}")
    print(f"Saved to: {service.archive_dir(record.id)}")


if __name__ == "__main__":
    main()
