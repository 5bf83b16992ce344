#!/usr/bin/env python3
import argparse
import codecs
import hashlib
import html
import logging
import os
import random
import re
import sys
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from fnmatch import fnmatch
from pathlib import Path
from threading import Event, RLock
from typing import (
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    Union,
)
from urllib.parse import quote, quote_plus, unquote_plus, urljoin, urlsplit

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

DEVICE_USER_AGENTS = {
    "desktop": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "mobile": "Mozilla/5.0 (iPhone; CPU iPhone OS 15_0 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/15.0 Mobile/15A5370a Safari/604.1",
    "tablet": "Mozilla/5.0 (Linux; Android 11; SAMSUNG SM-T875) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "SamsungBrowser/14.0 Chrome/87.0.4280.141 Safari/537.36",
}

ASSET_FONTS = "fonts"
ASSET_IMAGES = "images"
ASSET_STYLES = "styles"
ASSET_SCRIPTS = "scripts"
ASSET_TYPES = (ASSET_FONTS, ASSET_IMAGES, ASSET_STYLES, ASSET_SCRIPTS)

EXTRA_COLUMNS = ("Title", "Description", "Keywords", "DOM")

SANITIZE_UNDERSCORE = "special-chars-to-underscore"
SANITIZE_DASH = "special-chars-to-dash"
SANITIZE_EMPTY = "special-chars-to-empty"
SANITIZE_URLENCODE = "urlencode"
SANITIZE_RAWURLENCODE = "rawurlencode"
SANITIZE_MD5 = "md5"
FILENAME_SANITIZATION_MODES = (
    SANITIZE_UNDERSCORE,
    SANITIZE_DASH,
    SANITIZE_EMPTY,
    SANITIZE_URLENCODE,
    SANITIZE_RAWURLENCODE,
    SANITIZE_MD5,
)

# link discovery patterns, anchors always, the rest per asset category
ANCHOR_HREF_RE = re.compile(r"<a[^>]*\shref=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
ASSET_LINK_PATTERNS: Dict[str, re.Pattern[str]] = {
    ASSET_FONTS: re.compile(
        r"url\s*\(\s*['\"]([^'\"]+\.(?:eot|ttf|woff|woff2))", re.IGNORECASE
    ),
    ASSET_IMAGES: re.compile(
        r"<img\s+(?:[^>]*?\s)?src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE
    ),
    ASSET_STYLES: re.compile(
        r"<link\s+(?:[^>]*?\s)?href=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE
    ),
    ASSET_SCRIPTS: re.compile(
        r"<script\s+(?:[^>]*?\s)?src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE
    ),
}
NON_HTML_SCHEME_RE = re.compile(r"^\s*(mailto|phone|tel|javascript|data):", re.IGNORECASE)

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
META_DESCRIPTION_RE = re.compile(
    r"<meta\s+[^>]*?name=[\"']description[\"']\s+content=[\"']([^\"']+)[\"'][^>]*>",
    re.IGNORECASE,
)
META_KEYWORDS_RE = re.compile(
    r"<meta\s+[^>]*?name=[\"']keywords[\"']\s+content=[\"']([^\"']+)[\"'][^>]*>",
    re.IGNORECASE,
)
DOM_TAG_RE = re.compile(r"<\w+")

QUEUE_EXTENSION_RE = re.compile(r"\.[a-z0-9]{2,4}$", re.IGNORECASE)
HTML_LIKE_EXTENSION_RE = re.compile(r"\.(html|shtml|phtml)", re.IGNORECASE)
EXTENSION_RE = re.compile(r"\.([a-z0-9]{1,10})$", re.IGNORECASE)

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+([\"'])([^\"';]+)\1\s*;",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")

STATIC_FILE_EXTENSIONS = (
    "jpg|jpeg|png|gif|webp|svg|ico|js|css|txt|woff2|woff|ttf|eot|mp4|webm|ogg|mp3|wav|flac|pdf|doc"
    "|docx|xls|xlsx|ppt|pptx|zip|rar|gz|bz2|7z|tar|xml|json|action|asp|aspx|cfm|cfml|cgi|do|gsp|jsp|jspx|lasso|phtml"
    "|php|php3|php4|php5|php7|php8|php9|pl|py|rb|rbw|rhtml|shtml|srv|vm|vmdk"
)
DYNAMIC_PAGE_EXTENSIONS = (
    "action|asp|aspx|cfm|cfml|cgi|do|gsp|jsp|jspx|lasso|phtml|php3|php4|php5|php7|php8|php9"
    "|php|pl|py|rb|rbw|rhtml|shtml|srv|vm"
)
# "foo/next.js/" must not collide with the file "foo/next.js"
FOLDER_WITH_EXTENSION_RE = re.compile(
    r"([^.]+)\.(" + STATIC_FILE_EXTENSIONS + r")/", re.IGNORECASE
)
DYNAMIC_EXTENSION_RE = re.compile(r"\.(" + DYNAMIC_PAGE_EXTENSIONS + r")$", re.IGNORECASE)
PATH_WITH_EXTENSION_RE = re.compile(r"^(.+)\.([a-z0-9]{1,10})$", re.IGNORECASE)
STORE_EXTENSION_RE = re.compile(r"\.[a-z0-9\-]{1,15}$", re.IGNORECASE)
FILENAME_SPECIAL_CHARS = ("\\", ":", "%20", "%", "*", "?", '"', "'", "<", ">", "|", "+", " ")

REGEX_RULE_RE = re.compile(r"^([/#~%]).*\1[a-z]*$", re.IGNORECASE)
PHP_BACKREF_RE = re.compile(r"\$\{?(\d+)\}?")
REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

STATIC_EXTENSIONS = {
    "jpg", "jpeg", "png", "gif", "webp", "svg", "ico", "avif", "bmp",
    "js", "mjs", "css", "txt", "map", "webmanifest",
    "woff2", "woff", "ttf", "otf", "eot",
    "mp4", "webm", "ogg", "mp3", "wav", "flac",
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
    "zip", "rar", "gz", "bz2", "7z", "tar", "xml", "json",
}  # fmt: skip

DEFAULT_PORTS = {"http": 80, "https": 443}

ERROR_CONNECTION_FAIL = -1
ERROR_TIMEOUT = -2
ERROR_SERVER_RESET = -3
ERROR_SEND_ERROR = -4
ERROR_LABELS = {
    ERROR_CONNECTION_FAIL: "Con-Err",
    ERROR_TIMEOUT: "Timeout",
    ERROR_SERVER_RESET: "Reset",
    ERROR_SEND_ERROR: "Send-Err",
}


# -------------------- Errors --------------------


class CrawlerError(Exception):
    pass


class AdmissionError(CrawlerError):
    pass


class CapacityExceeded(AdmissionError):
    pass


class ConfigurationError(CrawlerError):
    pass


class ExportError(CrawlerError):
    pass


class CrawlInterrupted(CrawlerError):
    def __init__(self, stats: "BasicStats"):
        super().__init__(
            "Crawler was stopped manually, statistics contain only URLs "
            "processed until the stop."
        )
        self.stats = stats


# -------------------- Settings --------------------


@dataclass
class Settings:
    url: str = ""
    workers: int = 3
    timeout: float = 5.0
    retries: int = 0

    # Capacity
    max_queue_length: int = 2000
    max_visited_urls: int = 5000
    max_url_length: int = 2000

    # Request
    accept_encoding: str = "gzip, deflate"
    user_agent: Optional[str] = None
    device: str = "desktop"
    add_random_query_params: bool = False

    # Crawl scope
    crawl_assets: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    remove_query_params: bool = False
    allowed_domains_for_crawling: List[str] = field(default_factory=list)
    allowed_domains_for_static_files: List[str] = field(default_factory=list)

    # Output
    extra_columns: List[str] = field(default_factory=lambda: ["Title"])

    # Offline export
    offline_export_dir: Optional[str] = None
    offline_export_store_only_url_regex: List[str] = field(default_factory=list)
    offline_export_file_path_length_limit: int = 200
    filename_sanitization: str = SANITIZE_UNDERSCORE
    replace_content: List[str] = field(default_factory=list)
    replace_query_string: List[str] = field(default_factory=list)
    ignore_store_file_error: bool = False


def get_final_user_agent(settings: Settings) -> str:
    if settings.user_agent:
        return settings.user_agent
    try:
        return DEVICE_USER_AGENTS[settings.device]
    except KeyError:
        raise ConfigurationError(f"Unsupported device '{settings.device}'") from None


def compile_regexes(patterns: Iterable[str], option: str) -> List[re.Pattern[str]]:
    compiled = []
    for p in patterns:
        try:
            compiled.append(re.compile(p))
        except re.error as e:
            raise ConfigurationError(f"invalid {option} regex '{p}': {e}") from None
    return compiled


# -------------------- Utils --------------------


def format_size(size: int) -> str:
    units = ("B", "kB", "MB", "GB", "TB")
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    if i == 0:
        return f"{int(value)} B"
    return f"{value:.2f} {units[i]}"


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{int(seconds * 1000)} ms"
    return f"{seconds:.1f} s"


def is_href_for_requestable_resource(u: str) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    scheme = u.split(":", 1)[0].lower() if re.match(r"^[a-z][a-z0-9+.\-]*:", u, re.I) else ""
    return scheme in ("", "http", "https")


def url_fingerprint(url: str) -> str:
    p = urlsplit(url)
    relevant = (p.hostname or "") + (p.path or "/")
    return hashlib.md5(relevant.encode("utf-8")).hexdigest()


def add_random_query_param(url: str) -> str:
    sep = "&" if urlsplit(url).query else "?"
    return f"{url}{sep}_r={random.getrandbits(32):08x}"


def get_charset(content_type: Optional[str]) -> str:
    """Codec named by the ``charset=`` parameter, utf-8 when absent or unknown."""
    m = re.search(r"charset=[\"']?([\w\-:.]+)", content_type or "", re.IGNORECASE)
    if m:
        try:
            return codecs.lookup(m.group(1)).name
        except LookupError:
            pass
    return "utf-8"


def decode_body(body: bytes, content_type: Optional[str]) -> str:
    return body.decode(get_charset(content_type), errors="ignore")


def encode_body(text: str, charset: str) -> bytes:
    try:
        return text.encode(charset, errors="surrogateescape")
    except UnicodeEncodeError:
        # replacement text outside the served charset
        return text.encode(charset, errors="xmlcharrefreplace")


def apply_replace_rules(text: str, rules: Sequence[str]) -> str:
    # rules are "from -> to", "from" is literal or a /regex/flags
    for rule in rules:
        source, _, target = rule.partition("->")
        source = source.strip()
        target = target.strip()
        if REGEX_RULE_RE.match(source):
            text = php_regex(source).sub(PHP_BACKREF_RE.sub(r"\\g<\1>", target), text)
        else:
            text = text.replace(source, target)
    return text


def php_regex(rule: str) -> re.Pattern[str]:
    delimiter = rule[0]
    end = rule.rindex(delimiter)
    flags = 0
    for f in rule[end + 1 :].lower():
        flags |= REGEX_FLAGS.get(f, 0)
    try:
        return re.compile(rule[1:end], flags)
    except re.error as e:
        raise ConfigurationError(f"invalid replace regex '{rule}': {e}") from None


# -------------------- URL model --------------------


@dataclass(frozen=True)
class ParsedUrl:
    url: str
    scheme: str = ""
    host: str = ""
    port: Optional[int] = None
    path: str = ""
    query: str = ""
    fragment: str = ""
    trace: Tuple[str, ...] = field(default=(), compare=False, repr=False)

    @classmethod
    def parse(cls, url: str) -> "ParsedUrl":
        """Raises ValueError for URLs that cannot be split (bad port, broken IPv6)."""
        url = url.strip()
        p = urlsplit(url)
        scheme = p.scheme.lower()
        port = p.port
        if port is None:
            port = DEFAULT_PORTS.get(scheme)
        return cls(
            url=url,
            scheme=scheme,
            host=(p.hostname or "").lower(),
            port=port,
            path=p.path,
            query=p.query,
            fragment=p.fragment,
        )

    def full_url(
        self, include_scheme_and_host: bool = True, include_fragment: bool = True
    ) -> str:
        out = ""
        if include_scheme_and_host:
            if self.scheme:
                out += f"{self.scheme}:"
            if self.host:
                out += f"//{self.host}"
                if self.port and self.port != DEFAULT_PORTS.get(self.scheme):
                    out += f":{self.port}"
        out += self.path
        if self.query:
            out += f"?{self.query}"
        if include_fragment and self.fragment:
            out += f"#{self.fragment}"
        return out

    @property
    def extension(self) -> Optional[str]:
        m = EXTENSION_RE.search(self.path)
        if m and not m.group(1).isdigit():
            return m.group(1).lower()
        return None

    def is_static_file(self) -> bool:
        return self.extension in STATIC_EXTENSIONS

    def is_only_fragment(self) -> bool:
        return bool(
            self.fragment
            and not self.scheme
            and not self.host
            and not self.path
            and not self.query
        )

    def is_https(self) -> bool:
        return self.scheme == "https"

    def with_path(self, path: str, reason: str) -> "ParsedUrl":
        return replace(self, path=path, trace=self.trace + (reason,))

    def with_query(self, query: str, reason: str) -> "ParsedUrl":
        return replace(self, query=query, trace=self.trace + (reason,))

    def with_depth(self, depth: int, reason: str) -> "ParsedUrl":
        return self.with_path("../" * depth + self.path.lstrip("/ "), reason)


class TargetDomainRelation(Enum):
    INITIAL_SAME__BASE_SAME = "initial-same-base-same"
    INITIAL_SAME__BASE_DIFFERENT = "initial-same-base-different"
    INITIAL_DIFFERENT__BASE_SAME = "initial-different-base-same"
    INITIAL_DIFFERENT__BASE_DIFFERENT = "initial-different-base-different"

    @classmethod
    def classify(
        cls, initial: ParsedUrl, base: ParsedUrl, target: ParsedUrl
    ) -> "TargetDomainRelation":
        initial_same = not target.host or target.host == initial.host
        base_same = not target.host or target.host == base.host
        if initial_same:
            return cls.INITIAL_SAME__BASE_SAME if base_same else cls.INITIAL_SAME__BASE_DIFFERENT
        return cls.INITIAL_DIFFERENT__BASE_SAME if base_same else cls.INITIAL_DIFFERENT__BASE_DIFFERENT

    @property
    def is_external(self) -> bool:
        return self in (
            TargetDomainRelation.INITIAL_DIFFERENT__BASE_SAME,
            TargetDomainRelation.INITIAL_DIFFERENT__BASE_DIFFERENT,
        )


# -------------------- Domain allow-lists --------------------


class DomainPolicy(Protocol):
    def is_domain_allowed_for_static_files(self, host: str) -> bool:
        ...

    def is_external_domain_allowed_for_crawling(self, host: str) -> bool:
        ...


class AllowedDomains:
    # exact host names or shell patterns like "*.example.com"
    def __init__(
        self, static_files: Iterable[str] = (), crawling: Iterable[str] = ()
    ):
        self.static_files = [d.strip().lower() for d in static_files if d.strip()]
        self.crawling = [d.strip().lower() for d in crawling if d.strip()]

    @staticmethod
    def _matches(host: str, patterns: List[str]) -> bool:
        host = host.lower()
        return any(fnmatch(host, p) for p in patterns)

    def is_domain_allowed_for_static_files(self, host: str) -> bool:
        return self._matches(host, self.static_files)

    def is_external_domain_allowed_for_crawling(self, host: str) -> bool:
        return self._matches(host, self.crawling)


# -------------------- Results --------------------


class ContentType(IntEnum):
    HTML = 1
    SCRIPT = 2
    STYLESHEET = 3
    IMAGE = 4
    FONT = 5
    DOCUMENT = 6
    JSON = 7
    OTHER_FILE = 9


STATIC_CONTENT_TYPES = {
    ContentType.SCRIPT,
    ContentType.STYLESHEET,
    ContentType.IMAGE,
    ContentType.FONT,
    ContentType.DOCUMENT,
    ContentType.JSON,
}

# first match wins
CONTENT_TYPE_RULES: Tuple[Tuple[ContentType, Tuple[str, ...]], ...] = (
    (ContentType.HTML, ("text/html",)),
    (ContentType.SCRIPT, ("javascript",)),
    (ContentType.STYLESHEET, ("text/css",)),
    (ContentType.IMAGE, ("image/",)),
    (ContentType.FONT, ("font/",)),
    (ContentType.JSON, ("application/json",)),
    (
        ContentType.DOCUMENT,
        (
            "application/pdf",
            "application/msword",
            "application/vnd.ms-excel",
            "application/vnd.ms-powerpoint",
            "application/vnd.openxmlformats-officedocument",
        ),
    ),
)


def classify_content_type(content_type: Optional[str]) -> ContentType:
    ct = (content_type or "").lower()
    for type_id, needles in CONTENT_TYPE_RULES:
        if any(n in ct for n in needles):
            return type_id
    return ContentType.OTHER_FILE


@dataclass(frozen=True)
class QueueEntry:
    key: str
    url: str
    source_key: str = ""


@dataclass(frozen=True)
class VisitedRecord:
    key: str
    url: str
    source_key: str = ""
    status: Optional[int] = None
    elapsed: float = 0.0
    size: int = 0
    content_type: ContentType = ContentType.OTHER_FILE
    charset: str = "utf-8"
    is_external: bool = False
    is_allowed_for_crawling: bool = True
    extras: Mapping[str, Union[str, int]] = field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.status is not None

    def is_static_file(self) -> bool:
        return self.content_type in STATIC_CONTENT_TYPES

    def is_https(self) -> bool:
        return self.url.lower().startswith("https://")

    @property
    def elapsed_formatted(self) -> str:
        return format_duration(self.elapsed)

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)


@dataclass(frozen=True)
class CrawlRow:
    url: str
    status: int
    elapsed: float
    size: int
    content_type: ContentType
    extras: Mapping[str, Union[str, int]]
    done: int
    total: int

    @property
    def progress(self) -> float:
        return self.done / self.total if self.total else 1.0


@dataclass(frozen=True)
class BasicStats:
    total_execution_time: float
    total_urls: int
    total_size: int
    total_size_formatted: str
    total_requests_times: float
    total_requests_times_avg: float
    total_requests_times_min: float
    total_requests_times_max: float
    count_by_status: Dict[int, int]
    partial: bool = False

    @classmethod
    def from_records(
        cls, records: Iterable[VisitedRecord], start_time: float, partial: bool = False
    ) -> "BasicStats":
        done = [r for r in records if r.is_done]
        total_size = sum(r.size for r in done)
        times = [r.elapsed for r in done]
        count_by_status: Dict[int, int] = {}
        for r in done:
            count_by_status[r.status] = count_by_status.get(r.status, 0) + 1
        total_time = sum(times)
        return cls(
            total_execution_time=round(time.monotonic() - start_time, 3),
            total_urls=len(done),
            total_size=total_size,
            total_size_formatted=format_size(total_size),
            total_requests_times=round(total_time, 3),
            total_requests_times_avg=round(total_time / len(done), 3) if done else 0.0,
            total_requests_times_min=round(min(times), 3) if times else 0.0,
            total_requests_times_max=round(max(times), 3) if times else 0.0,
            count_by_status=dict(sorted(count_by_status.items())),
            partial=partial,
        )


# -------------------- HTTP --------------------


@dataclass(frozen=True)
class FetchResult:
    status: int
    headers: Mapping[str, str]
    body: Optional[bytes]


def build_session(settings: Settings, user_agent: str) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool_size = max(10, settings.workers)
    adapter = HTTPAdapter(
        max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = user_agent
    s.headers["Accept-Encoding"] = settings.accept_encoding
    return s


def fetch_url(
    session: requests.Session, url: str, *, head: bool, timeout: float
) -> FetchResult:
    try:
        if head:
            r = session.head(url, timeout=timeout, allow_redirects=False)
        else:
            r = session.get(url, timeout=timeout, allow_redirects=False)
    except requests.Timeout as e:
        logging.warning("timeout %s: %s", url, e)
        return FetchResult(ERROR_TIMEOUT, CaseInsensitiveDict(), None)
    except requests.exceptions.ChunkedEncodingError as e:
        logging.warning("connection reset %s: %s", url, e)
        return FetchResult(ERROR_SERVER_RESET, CaseInsensitiveDict(), None)
    except requests.ConnectionError as e:
        if "reset" in str(e).lower():
            logging.warning("connection reset %s: %s", url, e)
            return FetchResult(ERROR_SERVER_RESET, CaseInsensitiveDict(), None)
        logging.warning("connection failed %s: %s", url, e)
        return FetchResult(ERROR_CONNECTION_FAIL, CaseInsensitiveDict(), None)
    except requests.RequestException as e:
        logging.warning("request error %s: %s", url, e)
        return FetchResult(ERROR_SEND_ERROR, CaseInsensitiveDict(), None)
    return FetchResult(r.status_code, r.headers, None if head else r.content)


# -------------------- Extraction --------------------


def find_raw_links(body: str, crawl_assets: Iterable[str]) -> List[str]:
    found = ANCHOR_HREF_RE.findall(body)
    for asset_type in crawl_assets:
        found.extend(m.group(1) for m in ASSET_LINK_PATTERNS[asset_type].finditer(body))
    return found


def extract_html_extras(body: str) -> Dict[str, Union[str, int]]:
    title = TITLE_RE.search(body)
    description = META_DESCRIPTION_RE.search(body)
    keywords = META_KEYWORDS_RE.search(body)
    return {
        "Title": html.unescape(title.group(1)).strip() if title else "",
        "Description": html.unescape(description.group(1)).strip() if description else "",
        "Keywords": html.unescape(keywords.group(1)).strip() if keywords else "",
        "DOM": len(DOM_TAG_RE.findall(body)),
    }


# -------------------- Output --------------------


class ConsoleOutput:
    def __init__(self, settings: Settings):
        self.extra_columns = [c for c in settings.extra_columns if c in EXTRA_COLUMNS]

    def add_table_header(self) -> None:
        cols = ["URL".ljust(70), "Status", "Time".rjust(7), "Size".rjust(10), "Type".ljust(10)]
        cols += [c.ljust(20) for c in self.extra_columns]
        cols.append("Progress")
        print(" | ".join(cols))
        print("-" * (len(" | ".join(cols)) + 8))

    def add_table_row(self, row: CrawlRow) -> None:
        status = ERROR_LABELS.get(row.status, str(row.status))
        cols = [
            row.url[:70].ljust(70),
            status.rjust(6),
            format_duration(row.elapsed).rjust(7),
            format_size(row.size).rjust(10),
            row.content_type.name.lower().ljust(10),
        ]
        cols += [str(row.extras.get(c, ""))[:20].ljust(20) for c in self.extra_columns]
        cols.append(f"{row.done}/{row.total}")
        print(" | ".join(cols))

    def add_total_stats(self, stats: BasicStats) -> None:
        print()
        if stats.partial:
            print("PARTIAL RESULTS: crawling was interrupted before it finished.")
        print(
            f"Total execution time: {format_duration(stats.total_execution_time)}, "
            f"URLs: {stats.total_urls}, size: {stats.total_size_formatted}"
        )
        print(
            f"Request times: avg {format_duration(stats.total_requests_times_avg)}, "
            f"min {format_duration(stats.total_requests_times_min)}, "
            f"max {format_duration(stats.total_requests_times_max)}, "
            f"total {format_duration(stats.total_requests_times)}"
        )
        by_status = ", ".join(
            f"{ERROR_LABELS.get(k, k)}: {v}" for k, v in stats.count_by_status.items()
        )
        print(f"Status codes: {by_status or '-'}")

    def add_error(self, message: str) -> None:
        logging.error("%s", message)

    def add_notice(self, message: str) -> None:
        logging.warning("%s", message)


# -------------------- Crawler --------------------


class Crawler:
    """
    Bounded worker pool over a deduplicated frontier.

    The queue and visited tables are dicts keyed by URL fingerprint. Every
    mutation of them (and of the worker/done counters) happens inside one
    critical section of ``_lock``; fetches always run outside of it.

    ``interrupt()`` stops admission and cancels fetches that have not started,
    and ``run()`` raises ``CrawlInterrupted`` without waiting for the pool.
    A request already on the wire cannot be aborted: its result is discarded,
    but its thread lives until the request returns, which is bounded by
    ``settings.timeout`` (times the retry count), so process exit can lag
    by that much.
    """

    def __init__(
        self,
        settings: Settings,
        output: Optional[ConsoleOutput] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        if settings.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        try:
            self.initial_url = ParsedUrl.parse(settings.url)
        except ValueError as e:
            raise ConfigurationError(f"invalid URL '{settings.url}': {e}") from None
        if self.initial_url.scheme not in ("http", "https") or not self.initial_url.host:
            raise ConfigurationError(f"invalid URL '{settings.url}', use http:// or https://")
        for asset_type in settings.crawl_assets:
            if asset_type not in ASSET_TYPES:
                raise ConfigurationError(f"unknown asset type '{asset_type}'")
        if settings.filename_sanitization not in FILENAME_SANITIZATION_MODES:
            raise ConfigurationError(
                f"Unknown filename sanitization method: {settings.filename_sanitization}"
            )
        self.user_agent = get_final_user_agent(settings)
        self.include_res = compile_regexes(settings.include, "include")
        self.exclude_res = compile_regexes(settings.exclude, "exclude")
        self.domain_policy = AllowedDomains(
            settings.allowed_domains_for_static_files,
            settings.allowed_domains_for_crawling,
        )
        self.output = output or ConsoleOutput(settings)
        self.session = session or build_session(settings, self.user_agent)

        self._lock = RLock()
        self._stopped = Event()
        self._queue: Dict[str, QueueEntry] = {}
        self._visited: Dict[str, VisitedRecord] = {}
        self._bodies: Dict[str, bytes] = {}
        self._active_workers = 0
        self._done_urls = 0
        self._start_time = time.monotonic()

    # ---- admission ----

    def is_url_allowed_by_regexes(self, url: str) -> bool:
        allowed = not self.include_res or any(r.search(url) for r in self.include_res)
        if allowed and any(r.search(url) for r in self.exclude_res):
            allowed = False
        return allowed

    def is_url_suitable_for_queue(self, url: str) -> bool:
        if not self.is_url_allowed_by_regexes(url):
            return False
        try:
            key = url_fingerprint(url)
        except ValueError:
            return False
        with self._lock:
            if key in self._queue or key in self._visited:
                return False
        try:
            parsed = ParsedUrl.parse(url)
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https") or not parsed.host:
            return False
        is_html_url = not QUEUE_EXTENSION_RE.search(parsed.path) or bool(
            HTML_LIKE_EXTENSION_RE.search(parsed.path)
        )
        return is_html_url or bool(self.settings.crawl_assets)

    def enqueue(self, url: str, source_key: str = "") -> bool:
        with self._lock:
            if not self.is_url_suitable_for_queue(url):
                return False
            self._add_to_queue(url, source_key)
        return True

    def _add_to_queue(self, url: str, source_key: str) -> None:
        if len(url) > self.settings.max_url_length:
            raise CapacityExceeded(
                f"Unable to queue URL '{url}' ({len(url)} chars). "
                "Set higher --max-url-length."
            )
        key = url_fingerprint(url)
        if key in self._queue:
            return
        if len(self._queue) >= self.settings.max_queue_length:
            raise CapacityExceeded(
                f"Unable to queue URL '{url}'. Set higher --max-queue-length."
            )
        self._queue[key] = QueueEntry(key, url, source_key)

    def _pop_next(self) -> Optional[QueueEntry]:
        # caller holds the lock; the entry is moved, never copied
        if not self._queue:
            return None
        if len(self._visited) >= self.settings.max_visited_urls:
            url = next(iter(self._queue.values())).url
            raise CapacityExceeded(
                f"Unable to add visited URL '{url}'. Set higher --max-visited-urls."
            )
        key = next(iter(self._queue))
        entry = self._queue.pop(key)
        host = urlsplit(entry.url).hostname or ""
        is_external = host != self.initial_url.host
        self._visited[key] = VisitedRecord(
            key=key,
            url=entry.url,
            source_key=entry.source_key,
            is_external=is_external,
            is_allowed_for_crawling=not is_external
            or self.domain_policy.is_external_domain_allowed_for_crawling(host),
        )
        self._active_workers += 1
        return entry

    # ---- run loop ----

    def run(self) -> BasicStats:
        self._start_time = time.monotonic()
        with self._lock:
            self._add_to_queue(self.settings.url, "")
        self.output.add_table_header()

        pool = ThreadPoolExecutor(
            max_workers=self.settings.workers, thread_name_prefix="crawler"
        )
        try:
            self._dispatch(pool)
        except KeyboardInterrupt:
            self.interrupt()
        except Exception:
            self._stopped.set()
            pool.shutdown(wait=False, cancel_futures=True)
            raise

        if self._stopped.is_set():
            pool.shutdown(wait=False, cancel_futures=True)
            raise CrawlInterrupted(self._finish_interrupted())

        pool.shutdown(wait=True)
        stats = self.get_stats()
        self.output.add_total_stats(stats)
        return stats

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        pending: Set[Future] = set()
        while not self._stopped.is_set():
            pending |= self._spawn_workers(pool, len(pending))
            if not pending:
                # queue is empty and no worker is active
                return
            done, pending = wait(pending, timeout=0.5, return_when=FIRST_COMPLETED)
            for future in done:
                future.result()

    def _spawn_workers(self, pool: ThreadPoolExecutor, running: int) -> Set[Future]:
        spawned: Set[Future] = set()
        with self._lock:
            while (
                running + len(spawned) < self.settings.workers
                and self._active_workers < self.settings.workers
                and self._queue
                and not self._stopped.is_set()
            ):
                entry = self._pop_next()
                spawned.add(pool.submit(self._process_url, entry))
        return spawned

    def _process_url(self, entry: QueueEntry) -> None:
        if self._stopped.is_set():
            with self._lock:
                self._active_workers -= 1
            return

        parsed = ParsedUrl.parse(entry.url)
        is_asset_url = bool(parsed.extension) and not HTML_LIKE_EXTENSION_RE.search(
            parsed.path
        )
        # bodies of static files are only needed when they will be exported
        head = is_asset_url and not self.settings.offline_export_dir
        request_url = (
            add_random_query_param(entry.url)
            if self.settings.add_random_query_params
            else entry.url
        )

        start = time.monotonic()
        result = fetch_url(
            self.session, request_url, head=head, timeout=self.settings.timeout
        )
        elapsed = time.monotonic() - start

        with self._lock:
            self._active_workers -= 1
        if self._stopped.is_set():
            return

        if head and "Content-Length" in result.headers:
            try:
                size = int(result.headers["Content-Length"])
            except ValueError:
                size = 0
        else:
            size = len(result.body) if result.body else 0

        content_type_header = result.headers.get("Content-Type", "")
        extras: Dict[str, Union[str, int]] = {}
        if result.body and "text/html" in content_type_header.lower():
            body = decode_body(result.body, content_type_header)
            for raw in find_raw_links(body, self.settings.crawl_assets):
                self._queue_discovered_url(raw, entry)
            extras = extract_html_extras(body)

        location = result.headers.get("Location")
        if 300 <= result.status < 400 and location:
            try:
                extras["Location"] = urljoin(entry.url, location.strip())
            except ValueError:
                logging.debug("skipping malformed Location %r on %s", location, entry.url)
            else:
                self._queue_discovered_url(location, entry)

        with self._lock:
            if self._stopped.is_set():
                return
            self._visited[entry.key] = replace(
                self._visited[entry.key],
                status=result.status,
                elapsed=elapsed,
                size=size,
                content_type=classify_content_type(content_type_header),
                charset=get_charset(content_type_header),
                extras=extras,
            )
            if self.settings.offline_export_dir and result.body is not None:
                self._bodies[entry.key] = result.body
            self._done_urls += 1
            self.output.add_table_row(
                CrawlRow(
                    url=entry.url,
                    status=result.status,
                    elapsed=elapsed,
                    size=size,
                    content_type=classify_content_type(content_type_header),
                    extras=extras,
                    done=self._done_urls,
                    total=len(self._queue) + len(self._visited),
                )
            )

    def _queue_discovered_url(self, raw: str, entry: QueueEntry) -> None:
        raw = html.unescape(raw.strip())
        if not raw or NON_HTML_SCHEME_RE.match(raw):
            return
        try:
            parsed = ParsedUrl.parse(raw)
            url = urljoin(entry.url, raw).split("#", 1)[0]
        except ValueError:
            logging.debug("skipping malformed link %r on %s", raw, entry.url)
            return
        # only same-host links are followed
        if parsed.host and parsed.host != self.initial_url.host:
            return
        if self.settings.remove_query_params:
            url = url.split("?", 1)[0]
        if url and not self._stopped.is_set():
            self.enqueue(url, entry.key)

    # ---- interruption ----

    def interrupt(self) -> None:
        if not self._stopped.is_set():
            logging.warning("stopping crawler, pending URLs will not be processed")
        self._stopped.set()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def _finish_interrupted(self) -> BasicStats:
        with self._lock:
            incomplete = [r.url for r in self._visited.values() if not r.is_done]
            stats = BasicStats.from_records(
                list(self._visited.values()), self._start_time, partial=True
            )
        for url in incomplete:
            logging.info("incomplete (interrupted): %s", url)
        if self._queue:
            logging.info("not processed (interrupted): %d queued URLs", len(self._queue))
        self.output.add_total_stats(stats)
        return stats

    # ---- accessors ----

    def get_stats(self) -> BasicStats:
        with self._lock:
            return BasicStats.from_records(list(self._visited.values()), self._start_time)

    def visited_records(self) -> List[VisitedRecord]:
        with self._lock:
            return list(self._visited.values())

    def queued_urls(self) -> List[str]:
        with self._lock:
            return [e.url for e in self._queue.values()]

    def table_keys(self) -> Tuple[Set[str], Set[str]]:
        with self._lock:
            return set(self._queue), set(self._visited)

    def get_body(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._bodies.get(key)

    def get_url_by_key(self, key: str) -> Optional[str]:
        with self._lock:
            record = self._visited.get(key)
            return record.url if record else None

    @property
    def active_workers(self) -> int:
        with self._lock:
            return self._active_workers


# -------------------- Offline URL converter --------------------


@dataclass(frozen=True)
class OfflineUrlSettings:
    replace_query_string: Tuple[str, ...] = ()
    file_path_length_limit: int = 200
    filename_sanitization: str = SANITIZE_UNDERSCORE

    def __post_init__(self):
        if self.filename_sanitization not in FILENAME_SANITIZATION_MODES:
            raise ConfigurationError(
                f"Unknown filename sanitization method: {self.filename_sanitization}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OfflineUrlSettings":
        return cls(
            replace_query_string=tuple(settings.replace_query_string),
            file_path_length_limit=settings.offline_export_file_path_length_limit,
            filename_sanitization=settings.filename_sanitization,
        )


DEFAULT_OFFLINE_URL_SETTINGS = OfflineUrlSettings()


def get_query_hash(query: str, replace_rules: Sequence[str] = ()) -> str:
    if replace_rules:
        return apply_replace_rules(query, replace_rules).replace("/", "~")
    decoded = html.unescape(unquote_plus(query))
    return hashlib.md5(decoded.encode("utf-8")).hexdigest()[:10]


def sanitize_filename(file_path: str, mode: str) -> str:
    if mode == SANITIZE_UNDERSCORE:
        for ch in FILENAME_SPECIAL_CHARS:
            file_path = file_path.replace(ch, "_")
        return re.sub(r"_{2,}", "_", file_path)
    if mode == SANITIZE_DASH:
        for ch in FILENAME_SPECIAL_CHARS:
            file_path = file_path.replace(ch, "-")
        return re.sub(r"-{2,}", "-", file_path)
    if mode == SANITIZE_EMPTY:
        for ch in FILENAME_SPECIAL_CHARS:
            file_path = file_path.replace(ch, "")
        return file_path
    if mode == SANITIZE_URLENCODE:
        file_path = re.sub(r"[^/]+$", lambda m: quote_plus(m.group(0)), file_path)
        return file_path.replace("%23", "#")
    if mode == SANITIZE_RAWURLENCODE:
        file_path = re.sub(r"[^/]+$", lambda m: quote(m.group(0), safe=""), file_path)
        return file_path.replace("%23", "#")
    if mode == SANITIZE_MD5:
        path_part, sep, fragment = file_path.partition("#")
        name = path_part.split("?", 1)[0].rsplit("/", 1)[-1]
        ext = os.path.splitext(name)[1]

        def md5_name(m: "re.Match[str]") -> str:
            return hashlib.md5(m.group(0).encode("utf-8")).hexdigest() + ext

        return re.sub(r"[^/]+$", md5_name, path_part) + sep + fragment
    raise ConfigurationError(f"Unknown filename sanitization method: {mode}")


def sanitize_file_path(
    file_path: str,
    keep_fragment: bool,
    settings: OfflineUrlSettings = DEFAULT_OFFLINE_URL_SETTINGS,
) -> str:
    path_part, _, fragment = file_path.partition("#")
    path_part, _, query = path_part.partition("?")

    # a query string left over is folded into the filename as a short hash
    extension: Optional[str] = None
    m = PATH_WITH_EXTENSION_RE.match(path_part)
    if m:
        extension = m.group(2)
        if query.strip():
            query_hash = get_query_hash(query, settings.replace_query_string)
            file_path = f"{m.group(1)}.{query_hash}.{extension}"
            if keep_fragment and fragment:
                file_path += f"#{fragment}"

    file_path = sanitize_filename(file_path, settings.filename_sanitization)

    path_length = len(file_path.split("#", 1)[0])
    directory, slash, basename = file_path.rpartition("/")
    if path_length > settings.file_path_length_limit and len(basename) > 40:
        ext = extension or os.path.splitext(basename)[1].lstrip(".")
        short = hashlib.md5(basename.encode("utf-8")).hexdigest()[:10]
        file_path = directory + slash + (f"{short}.{ext}" if ext else short)

    file_path, sep, fragment = file_path.partition("#")
    file_path = FOLDER_WITH_EXTENSION_RE.sub(r"\1.\2_/", file_path)
    file_path = DYNAMIC_EXTENSION_RE.sub(r".\1.html", file_path)

    if keep_fragment:
        file_path += sep + fragment
    return file_path


class OfflineUrlConverter:
    """
    Converts a target URL found on a base page into a path relative to that
    page inside the offline mirror.

    Every step returns a new ParsedUrl; the applied steps are kept in
    ``relative_target_url.trace``.
    """

    def __init__(
        self,
        initial_url: ParsedUrl,
        base_url: ParsedUrl,
        target_url: ParsedUrl,
        domain_policy: Optional[DomainPolicy] = None,
        attribute: Optional[str] = None,
        settings: OfflineUrlSettings = DEFAULT_OFFLINE_URL_SETTINGS,
    ):
        self.initial_url = initial_url
        self.base_url = base_url
        self.target_url = target_url
        self.relative_target_url = target_url
        self.domain_policy = domain_policy or AllowedDomains()
        self.attribute = attribute
        self.settings = settings
        self.relation = TargetDomainRelation.classify(initial_url, base_url, target_url)

    def convert_url_to_relative(self, keep_fragment: bool = True) -> str:
        forced = self._get_forced_url_if_needed()
        if forced is not None:
            return forced

        url = self._detect_and_set_file_name_with_extension(self.target_url)
        url = self._calculate_and_apply_depth(url)
        self.relative_target_url = url
        return sanitize_file_path(
            url.full_url(False, keep_fragment), keep_fragment, self.settings
        )

    def _get_forced_url_if_needed(self) -> Optional[str]:
        target = self.target_url
        if target.is_only_fragment():
            return f"#{target.fragment}"

        if not is_href_for_requestable_resource(target.url):
            return target.url

        if self.relation.is_external and target.host:
            policy = self.domain_policy
            if policy.is_external_domain_allowed_for_crawling(target.host):
                return None
            is_static = target.is_static_file()
            if is_static and policy.is_domain_allowed_for_static_files(target.host):
                return None
            # e.g. <img src="https://icons.example/fa/users/"> without extension
            if (
                not is_static
                and self.attribute == "src"
                and policy.is_domain_allowed_for_static_files(target.host)
            ):
                return None
            return target.full_url(True, True)

        return None

    def _detect_and_set_file_name_with_extension(self, url: ParsedUrl) -> ParsedUrl:
        query_hash = (
            get_query_hash(url.query, self.settings.replace_query_string)
            if url.query
            else None
        )

        if url.path.strip("/ ") == "":
            if query_hash:
                url = url.with_path(
                    f"/index.{query_hash}.html",
                    f"set '/index.{query_hash}.html', empty path with query string",
                )
                return url.with_query("", "query string moved into the file name")
            if url.path == "" and url.fragment:
                return url
            return url.with_path("/index.html", "set '/index.html', empty path")

        is_image_attribute = self.attribute in ("src", "srcset")
        img_extension = "svg" if "icon" in url.full_url().lower() else "jpg"
        other_extension = (
            "css"
            if self.attribute == "href" and "fonts.googleapis.com/css" in url.url.lower()
            else "html"
        )
        extension = url.extension or (img_extension if is_image_attribute else other_extension)

        if url.path.endswith("/"):
            name = f"index.{query_hash}.{extension}" if query_hash else f"index.{extension}"
            url = url.with_path(url.path + name, f"add '{name}', path ends with '/'")
        else:
            stem = url.path[: -len(url.extension) - 1] if url.extension else url.path
            name = f".{query_hash}.{extension}" if query_hash else f".{extension}"
            url = url.with_path(stem + name, f"add '{name}' to the file name")

        if query_hash:
            url = url.with_query("", "query string moved into the file name")
        return url

    def _calculate_and_apply_depth(self, url: ParsedUrl) -> ParsedUrl:
        base_depth = self.base_url.path.lstrip("/ ").count("/")
        relation = self.relation

        if relation in (
            TargetDomainRelation.INITIAL_SAME__BASE_SAME,
            TargetDomainRelation.INITIAL_DIFFERENT__BASE_SAME,
        ):
            if url.path.startswith("/"):
                url = url.with_depth(base_depth, f"depth {base_depth}, root-relative path")
        elif relation is TargetDomainRelation.INITIAL_SAME__BASE_DIFFERENT:
            # backlink from a foreign host back to the initial host
            host_prefix = re.compile(
                r"^(//|https?://)" + re.escape(url.host) + r"(:[0-9]+)?", re.IGNORECASE
            )
            path = host_prefix.sub("", url.path).lstrip("/ ")
            url = url.with_path(
                "../" * (base_depth + 1) + path, "backlink to the offline root"
            )
        else:
            extra = 1 if self.base_url.host != self.initial_url.host else 0
            url = url.with_path(
                "../" * (base_depth + extra) + f"_{url.host}{url.path}",
                "foreign host moved under its '_host' folder",
            )

        if url.path.startswith("/"):
            url = url.with_path(url.path.lstrip("/ "), "remove leading slash")
        return url


# -------------------- HTML utils --------------------


def bs4_parse(html_text: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html_text, "lxml")
    except Exception:
        return BeautifulSoup(html_text, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def redirect_html(target: str) -> str:
    t = html.escape(target, quote=True)
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<meta http-equiv=\"refresh\" content=\"0; url={t}\">"
        f"<title>Redirect</title></head><body><a href=\"{t}\">{t}</a></body></html>\n"
    )


def add_redirect_html_to_subfolders(root: Path) -> List[Path]:
    created: List[Path] = []
    for index in sorted(root.rglob("index.html")):
        folder = index.parent
        if folder == root:
            continue
        redirect = folder.with_name(f"{folder.name}.html")
        if redirect.exists():
            continue
        redirect.write_text(redirect_html(f"{folder.name}/index.html"), encoding="utf-8")
        created.append(redirect)
    return created


# -------------------- Offline export --------------------


class OfflineWebsiteExporter:
    EXPORTED_STATUSES = {200, 201, 301, 302, 303, 308}
    CONTENT_TYPES_THAT_REQUIRE_CHANGES = {
        ContentType.HTML,
        ContentType.SCRIPT,
        ContentType.STYLESHEET,
    }
    ATTR_MAP = {
        "a": ["href"],
        "area": ["href"],
        "link": ["href"],
        "img": ["src"],
        "source": ["src"],
        "video": ["src", "poster"],
        "audio": ["src"],
        "track": ["src"],
        "script": ["src"],
        "iframe": ["src"],
        "embed": ["src"],
        "input": ["src"],
        "object": ["data"],
        "form": ["action"],
    }

    def __init__(
        self,
        crawler: Crawler,
        settings: Settings,
        output: Optional[ConsoleOutput] = None,
    ):
        if not settings.offline_export_dir:
            raise ConfigurationError("offline export directory is not set")
        self.crawler = crawler
        self.settings = settings
        self.output = output or crawler.output
        self.export_dir = Path(settings.offline_export_dir)
        self.url_settings = OfflineUrlSettings.from_settings(settings)
        self.store_only_res = compile_regexes(
            settings.offline_export_store_only_url_regex, "store-only-url"
        )

    def export(self) -> Path:
        start = time.monotonic()
        records = [
            r
            for r in self.crawler.visited_records()
            if r.is_done and r.status in self.EXPORTED_STATUSES
        ]
        stored = 0
        for record in records:
            if is_valid_url(record.url) and self.should_be_url_stored(record):
                if self.store_file(record):
                    stored += 1

        add_redirect_html_to_subfolders(self.export_dir)
        logging.info(
            "offline website generated to '%s' (%d files) and took %s",
            self.export_dir,
            stored,
            format_duration(time.monotonic() - start),
        )
        return self.export_dir

    def should_be_url_stored(self, record: VisitedRecord) -> bool:
        result = not self.store_only_res or any(
            r.search(record.url) for r in self.store_only_res
        )
        if result and record.is_external:
            parsed = ParsedUrl.parse(record.url)
            policy = self.crawler.domain_policy
            if policy.is_external_domain_allowed_for_crawling(parsed.host):
                result = True
            elif (
                record.is_static_file() or parsed.is_static_file()
            ) and policy.is_domain_allowed_for_static_files(parsed.host):
                result = True
            else:
                result = False
        return result

    def store_file(self, record: VisitedRecord) -> bool:
        content = self.crawler.get_body(record.key) or b""
        location = record.extras.get("Location")
        if record.status is not None and 300 <= record.status < 400 and location:
            target = self.convert_url(record.url, str(location), "href")
            content = redirect_html(target).encode("utf-8")
        elif content and record.content_type in self.CONTENT_TYPES_THAT_REQUIRE_CHANGES:
            # written back in the served charset; undecodable bytes round-trip unchanged
            text = content.decode(record.charset, errors="surrogateescape")
            if record.content_type == ContentType.HTML:
                text = self.rewrite_html(text, record.url)
            elif record.content_type == ContentType.STYLESHEET:
                text = self.rewrite_css(text, record.url)
            if self.settings.replace_content:
                text = apply_replace_rules(text, self.settings.replace_content)
            content = encode_body(text, record.charset)

        store_path = self.export_dir / self.get_relative_file_path(record).split("#", 1)[0]
        try:
            store_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._store_error(f"Cannot create directory '{store_path.parent}': {e}", True)
            return False

        # an http:// variant must not replace the page stored for an https:// seed
        if (
            store_path.is_file()
            and not record.is_https()
            and self.crawler.initial_url.is_https()
        ):
            self.output.add_notice(
                f"File '{store_path}' already exists and will not be overwritten "
                f"because initial request was HTTPS and this request is HTTP: {record.url}"
            )
            return False

        try:
            store_path.write_bytes(content)
        except OSError as e:
            fatal = STORE_EXTENSION_RE.search(store_path.name) is not None
            self._store_error(
                f"Cannot store file '{store_path}' ({e}). Original URL: {record.url}",
                fatal,
            )
            return False
        return True

    def _store_error(self, message: str, fatal: bool) -> None:
        if fatal and not self.settings.ignore_store_file_error:
            raise ExportError(message)
        self.output.add_notice(message)

    def get_relative_file_path(self, record: VisitedRecord) -> str:
        base = (
            self.crawler.get_url_by_key(record.source_key) if record.source_key else None
        )
        converter = OfflineUrlConverter(
            self.crawler.initial_url,
            ParsedUrl.parse(base or self.settings.url),
            ParsedUrl.parse(record.url),
            self.crawler.domain_policy,
            "src" if record.content_type == ContentType.IMAGE else "href",
            self.url_settings,
        )
        relative = converter.convert_url_to_relative(keep_fragment=False)
        path = relative.replace("../", "").lstrip("/ ")
        if converter.relation.is_external:
            host_dir = f"_{converter.relative_target_url.host}"
            if not path.startswith(host_dir):
                path = f"{host_dir}/{path}"
        return path

    def convert_url(self, base_url: str, value: str, attribute: str) -> str:
        try:
            target = ParsedUrl.parse(value)
            base = ParsedUrl.parse(base_url)
        except ValueError:
            return value
        converter = OfflineUrlConverter(
            self.crawler.initial_url,
            base,
            target,
            self.crawler.domain_policy,
            attribute,
            self.url_settings,
        )
        return converter.convert_url_to_relative(keep_fragment=True)

    def rewrite_html(self, text: str, page_url: str) -> str:
        soup = bs4_parse(text)
        for base_tag in soup.find_all("base"):
            base_tag.decompose()

        for tag_name, attrs in self.ATTR_MAP.items():
            for tag in soup.find_all(tag_name):
                for a in attrs:
                    val = tag.get(a)
                    if not isinstance(val, str) or not val.strip():
                        continue
                    new_val = self.convert_url(page_url, val, a)
                    if new_val != val:
                        tag[a] = new_val
                        for rm in ("integrity", "crossorigin"):
                            if rm in tag.attrs:
                                del tag.attrs[rm]

        for tag in soup.select("img[srcset], source[srcset]"):
            parts = []
            for candidate in SRCSET_SPLIT_RE.split(tag.get("srcset", "").strip()):
                comp = WS_RE.split(candidate.strip())
                if not comp or not comp[0]:
                    continue
                url_out = self.convert_url(page_url, comp[0], "srcset")
                parts.append(" ".join([url_out] + comp[1:]))
            tag["srcset"] = ", ".join(parts)

        for tag in soup.select("[style]"):
            css = tag.get("style")
            if css:
                new_css = self.rewrite_css(css, page_url)
                if new_css != css:
                    tag["style"] = new_css
        for style in soup.find_all("style"):
            if style.string:
                new_text = self.rewrite_css(style.string, page_url)
                if new_text != style.string:
                    style.string.replace_with(new_text)
        return serialize_html(soup)

    def rewrite_css(self, css_text: str, css_base_url: str) -> str:
        def repl_url(m: "re.Match[str]") -> str:
            q = m.group(1) or ""
            u = m.group(2).strip()
            if u.startswith("data:"):
                return m.group(0)
            return f"url({q}{self.convert_url(css_base_url, u, 'src')}{q})"

        def repl_import(m: "re.Match[str]") -> str:
            q = m.group(1)
            u = m.group(2).strip()
            return f"@import {q}{self.convert_url(css_base_url, u, 'href')}{q};"

        t = CSS_URL_RE.sub(repl_url, css_text)
        return CSS_IMPORT_RE.sub(repl_import, t)


def is_valid_url(url: str) -> bool:
    try:
        p = urlsplit(url)
    except ValueError:
        return False
    return p.scheme in ("http", "https") and bool(p.netloc)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        if sys.version_info >= (3, 11):
            import tomllib
        else:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigurationError("Top-level YAML must be a mapping")
            return data
    else:
        raise ConfigurationError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Crawl a website and optionally export a browsable offline copy.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL to start crawling from")
    p.add_argument("--workers", "-w", type=int, default=3, help="concurrent workers")
    p.add_argument("--timeout", type=float, default=5.0, help="request timeout seconds")
    p.add_argument("--retries", type=int, default=0, help="retries per request")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # capacity
    p.add_argument("--max-queue-length", type=int, default=2000, help="max queued URLs")
    p.add_argument("--max-visited-urls", type=int, default=5000, help="max visited URLs")
    p.add_argument("--max-url-length", type=int, default=2000, help="max URL length")

    # request
    p.add_argument(
        "--accept-encoding", type=str, default="gzip, deflate", help="Accept-Encoding"
    )
    p.add_argument("--user-agent", type=str, default=None, help="custom User-Agent")
    p.add_argument(
        "--device",
        type=str,
        default="desktop",
        help="User-Agent category: desktop, mobile or tablet",
    )
    p.add_argument(
        "--add-random-query-params",
        action="store_true",
        help="add a random query param to every request (cache busting)",
    )

    # scope
    p.add_argument(
        "--crawl-assets",
        action="append",
        default=[],
        choices=list(ASSET_TYPES),
        help="also crawl this asset category",
    )
    p.add_argument(
        "--include-regex", action="append", default=[], help="only crawl URLs matching regex"
    )
    p.add_argument(
        "--ignore-regex", action="append", default=[], help="skip URLs matching regex"
    )
    p.add_argument(
        "--remove-query-params", action="store_true", help="strip query strings of found URLs"
    )
    p.add_argument(
        "--allowed-domain-for-crawling",
        action="append",
        default=[],
        help="external domain (or *.pattern) allowed for crawling",
    )
    p.add_argument(
        "--allowed-domain-for-external-files",
        action="append",
        default=[],
        help="external domain (or *.pattern) allowed for static files",
    )
    p.add_argument(
        "--extra-columns",
        action="append",
        default=None,
        choices=list(EXTRA_COLUMNS),
        help="extra output column",
    )

    # offline export
    p.add_argument(
        "--offline-export-dir", type=str, default=None, help="offline website directory"
    )
    p.add_argument(
        "--offline-export-store-only-url-regex",
        action="append",
        default=[],
        help="store only URLs matching regex",
    )
    p.add_argument(
        "--offline-export-file-path-length-limit",
        type=int,
        default=200,
        help="max length of exported file paths",
    )
    p.add_argument(
        "--offline-export-filename-sanitization",
        type=str,
        default=SANITIZE_UNDERSCORE,
        choices=list(FILENAME_SANITIZATION_MODES),
        help="how to sanitize exported file names",
    )
    p.add_argument(
        "--replace-content",
        action="append",
        default=[],
        help="replace HTML/JS/CSS content 'foo -> bar' or '/regex/i -> bar'",
    )
    p.add_argument(
        "--replace-query-string",
        action="append",
        default=[],
        help="replace query string in file names instead of hashing",
    )
    p.add_argument(
        "--ignore-store-file-error",
        action="store_true",
        help="continue the export when a file cannot be stored",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("crawl", "export", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    args = parser.parse_args(argv)
    return args


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except ConfigurationError as e:
        print(f"Invalid config: {e}")
        sys.exit(1)
    if urlsplit(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    settings = Settings(
        url=args.url,
        workers=max(1, args.workers),
        timeout=max(0.1, args.timeout),
        retries=max(0, args.retries),
        max_queue_length=max(1, args.max_queue_length),
        max_visited_urls=max(1, args.max_visited_urls),
        max_url_length=max(1, args.max_url_length),
        accept_encoding=args.accept_encoding,
        user_agent=args.user_agent,
        device=args.device,
        add_random_query_params=args.add_random_query_params,
        crawl_assets=list(dict.fromkeys(args.crawl_assets)),
        include=args.include_regex,
        exclude=args.ignore_regex,
        remove_query_params=args.remove_query_params,
        allowed_domains_for_crawling=args.allowed_domain_for_crawling,
        allowed_domains_for_static_files=args.allowed_domain_for_external_files,
        extra_columns=args.extra_columns or ["Title"],
        offline_export_dir=args.offline_export_dir,
        offline_export_store_only_url_regex=args.offline_export_store_only_url_regex,
        offline_export_file_path_length_limit=args.offline_export_file_path_length_limit,
        filename_sanitization=args.offline_export_filename_sanitization,
        replace_content=args.replace_content,
        replace_query_string=args.replace_query_string,
        ignore_store_file_error=args.ignore_store_file_error,
    )

    output = ConsoleOutput(settings)
    try:
        crawler = Crawler(settings, output=output)
        crawler.run()
        if settings.offline_export_dir:
            OfflineWebsiteExporter(crawler, settings).export()
    except CrawlInterrupted as e:
        print(str(e))
        sys.exit(130)
    except CrawlerError as e:
        output.add_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
