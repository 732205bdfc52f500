#!/usr/bin/env python3
# gh_pr_picker: Terminal picker for your open GitHub pull requests
#
# Hotkeys
#   left/h, right/l   previous / next category tab
#   up/k, down/j      move the highlighted row
#   g / G             jump to top / bottom
#   enter             open the highlighted PR in a browser (keeps running)
#   c                 clone the repository, check out the PR, drop into a shell
#   r                 refresh now (also reschedules the automatic refresh)
#   q / ctrl-c        quit
#
# Categories (defaults, override with --config)
#   Review Requests   is:pr is:open review-requested:@me draft:false archived:false
#   My PRs            is:pr is:open author:@me draft:false archived:false
#   Draft PRs         is:pr is:open involves:@me draft:true archived:false
#   Involved          is:pr is:open involves:@me draft:false archived:false
#
# Environment
# - GITHUB_TOKEN (or TOKEN/GITHUB_TOKEN in a .env file)
# - BASE_DIR     clone target root (default ~/workspace)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import enum
import logging
import os
import shutil
import subprocess
import sys
import threading
import time
import webbrowser
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth


LOGGER_NAME = 'gh_pr_picker'
log = logging.getLogger(LOGGER_NAME)

DEFAULT_REFRESH_INTERVAL = 60  # seconds
DEFAULT_PER_PAGE = 50
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_BASE_DIR_NAME = "workspace"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# -----------------------------
# Config models
# -----------------------------
class ConfigError(ValueError):
    """Raised when the YAML config cannot be turned into a Config."""


@dataclass(frozen=True)
class Category:
    label: str
    filters: Tuple[str, ...]

    @property
    def query(self) -> str:
        return " ".join(self.filters)


DEFAULT_CATEGORIES: Tuple[Category, ...] = (
    Category("Review Requests", ("is:pr", "is:open", "review-requested:@me", "draft:false", "archived:false")),
    Category("My PRs", ("is:pr", "is:open", "author:@me", "draft:false", "archived:false")),
    Category("Draft PRs", ("is:pr", "is:open", "involves:@me", "draft:true", "archived:false")),
    Category("Involved", ("is:pr", "is:open", "involves:@me", "draft:false", "archived:false")),
)


@dataclass
class Config:
    categories: List[Category] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    per_page: int = DEFAULT_PER_PAGE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    base_dir: Optional[str] = None
    theme: Dict[str, str] = field(default_factory=dict)


def _parse_categories(raw: object) -> List[Category]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("Config: 'categories' must be a non-empty list.")
    out: List[Category] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"Config: category #{i + 1} must be a mapping with 'label' and 'filters'.")
        label = str(item.get("label") or "").strip()
        if not label:
            raise ConfigError(f"Config: category #{i + 1} is missing 'label'.")
        filters = item.get("filters")
        if isinstance(filters, str):
            parts = filters.split()
        elif isinstance(filters, list):
            parts = [str(f).strip() for f in filters if str(f).strip()]
        else:
            parts = []
        if not parts:
            raise ConfigError(f"Config: category '{label}' has no filters.")
        out.append(Category(label=label, filters=tuple(parts)))
    return out


def load_config(path: str) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Config: cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config: invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config: top level must be a mapping.")

    cfg = Config()
    if "categories" in raw:
        cfg.categories = _parse_categories(raw.get("categories"))
    try:
        cfg.refresh_interval = int(raw.get("refresh_interval", cfg.refresh_interval))
        cfg.per_page = int(raw.get("per_page", cfg.per_page))
        cfg.request_timeout = float(raw.get("request_timeout", cfg.request_timeout))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config: {exc}") from exc
    if cfg.refresh_interval <= 0:
        raise ConfigError("Config: 'refresh_interval' must be a positive number of seconds.")
    if not 1 <= cfg.per_page <= 100:
        raise ConfigError("Config: 'per_page' must be between 1 and 100.")
    if cfg.request_timeout <= 0:
        raise ConfigError("Config: 'request_timeout' must be positive.")
    base_dir = raw.get("base_dir")
    cfg.base_dir = str(base_dir) if base_dir else None
    theme = raw.get("theme")
    if isinstance(theme, dict):
        cfg.theme = {k: v for k, v in theme.items() if isinstance(k, str) and isinstance(v, str)}
        try:
            ViewStyle.from_overrides(cfg.theme).to_style()
        except (ValueError, AssertionError) as exc:
            raise ConfigError(f"Config: invalid theme: {exc}") from exc
    return cfg


def expand_home(path: str) -> str:
    """Expand a leading '~' (also '~dir') against the user's home directory."""
    if not path.startswith("~"):
        return path
    home = os.path.expanduser("~")
    if home == "~":
        return path
    rest = path[1:].lstrip("/\\")
    if not rest:
        return home
    return os.path.join(home, rest)


def get_base_dir(configured: Optional[str] = None) -> str:
    """Directory that receives clones: $BASE_DIR, then the config value, then ~/workspace."""
    env_dir = os.environ.get("BASE_DIR")
    if env_dir:
        return expand_home(env_dir)
    if configured:
        return expand_home(configured)
    return os.path.join(os.path.expanduser("~"), DEFAULT_BASE_DIR_NAME)


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or GITHUB_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as exc:
            log.warning("Cannot read %s: %s", path, exc)
            continue
        for line in lines:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            k, v = line.split('=', 1)
            k = k.strip()
            v = v.strip().strip('"').strip("'")
            if k in ("TOKEN", "GITHUB_TOKEN") and v:
                os.environ.setdefault("GITHUB_TOKEN", v)
                return v
    return None


# -----------------------------
# Pull request records & display entries
# -----------------------------
@dataclass(frozen=True)
class PullRequestRecord:
    repo: str                  # owner/name
    number: int
    title: str
    author: str
    url: str
    comments: int
    created_at: dt.datetime
    updated_at: dt.datetime


@dataclass(frozen=True)
class DisplayEntry:
    repo: str
    number: int
    title: str
    author: str
    url: str
    comments: int
    age: str
    updated_since: str


def humanize_duration(seconds: int) -> str:
    """Format seconds with the coarsest unit that keeps the value >= 1."""
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    if seconds < 604800:
        return f"{seconds // 86400}d"
    return f"{seconds // 604800}w"


def _elapsed_seconds(now: dt.datetime, then: dt.datetime) -> int:
    return int((now - then).total_seconds())


def build_entries(records: Iterable[PullRequestRecord], now: dt.datetime) -> List[DisplayEntry]:
    """Project records into display rows against one shared reference instant.

    Order is preserved; the search already sorts results.
    """
    return [
        DisplayEntry(
            repo=rec.repo,
            number=rec.number,
            title=rec.title,
            author=rec.author,
            url=rec.url,
            comments=rec.comments,
            age=humanize_duration(_elapsed_seconds(now, rec.created_at)),
            updated_since=humanize_duration(_elapsed_seconds(now, rec.updated_at)),
        )
        for rec in records
    ]


# -----------------------------
# GitHub search
# -----------------------------
SEARCH_URL = "https://api.github.com/search/issues"
REPOS_API_PREFIX = "https://api.github.com/repos/"

SearchFn = Callable[[Category], List[PullRequestRecord]]


class FetchError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    return s


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    # Prefer Retry-After header (secondary rate limits)
    ra = resp.headers.get('Retry-After')
    if ra:
        try:
            return int(float(ra))
        except ValueError:
            pass
    # Next, X-RateLimit-Reset (epoch seconds)
    xrlr = resp.headers.get('X-RateLimit-Reset')
    if xrlr:
        try:
            return max(1, int(xrlr) - int(time.time()))
        except ValueError:
            pass
    return None


def _parse_iso(s: Optional[str]) -> Optional[dt.datetime]:
    if not s:
        return None
    try:
        value = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


def _record_from_item(item: Dict) -> Optional[PullRequestRecord]:
    repo_url = item.get("repository_url") or ""
    repo = repo_url[len(REPOS_API_PREFIX):] if repo_url.startswith(REPOS_API_PREFIX) else ""
    number = item.get("number")
    url = item.get("html_url") or ""
    created = _parse_iso(item.get("created_at"))
    updated = _parse_iso(item.get("updated_at")) or created
    try:
        comments = int(item.get("comments") or 0)
    except (TypeError, ValueError):
        comments = None
    if not repo or not isinstance(number, int) or not url or created is None or comments is None:
        log.debug("Skipping malformed search item: %r", item.get("url"))
        return None
    return PullRequestRecord(
        repo=repo,
        number=number,
        title=item.get("title") or "",
        author=(item.get("user") or {}).get("login") or "",
        url=url,
        comments=comments,
        created_at=created,
        updated_at=updated,
    )


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return (resp.text or "").strip()[:200]


def search_pull_requests(
    session: requests.Session,
    filters: Sequence[str],
    per_page: int = DEFAULT_PER_PAGE,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> List[PullRequestRecord]:
    """Run one search page and map the items to records, newest first."""
    params = {"q": " ".join(filters), "sort": "created", "order": "desc", "per_page": per_page}
    try:
        resp = session.get(SEARCH_URL, params=params, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise FetchError(f"search request failed: {exc}") from exc
    if resp.status_code >= 300:
        retry_after = _parse_retry_after_seconds(resp) if resp.status_code in (403, 429) else None
        message = f"HTTP {resp.status_code}: {_error_message(resp)}"
        if retry_after is not None:
            message += f" (rate limited; resets in {retry_after}s)"
        raise FetchError(message, status=resp.status_code, retry_after=retry_after)
    data = resp.json() or {}
    if data.get("incomplete_results"):
        log.info("Search for %r returned incomplete results", params["q"])
    records: List[PullRequestRecord] = []
    for item in data.get("items") or []:
        if not isinstance(item, dict):
            continue
        rec = _record_from_item(item)
        if rec is not None:
            records.append(rec)
    return records


def make_github_search(
    token: str,
    per_page: int = DEFAULT_PER_PAGE,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> SearchFn:
    """Search callable safe for concurrent use: every call gets its own session."""
    def search(category: Category) -> List[PullRequestRecord]:
        session_local = _session(token)
        try:
            return search_pull_requests(session_local, category.filters, per_page=per_page, timeout=timeout)
        finally:
            session_local.close()
    return search


MOCK_REPOS = ("octo/widgets", "octo/gadgets", "acme/api", "acme/web")


def generate_mock_prs(category: Category, now: Optional[dt.datetime] = None) -> List[PullRequestRecord]:
    """Generate synthetic pull requests for offline demo & testing."""
    now = now or _utcnow()
    seed = sum(ord(ch) for ch in category.label)
    count = 1 + seed % 5
    rows: List[PullRequestRecord] = []
    for i in range(count):
        repo = MOCK_REPOS[(seed + i) % len(MOCK_REPOS)]
        number = 100 + seed % 50 + i
        created = now - dt.timedelta(hours=(i + 1) * (seed % 7 + 1) * 5)
        rows.append(PullRequestRecord(
            repo=repo,
            number=number,
            title=f"{category.label}: mock change {i + 1}",
            author="octocat",
            url=f"https://github.com/{repo}/pull/{number}",
            comments=i * 2,
            created_at=created,
            updated_at=created + (now - created) / 2,
        ))
    return rows


def mock_search(category: Category) -> List[PullRequestRecord]:
    return generate_mock_prs(category)


# -----------------------------
# Fetch aggregation
# -----------------------------
ProgressCB = Callable[[int, int, str], None]


class _ParallelProgress:
    """Thread-safe progress reporter shared across category fetch workers."""

    def __init__(self, total: int, progress_cb: Optional[ProgressCB]):
        self._total = max(0, total)
        self._cb = progress_cb
        self._lock = threading.Lock()
        self._done = 0

    def advance(self, message: str) -> None:
        if not self._cb:
            return
        with self._lock:
            self._done = min(self._total, self._done + 1)
            try:
                self._cb(self._done, self._total, message)
            except Exception:
                log.debug('Progress callback failed', exc_info=True)


@dataclass
class FetchBatch:
    entries: List[List[DisplayEntry]]
    errors: Dict[str, str]
    fetched_at: dt.datetime


def fetch_all_categories(
    categories: Sequence[Category],
    search: SearchFn,
    progress: Optional[ProgressCB] = None,
    clock: Callable[[], dt.datetime] = _utcnow,
    max_workers: int = 8,
) -> FetchBatch:
    """Fetch every category concurrently and build one batch of display rows.

    A failing category yields an empty list; its error is logged and kept in
    ``errors``. The reference instant is taken once all fetches are done.
    """
    total = len(categories)
    if total == 0:
        return FetchBatch(entries=[], errors={}, fetched_at=clock())
    tracker = _ParallelProgress(total, progress)
    results: List[List[PullRequestRecord]] = [[] for _ in range(total)]
    errors: Dict[str, str] = {}
    start = time.monotonic()

    workers = min(max_workers, total)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as executor:
        future_map = {executor.submit(search, category): idx for idx, category in enumerate(categories)}
        for future in as_completed(future_map):
            idx = future_map[future]
            label = categories[idx].label
            try:
                results[idx] = list(future.result())
            except Exception as exc:
                errors[label] = str(exc)
                log.warning("Error while fetching %s: %s", label, exc)
                tracker.advance(f"Failed {label}")
                continue
            log.info("Fetched %d %s in %1.4fs", len(results[idx]), label, time.monotonic() - start)
            tracker.advance(f"Fetched {label}")

    now = clock()
    log.info("Fetching completed (%d categories, %d failed)", total, len(errors))
    return FetchBatch(
        entries=[build_entries(records, now) for records in results],
        errors=errors,
        fetched_at=now,
    )


# -----------------------------
# Session controller
# -----------------------------
class Outcome(enum.Enum):
    NONE = "none"
    QUIT = "quit"
    CLONE = "clone"


@dataclass(frozen=True)
class Tick:
    now: dt.datetime


@dataclass(frozen=True)
class RefreshCompleted:
    entries: List[List[DisplayEntry]]
    generation: int = 0


@dataclass(frozen=True)
class NavigatePrev:
    pass


@dataclass(frozen=True)
class NavigateNext:
    pass


@dataclass(frozen=True)
class CursorMove:
    delta: int


@dataclass(frozen=True)
class ManualRefresh:
    pass


@dataclass(frozen=True)
class Select:
    pass


@dataclass(frozen=True)
class RequestCheckout:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class Resize:
    width: int
    height: int


@dataclass
class SessionState:
    categories: List[Category]
    entries: List[List[DisplayEntry]]
    category_index: int = 0
    highlighted: int = 0
    next_refresh: Optional[dt.datetime] = None
    outcome: Outcome = Outcome.NONE
    selected: Optional[DisplayEntry] = None

    @classmethod
    def initial(cls, categories: Sequence[Category]) -> "SessionState":
        return cls(categories=list(categories), entries=[[] for _ in categories])

    @property
    def active_category(self) -> Category:
        return self.categories[self.category_index]

    @property
    def active_entries(self) -> List[DisplayEntry]:
        return self.entries[self.category_index]

    @property
    def quit(self) -> bool:
        return self.outcome is Outcome.QUIT

    @property
    def clone(self) -> bool:
        return self.outcome is Outcome.CLONE

    @property
    def finished(self) -> bool:
        return self.outcome is not Outcome.NONE

    def highlighted_entry(self) -> Optional[DisplayEntry]:
        rows = self.active_entries
        if 0 <= self.highlighted < len(rows):
            return rows[self.highlighted]
        return None


class SessionController:
    """Single-threaded transition function over a SessionState.

    ``handle`` consumes one event and returns True exactly when the event
    moved the session into a terminal state (the caller then ends the loop).
    """

    def __init__(
        self,
        categories: Sequence[Category],
        request_refresh: Callable[[int], None],
        schedule: Optional[Callable[[dt.datetime], None]] = None,
        open_browser: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], dt.datetime] = _utcnow,
        interval: int = DEFAULT_REFRESH_INTERVAL,
        view: Optional["ListView"] = None,
    ):
        if not categories:
            raise ValueError("at least one category is required")
        self.state = SessionState.initial(categories)
        self.interval = dt.timedelta(seconds=interval)
        self.status_line = ""
        self.view = view
        self._request_refresh = request_refresh
        self._schedule = schedule
        self._open_browser = open_browser or open_url
        self._clock = clock
        self._generation = 0
        self._applied_generation = 0

    def start(self) -> None:
        now = self._clock()
        self.state.next_refresh = now + self.interval
        self._trigger_refresh()
        self._arm()

    def handle(self, event: object) -> bool:
        if self.state.finished:
            log.debug("Ignoring %s after session ended", type(event).__name__)
            return False
        if isinstance(event, Tick):
            self._on_tick(event.now)
        elif isinstance(event, RefreshCompleted):
            self._on_refresh_completed(event)
        elif isinstance(event, NavigatePrev):
            self._switch_category(-1)
        elif isinstance(event, NavigateNext):
            self._switch_category(1)
        elif isinstance(event, CursorMove):
            self._move_cursor(event.delta)
        elif isinstance(event, ManualRefresh):
            self._refresh_now(self._clock())
        elif isinstance(event, Select):
            self._select()
        elif isinstance(event, RequestCheckout):
            return self._request_checkout()
        elif isinstance(event, Quit):
            self.state.outcome = Outcome.QUIT
            return True
        elif isinstance(event, Resize):
            if self.view is not None:
                self.view.resize(event.width, event.height)
        return False

    # transitions

    def _on_tick(self, now: dt.datetime) -> None:
        if self.state.next_refresh is None or now >= self.state.next_refresh:
            self._refresh_now(now)
            return
        self._arm()

    def _refresh_now(self, now: dt.datetime) -> None:
        self.state.next_refresh = now + self.interval
        self._trigger_refresh()
        self._arm()

    def _trigger_refresh(self) -> None:
        self._generation += 1
        self.status_line = "Refreshing…"
        log.debug("Requesting refresh #%d", self._generation)
        self._request_refresh(self._generation)

    def show_progress(self, generation: int, message: str) -> bool:
        """Put a refresh progress message on the status line.

        Returns False (and leaves the line alone) once the session ended or
        a newer refresh has already been applied.
        """
        if self.state.finished or generation < self._applied_generation:
            return False
        self.status_line = message
        return True

    def _arm(self) -> None:
        if self._schedule is not None and self.state.next_refresh is not None:
            self._schedule(self.state.next_refresh)

    def _on_refresh_completed(self, event: RefreshCompleted) -> None:
        if event.generation and event.generation < self._applied_generation:
            log.debug("Dropping stale refresh #%d (have #%d)", event.generation, self._applied_generation)
            return
        if len(event.entries) != len(self.state.categories):
            log.error("Refresh batch has %d lists for %d categories; ignored",
                      len(event.entries), len(self.state.categories))
            return
        self.state.entries = [list(rows) for rows in event.entries]
        self._applied_generation = max(self._applied_generation, event.generation)
        self.state.highlighted = 0
        if self.view is not None:
            self.view.reset()
        self.status_line = f"Updated {self._clock().astimezone().strftime('%H:%M:%S')}"

    def _switch_category(self, delta: int) -> None:
        count = len(self.state.categories)
        self.state.category_index = (self.state.category_index + delta) % count
        self.state.highlighted = 0
        if self.view is not None:
            self.view.reset()

    def _move_cursor(self, delta: int) -> None:
        rows = self.state.active_entries
        if not rows:
            self.state.highlighted = 0
            return
        self.state.highlighted = max(0, min(len(rows) - 1, self.state.highlighted + delta))

    def _select(self) -> None:
        entry = self.state.highlighted_entry()
        if entry is None:
            self.status_line = "Nothing to open"
            return
        self.state.selected = entry
        if self._open_browser(entry.url):
            self.status_line = f"Opened {entry.repo}#{entry.number}"
        else:
            self.status_line = f"Open manually: {entry.url}"

    def _request_checkout(self) -> bool:
        if self.state.highlighted_entry() is None:
            self.status_line = "Nothing to check out"
            return False
        self.state.outcome = Outcome.CLONE
        return True


class RefreshTimer:
    """One pending timer, armed for exactly the next-refresh instant."""

    def __init__(
        self,
        on_due: Callable[[Tick], None],
        clock: Callable[[], dt.datetime] = _utcnow,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_due = on_due
        self._clock = clock
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, at: dt.datetime) -> None:
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        delay = max(0.0, (at - self._clock()).total_seconds())
        self._handle = loop.call_later(delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._on_due(Tick(self._clock()))


# -----------------------------
# List view (rendering only)
# -----------------------------
BASE_THEME_STYLE: Dict[str, str] = {
    'tab': '#8a8a8a',
    'tab.selected': 'bold underline #ff5fd7 bg:#303030',
    'row.title': '#f0f0f0',
    'row.meta': '#8a8a8a',
    'row.marker': 'bold #ff5fd7',
    'row.selected.title': 'bold #ff5fd7',
    'row.selected.meta': '#bcbcbc',
    'empty': 'italic #8a8a8a',
    'status': '#d0d0d0',
    'status.message': '#ffd787',
    'status.help': '#5fd7af',
}

HELP_TEXT = "←/→ category  ↑/↓ move  enter open  c checkout  r refresh  q quit"
CHROME_ROWS = 4  # tab bar, spacer, status, help
ROWS_PER_ENTRY = 2


@dataclass(frozen=True)
class ViewStyle:
    rules: Tuple[Tuple[str, str], ...]
    empty_message: str = "Nothing to see here"

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, str]] = None) -> "ViewStyle":
        merged = dict(BASE_THEME_STYLE)
        for key, value in (overrides or {}).items():
            if isinstance(key, str) and isinstance(value, str):
                merged[key] = value
        return cls(rules=tuple(merged.items()))

    def to_style(self) -> Style:
        return Style.from_dict(dict(self.rules))


def _truncate(s: str, maxlen: int) -> str:
    if maxlen <= 0:
        return ""
    if get_cwidth(s) <= maxlen:
        return s
    out = []
    width = 0
    for ch in s:
        w = get_cwidth(ch)
        if width + w > maxlen - 1:
            break
        out.append(ch)
        width += w
    return "".join(out) + "…"


class ListView:
    """Renders the active category's rows and keeps the scroll offset."""

    def __init__(self, style: ViewStyle, width: int = 80, height: int = 24):
        self.style = style
        self.width = width
        self.height = height
        self.offset = 0

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def capacity(self) -> int:
        return max(1, (self.height - CHROME_ROWS) // ROWS_PER_ENTRY)

    def resize(self, width: int, height: int) -> None:
        self.width = max(1, width)
        self.height = max(1, height)

    def reset(self) -> None:
        self.offset = 0

    def _scroll_to(self, highlighted: int, total: int) -> None:
        cap = self.capacity
        if highlighted < self.offset:
            self.offset = highlighted
        elif highlighted >= self.offset + cap:
            self.offset = highlighted - cap + 1
        self.offset = max(0, min(self.offset, max(0, total - cap)))

    def tab_fragments(self, state: SessionState) -> List[Tuple[str, str]]:
        frags: List[Tuple[str, str]] = []
        for i, category in enumerate(state.categories):
            cls = 'class:tab.selected' if i == state.category_index else 'class:tab'
            if frags:
                frags.append(('', ' '))
            frags.append((cls, f" {category.label} ({len(state.entries[i])}) "))
        return frags

    def list_fragments(self, entries: Sequence[DisplayEntry], highlighted: int) -> List[Tuple[str, str]]:
        if not entries:
            return [('class:empty', f"  {self.style.empty_message}\n")]
        self._scroll_to(highlighted, len(entries))
        text_width = self.width - 2
        frags: List[Tuple[str, str]] = []
        for idx in range(self.offset, min(len(entries), self.offset + self.capacity)):
            e = entries[idx]
            selected = idx == highlighted
            marker = '▌ ' if selected else '  '
            title = _truncate(f"{e.repo} #{e.number}  {e.title}", text_width)
            meta = _truncate(
                f"age {e.age} · updated {e.updated_since} ago · @{e.author} · {e.comments} comments",
                text_width,
            )
            prefix = 'class:row.selected' if selected else 'class:row'
            frags.append(('class:row.marker', marker))
            frags.append((f'{prefix}.title', title + "\n"))
            frags.append(('class:row.marker', marker))
            frags.append((f'{prefix}.meta', meta + "\n"))
        return frags

    def status_fragments(self, controller: SessionController) -> List[Tuple[str, str]]:
        nxt = controller.state.next_refresh
        when = nxt.astimezone().strftime('%H:%M:%S') if nxt else "--:--:--"
        frags: List[Tuple[str, str]] = [('class:status', f" next refresh {when}")]
        if controller.status_line:
            frags.append(('class:status.message', "  " + controller.status_line))
        frags.append(('', "\n"))
        frags.append(('class:status.help', " " + HELP_TEXT))
        return frags


# -----------------------------
# Interactive UI
# -----------------------------
@dataclass
class SessionUI:
    app: Application
    controller: SessionController
    timer: RefreshTimer
    view: ListView
    key_bindings: KeyBindings


def _post(loop: asyncio.AbstractEventLoop, callback: Callable, *args) -> None:
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        log.debug("Event loop closed; dropping %s", getattr(callback, '__name__', callback))


def build_application(
    cfg: Config,
    search: SearchFn,
    style: Optional[ViewStyle] = None,
    clock: Callable[[], dt.datetime] = _utcnow,
    open_url_fn: Optional[Callable[[str], bool]] = None,
    input=None,
    output=None,
) -> SessionUI:
    """Wire controller, timer, list view and key bindings into one Application."""
    view = ListView(style or ViewStyle.from_overrides(cfg.theme))

    def dispatch(event: object) -> None:
        if controller.handle(event) and app.is_running:
            app.exit()
        app.invalidate()

    def set_status(generation: int, message: str) -> None:
        if controller.show_progress(generation, message):
            app.invalidate()

    def request_refresh(generation: int) -> None:
        loop = asyncio.get_running_loop()

        def progress(done: int, total: int, message: str) -> None:
            _post(loop, set_status, generation, f"Refreshing {done}/{total}… {message}")

        def work() -> None:
            try:
                batch = fetch_all_categories(cfg.categories, search, progress=progress, clock=clock)
            except Exception:
                log.exception("Refresh #%d failed", generation)
                return
            _post(loop, dispatch, RefreshCompleted(batch.entries, generation))

        threading.Thread(target=work, name=f"refresh-{generation}", daemon=True).start()

    timer = RefreshTimer(dispatch, clock=clock)
    controller = SessionController(
        cfg.categories,
        request_refresh=request_refresh,
        schedule=timer.arm,
        open_browser=open_url_fn or open_url,
        clock=clock,
        interval=cfg.refresh_interval,
        view=view,
    )

    kb = KeyBindings()

    @kb.add('left')
    @kb.add('h')
    def _(event):
        dispatch(NavigatePrev())

    @kb.add('right')
    @kb.add('l')
    def _(event):
        dispatch(NavigateNext())

    @kb.add('up')
    @kb.add('k')
    def _(event):
        dispatch(CursorMove(-1))

    @kb.add('down')
    @kb.add('j')
    def _(event):
        dispatch(CursorMove(1))

    @kb.add('pageup')
    def _(event):
        dispatch(CursorMove(-view.capacity))

    @kb.add('pagedown')
    def _(event):
        dispatch(CursorMove(view.capacity))

    @kb.add('g')
    @kb.add('home')
    def _(event):
        dispatch(CursorMove(-len(controller.state.active_entries)))

    @kb.add('G')
    @kb.add('end')
    def _(event):
        dispatch(CursorMove(len(controller.state.active_entries)))

    @kb.add('enter')
    def _(event):
        dispatch(Select())

    @kb.add('c')
    def _(event):
        dispatch(RequestCheckout())

    @kb.add('r')
    def _(event):
        dispatch(ManualRefresh())

    @kb.add('q')
    @kb.add('c-c')
    def _(event):
        dispatch(Quit())

    def before_render(application) -> None:
        size = application.output.get_size()
        if (size.columns, size.rows) != view.size:
            controller.handle(Resize(size.columns, size.rows))

    tabs_control = FormattedTextControl(text=lambda: view.tab_fragments(controller.state))
    list_control = FormattedTextControl(
        text=lambda: view.list_fragments(controller.state.active_entries, controller.state.highlighted)
    )
    status_control = FormattedTextControl(text=lambda: view.status_fragments(controller))
    container = HSplit([
        Window(content=tabs_control, height=1, always_hide_cursor=True),
        Window(height=1, char=' '),
        Window(content=list_control, wrap_lines=False, always_hide_cursor=True),
        Window(content=status_control, height=2, always_hide_cursor=True),
    ])

    app = Application(
        layout=Layout(container),
        key_bindings=kb,
        full_screen=True,
        style=view.style.to_style(),
        before_render=before_render,
        input=input,
        output=output,
    )
    return SessionUI(app=app, controller=controller, timer=timer, view=view, key_bindings=kb)


def run_ui(cfg: Config, search: SearchFn, **kwargs) -> SessionState:
    """Run the picker until quit/checkout; the terminal is released on return."""
    ui = build_application(cfg, search, **kwargs)
    try:
        ui.app.run(pre_run=ui.controller.start)
    finally:
        ui.timer.cancel()
    return ui.controller.state


# -----------------------------
# Actions
# -----------------------------
class ActionError(RuntimeError):
    """An external clone/checkout/open command failed."""


def open_url(url: str) -> bool:
    """Best-effort browser launch; False when no launcher is available."""
    try:
        return bool(webbrowser.open(url))
    except webbrowser.Error as exc:
        log.warning("Could not open %s: %s", url, exc)
        return False


def _run(cmd: List[str], cwd: Optional[str] = None) -> None:
    log.info("Running %s (cwd=%s)", " ".join(cmd), cwd or os.getcwd())
    try:
        subprocess.run(cmd, cwd=cwd, check=True)
    except FileNotFoundError as exc:
        raise ActionError(f"{cmd[0]} not found") from exc
    except subprocess.CalledProcessError as exc:
        raise ActionError(f"{' '.join(cmd)} failed with exit code {exc.returncode}") from exc


def exec_shell(directory: str) -> None:
    """Replace this process with the user's shell inside ``directory``."""
    try:
        os.chdir(directory)
    except OSError as exc:
        raise ActionError(f"chdir {directory}: {exc}") from exc
    shell = os.environ.get("SHELL") or "/bin/sh"
    sys.stdout.flush()
    sys.stderr.flush()
    for handler in log.handlers:
        handler.flush()
    if os.name == "posix":
        try:
            os.execvp(shell, [shell])
        except OSError as exc:
            raise ActionError(f"exec {shell}: {exc}") from exc
    else:
        # no exec here: run the shell as a child and mirror its status
        try:
            rc = subprocess.call([shell])
        except OSError as exc:
            raise ActionError(f"spawn {shell}: {exc}") from exc
        sys.exit(rc)


def clone_and_checkout(
    repo: str,
    number: int,
    base_dir: str,
    confirm: Callable[[str], str] = input,
    shell: bool = True,
) -> Optional[str]:
    """Clone ``repo`` under ``base_dir`` if needed, check out PR ``number``.

    Returns the checkout directory, or None when the user declined the clone.
    With ``shell`` the process is replaced by a shell in that directory.
    """
    directory = os.path.join(base_dir, *repo.split("/"))
    gh = shutil.which("gh")
    log.info("Cloning or checking out %s#%d in %s", repo, number, directory)

    if not os.path.isdir(directory):
        try:
            answer = confirm(f"Clone {repo} into {directory}? [Y/n]: ")
        except EOFError:
            answer = ""
        if answer.strip().lower() in ("n", "no"):
            print("Skipping clone.")
            return None
        try:
            os.makedirs(os.path.dirname(directory), exist_ok=True)
        except OSError as exc:
            raise ActionError(f"cannot create {os.path.dirname(directory)}: {exc}") from exc
        print(f"Cloning {repo} into {directory}")
        if gh:
            _run([gh, "repo", "clone", repo, directory])
        else:
            _run(["git", "clone", f"https://github.com/{repo}.git", directory])
    else:
        log.info("Found existing repository %s", directory)

    if gh:
        _run([gh, "pr", "checkout", str(number)], cwd=directory)
    else:
        branch = f"pr-{number}"
        _run(["git", "fetch", "origin", f"pull/{number}/head"], cwd=directory)
        _run(["git", "checkout", "-B", branch, "FETCH_HEAD"], cwd=directory)

    print(f"Checked out PR #{number} in {directory}")
    if shell:
        exec_shell(directory)
    return directory


def resolve_action(
    state: SessionState,
    base_dir: str,
    open_url: Callable[[str], bool] = open_url,
    checkout: Callable[[str, int, str], object] = clone_and_checkout,
) -> Optional[str]:
    """Turn the final session state into at most one external action.

    Returns the action taken ('clone' or 'open') or None.
    """
    if state.quit:
        return None
    entry = state.highlighted_entry()
    if entry is None:
        log.info("No pull request highlighted in %s; nothing to do", state.active_category.label)
        return None
    if state.clone:
        checkout(entry.repo, entry.number, base_dir)
        return "clone"
    if not open_url(entry.url):
        print(f"Please open this URL manually: {entry.url}")
    return "open"


# -----------------------------
# Logging
# -----------------------------
def setup_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> logging.Logger:
    """File logger for diagnostics; the terminal belongs to the UI."""
    if log_path is None:
        log_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'gh_pr_picker.log')
    logger = logging.getLogger(LOGGER_NAME)
    # Always reset handlers so CLI --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(threadName)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# CLI
# -----------------------------
def _print_summary(categories: Sequence[Category], batch: FetchBatch) -> None:
    for category, entries in zip(categories, batch.entries):
        print(f"{category.label}: {len(entries)}")
        for e in entries:
            print(f"  {e.repo}#{e.number}  {e.title}  (age {e.age}, updated {e.updated_since} ago)")
    for label, err in batch.errors.items():
        print(f"Error while fetching {label}: {err}", file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Pick one of your open GitHub pull requests")
    ap.add_argument("--config", help="Path to YAML config (categories, refresh_interval, base_dir, theme)")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", help="Log file path (default: gh_pr_picker.log next to this script)")
    ap.add_argument("--base-dir", help="Clone target root (overrides BASE_DIR and config)")
    ap.add_argument("--interval", type=int, help="Seconds between automatic refreshes")
    ap.add_argument("--no-ui", action="store_true", help="Fetch once, print a summary and exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config) if args.config else Config()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    if args.interval is not None:
        if args.interval <= 0:
            ap.error("--interval must be positive")
        cfg.refresh_interval = args.interval

    setup_logging(args.log_level, args.log_file)

    if os.environ.get("MOCK_FETCH") == "1":
        log.info("MOCK_FETCH enabled; generating mock pull requests")
        search = mock_search
    else:
        token = os.environ.get("GITHUB_TOKEN") or load_dotenv_token()
        if not token:
            print("GITHUB_TOKEN must be set", file=sys.stderr)
            return 1
        search = make_github_search(token, per_page=cfg.per_page, timeout=cfg.request_timeout)

    if args.no_ui:
        _print_summary(cfg.categories, fetch_all_categories(cfg.categories, search))
        return 0

    state = run_ui(cfg, search)
    base_dir = expand_home(args.base_dir) if args.base_dir else get_base_dir(cfg.base_dir)
    try:
        resolve_action(state, base_dir)
    except ActionError as exc:
        log.error("Action failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
