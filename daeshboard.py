from __future__ import annotations

import argparse
import json
import logging
import os
import queue
import re
import select
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlencode
import termios
import tty
import webbrowser

import requests
from dateutil import parser as date_parser
from dotenv import load_dotenv
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

logger = logging.getLogger(__name__)

PROGRAM_NAME = "Daeshboard"
GITHUB_API_URL = "https://api.github.com"
DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_INTERVAL_SECONDS = 10
DEFAULT_MAX_FAILURES = 5
DEFAULT_MAX_BACKOFF_SECONDS = 300
DEFAULT_REQUEST_TIMEOUT = 20
DEFAULT_FPS = 10
EVENT_LOG_MAX = 12
WORKFLOW_RUNS_PER_PAGE = 20

# Zero value for every timestamp: "never fetched", "never viewed", "never notified".
NEVER = datetime.min.replace(tzinfo=timezone.utc)

UNREAD_MARKER = "●"
STYLE_SELECTED = "bold black on rgb(91,206,250)"
STYLE_HELP = "black on rgb(245,169,184)"

NEXT_PAGE_RE = re.compile(r'<([\S]+)>; rel="next"')


class DashboardError(Exception):
    pass


class ConfigError(DashboardError, ValueError):
    pass


class SourceError(DashboardError):
    pass


class FetchCancelled(DashboardError):
    pass


class NotificationError(DashboardError):
    pass


class Tab(Enum):
    PRS = "PRs"
    ISSUES = "Issues"
    ALERTS = "Alerts"
    WORKFLOWS = "Workflows"

    @property
    def title(self) -> str:
        return self.value


class Action(Enum):
    MOVE_TAB_LEFT = "move-tab-left"
    MOVE_TAB_RIGHT = "move-tab-right"
    MOVE_ITEM_UP = "move-item-up"
    MOVE_ITEM_DOWN = "move-item-down"
    JUMP_TO_TAB = "jump-to-tab"
    ACTIVATE = "activate"
    QUIT = "quit"


@dataclass(frozen=True)
class Item:
    value: str
    url: str = ""
    application: str = ""

    @property
    def has_target(self) -> bool:
        return bool(self.application or self.url)


@dataclass(frozen=True)
class TabSnapshot:
    items: tuple[Item, ...] = ()
    modified_at: datetime = NEVER


EMPTY_SNAPSHOT = TabSnapshot()


@dataclass
class TabDisplayState:
    selected_item: int = 0
    last_viewed_at: datetime = NEVER


@dataclass
class FetchHealth:
    consecutive_failures: int = 0
    last_error: str = ""
    next_attempt_at: datetime = NEVER
    last_success_at: datetime = NEVER


@dataclass(frozen=True)
class Repo:
    owner: str
    name: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class AlertsConfig:
    server: str = ""
    receiver: str = ""


@dataclass
class AppConfig:
    repos: list[Repo]
    alerts: AlertsConfig
    github_token: str
    interval_seconds: float
    max_failures: int
    max_backoff_seconds: float
    request_timeout: float
    fps: int
    notify: bool
    fail_fast: bool
    log_file: str
    once: bool


@dataclass
class PollSettings:
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    max_failures: int = DEFAULT_MAX_FAILURES
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS


class Source(Protocol):
    def fetch(self) -> Iterator[Item]: ...


class Notifier(Protocol):
    def notify(self, tab_title: str) -> None: ...


ItemOpener = Callable[[Item], str]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = date_parser.parse(str(raw))
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sort_newest_first(records: list[dict[str, Any]], date_key: str) -> list[dict[str, Any]]:
    return sorted(records, key=lambda record: parse_date(record.get(date_key)) or NEVER, reverse=True)


def clamp_selection(index: int, count: int) -> int:
    if count <= 0:
        return 0
    if index < 0:
        return 0
    if index >= count:
        return count - 1
    return index


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 1:
        return value[:width]
    return f"{value[: width - 1]}…"


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------


class SnapshotStore:
    """Latest item list per tab, replaced wholesale by the poller.

    Snapshots are immutable, so a reader holding one never sees items and
    ``modified_at`` from two different writes.
    """

    def __init__(self, tab_ids: Sequence[Tab]) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[Tab, TabSnapshot] = {tab: EMPTY_SNAPSHOT for tab in tab_ids}

    def get(self, tab: Tab) -> TabSnapshot:
        with self._lock:
            return self._snapshots.get(tab, EMPTY_SNAPSHOT)

    def put(self, tab: Tab, items: Sequence[Item], now: datetime) -> TabSnapshot:
        snapshot = TabSnapshot(items=tuple(items), modified_at=now)
        with self._lock:
            self._snapshots[tab] = snapshot
        return snapshot


# ---------------------------------------------------------------------------
# Notification policy
# ---------------------------------------------------------------------------


class NotificationPolicy:
    def __init__(self, tab_ids: Sequence[Tab]) -> None:
        self.watermarks: dict[Tab, datetime] = {tab: NEVER for tab in tab_ids}

    def due(self, store: SnapshotStore) -> list[Tab]:
        """Advance watermarks and return the tabs that need one notification each.

        The first change away from the zero timestamp only sets the watermark,
        so the initial population after startup is silent.
        """
        due: list[Tab] = []
        for tab, sent_at in self.watermarks.items():
            modified_at = store.get(tab).modified_at
            if sent_at == NEVER:
                self.watermarks[tab] = modified_at
            elif sent_at < modified_at:
                self.watermarks[tab] = modified_at
                due.append(tab)
        return due


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


KEY_ACTIONS: dict[str, Action] = {
    "LEFT": Action.MOVE_TAB_LEFT,
    "a": Action.MOVE_TAB_LEFT,
    "h": Action.MOVE_TAB_LEFT,
    "RIGHT": Action.MOVE_TAB_RIGHT,
    "d": Action.MOVE_TAB_RIGHT,
    "l": Action.MOVE_TAB_RIGHT,
    "UP": Action.MOVE_ITEM_UP,
    "w": Action.MOVE_ITEM_UP,
    "k": Action.MOVE_ITEM_UP,
    "DOWN": Action.MOVE_ITEM_DOWN,
    "s": Action.MOVE_ITEM_DOWN,
    "j": Action.MOVE_ITEM_DOWN,
    "ENTER": Action.ACTIVATE,
    " ": Action.ACTIVATE,
    "q": Action.QUIT,
    "QUIT": Action.QUIT,
}


def key_to_action(key: str) -> tuple[Action, int] | None:
    if not key:
        return None
    if len(key) == 1 and key in "123456789":
        return Action.JUMP_TO_TAB, int(key) - 1
    action = KEY_ACTIONS.get(key if len(key) > 1 else key.lower())
    if action is None:
        return None
    return action, 0


class Navigation:
    def __init__(self, tab_ids: Sequence[Tab]) -> None:
        if not tab_ids:
            raise ConfigError("At least one tab is required")
        self.tab_ids: tuple[Tab, ...] = tuple(tab_ids)
        self.selected_tab: Tab = self.tab_ids[0]
        self.displays: dict[Tab, TabDisplayState] = {tab: TabDisplayState() for tab in self.tab_ids}
        self.close_requested = False
        self.last_open_error = ""

    def selected_item(self, tab: Tab | None = None) -> int:
        return self.displays[tab or self.selected_tab].selected_item

    def is_unread(self, tab: Tab, store: SnapshotStore) -> bool:
        return self.displays[tab].last_viewed_at < store.get(tab).modified_at

    def any_unread(self, store: SnapshotStore) -> bool:
        return any(self.is_unread(tab, store) for tab in self.tab_ids)

    def clamp_cursors(self, store: SnapshotStore) -> None:
        for tab, display in self.displays.items():
            display.selected_item = clamp_selection(display.selected_item, len(store.get(tab).items))

    def handle(
        self,
        action: Action,
        argument: int,
        store: SnapshotStore,
        now: datetime,
        opener: ItemOpener,
    ) -> bool:
        """Apply one input transition; return False when the input was ignored.

        A recognized input stamps ``last_viewed_at`` on whichever tab is
        selected after the transition has been applied.
        """
        tab_index = self.tab_ids.index(self.selected_tab)
        display = self.displays[self.selected_tab]
        item_count = len(store.get(self.selected_tab).items)

        if action is Action.MOVE_TAB_LEFT:
            self.selected_tab = self.tab_ids[max(0, tab_index - 1)]
        elif action is Action.MOVE_TAB_RIGHT:
            self.selected_tab = self.tab_ids[min(len(self.tab_ids) - 1, tab_index + 1)]
        elif action is Action.MOVE_ITEM_UP:
            display.selected_item = clamp_selection(display.selected_item - 1, item_count)
        elif action is Action.MOVE_ITEM_DOWN:
            display.selected_item = clamp_selection(display.selected_item + 1, item_count)
        elif action is Action.JUMP_TO_TAB:
            if not 0 <= argument < len(self.tab_ids):
                return False
            self.selected_tab = self.tab_ids[argument]
        elif action is Action.ACTIVATE:
            if not self.activate(store, opener):
                return False
        elif action is Action.QUIT:
            self.close_requested = True

        self.displays[self.selected_tab].last_viewed_at = now
        return True

    def activate(self, store: SnapshotStore, opener: ItemOpener) -> bool:
        items = store.get(self.selected_tab).items
        if not items:
            return False
        item = items[clamp_selection(self.selected_item(), len(items))]
        if not item.has_target:
            return False
        self.last_open_error = opener(item)
        return True


# ---------------------------------------------------------------------------
# Shared dashboard state
# ---------------------------------------------------------------------------


@dataclass
class DashboardState:
    """Everything the poller and the render loop share.

    ``store`` has its own lock. ``lock`` guards ``health``, ``event_log``,
    ``fatal_error`` and the polling flags. ``navigation`` and
    ``notifications`` belong to the render loop.
    """

    tab_ids: tuple[Tab, ...]
    store: SnapshotStore
    navigation: Navigation
    notifications: NotificationPolicy
    health: dict[Tab, FetchHealth]
    event_log: list[str] = field(default_factory=list)
    fatal_error: str = ""
    is_polling: bool = False
    last_cycle_at: datetime = NEVER
    lock: threading.Lock = field(default_factory=threading.Lock)


def make_dashboard_state(tab_ids: Sequence[Tab]) -> DashboardState:
    unique = tuple(dict.fromkeys(tab_ids))
    return DashboardState(
        tab_ids=unique,
        store=SnapshotStore(unique),
        navigation=Navigation(unique),
        notifications=NotificationPolicy(unique),
        health={tab: FetchHealth() for tab in unique},
    )


def append_event(state: DashboardState, message: str, max_entries: int = EVENT_LOG_MAX) -> None:
    timestamp = now_utc().strftime("%H:%M:%S")
    with state.lock:
        state.event_log.append(f"[{timestamp}] {message}")
        if len(state.event_log) > max_entries:
            state.event_log = state.event_log[-max_entries:]


def set_fatal(state: DashboardState, message: str, stop_event: threading.Event) -> None:
    logger.error(message)
    with state.lock:
        if not state.fatal_error:
            state.fatal_error = message
    stop_event.set()


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


def backoff_seconds(failures: int, interval_seconds: float, max_backoff_seconds: float) -> float:
    return min(interval_seconds * 2 ** max(failures - 1, 0), max_backoff_seconds)


def record_failure(
    state: DashboardState,
    tab: Tab,
    error: Exception,
    settings: PollSettings,
    stop_event: threading.Event,
    now: datetime,
) -> None:
    with state.lock:
        health = state.health[tab]
        health.consecutive_failures += 1
        health.last_error = str(error)
        delay = backoff_seconds(
            health.consecutive_failures,
            settings.interval_seconds,
            settings.max_backoff_seconds,
        )
        health.next_attempt_at = now + timedelta(seconds=delay)
        failures = health.consecutive_failures

    logger.warning("Failed to get items for tab %s (%d in a row): %s", tab.title, failures, error)
    append_event(state, f"{tab.title}: fetch failed ({failures}x), retry in {delay:.0f}s")
    if failures >= settings.max_failures:
        set_fatal(state, f"Failed to get items for tab {tab.title}: {error}", stop_event)


def poll_once(
    state: DashboardState,
    sources: dict[Tab, Source],
    settings: PollSettings,
    stop_event: threading.Event,
    clock: Callable[[], datetime] = now_utc,
) -> list[Tab]:
    """Run one fetch cycle over every tab and return the tabs that changed."""
    changed: list[Tab] = []
    with state.lock:
        state.is_polling = True
    try:
        for tab in state.tab_ids:
            if stop_event.is_set():
                break
            with state.lock:
                next_attempt_at = state.health[tab].next_attempt_at
            if next_attempt_at > clock():
                continue

            try:
                items = tuple(sources[tab].fetch())
            except FetchCancelled:
                break
            except SourceError as exc:
                if stop_event.is_set():
                    break
                record_failure(state, tab, exc, settings, stop_event, clock())
                continue

            now = clock()
            with state.lock:
                health = state.health[tab]
                if health.consecutive_failures:
                    logger.info("Tab %s recovered after %d failures", tab.title, health.consecutive_failures)
                state.health[tab] = FetchHealth(last_success_at=now)

            current = state.store.get(tab)
            if current.modified_at == NEVER or current.items != items:
                state.store.put(tab, items, now)
                changed.append(tab)
                logger.info("Updated items for tab %s", tab.title)
                append_event(state, f"Updated items for tab {tab.title}")
    finally:
        with state.lock:
            state.is_polling = False
            state.last_cycle_at = clock()
    return changed


def poll_worker(
    state: DashboardState,
    sources: dict[Tab, Source],
    settings: PollSettings,
    stop_event: threading.Event,
) -> None:
    try:
        while not stop_event.is_set():
            poll_once(state, sources, settings, stop_event)
            stop_event.wait(settings.interval_seconds)
    except Exception as exc:
        logger.exception("Poller crashed")
        set_fatal(state, f"Poller crashed: {exc}", stop_event)


# ---------------------------------------------------------------------------
# Source adapters
# ---------------------------------------------------------------------------


def get_next_page(link_header: str) -> str:
    match = NEXT_PAGE_RE.search(link_header or "")
    if not match:
        return ""
    return match.group(1)


def get_json(
    session: requests.Session,
    url: str,
    timeout: float,
    headers: dict[str, str] | None = None,
) -> tuple[Any, requests.Response]:
    try:
        response = session.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise SourceError(f"Failed to make request: {exc}") from exc
    if response.status_code != 200:
        raise SourceError(f"Got non-200 status code: {response.status_code} {response.reason}")
    try:
        return response.json(), response
    except ValueError as exc:
        raise SourceError(f"Could not parse response: {exc}") from exc


class GitHubClient:
    def __init__(
        self,
        session: requests.Session,
        token: str = "",
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        stop_event: threading.Event | None = None,
        base_url: str = GITHUB_API_URL,
    ) -> None:
        self.session = session
        self.token = token
        self.timeout = timeout
        self.stop_event = stop_event
        self.base_url = base_url.rstrip("/")

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def iter_records(self, path: str, records_key: str = "", max_pages: int = 0) -> Iterator[dict[str, Any]]:
        """Yield records from every page of a listing, following ``Link`` headers."""
        url = f"{self.base_url}{path}"
        pages = 0
        while url:
            if self.stop_event is not None and self.stop_event.is_set():
                raise FetchCancelled(f"Cancelled while listing {path}")
            payload, response = get_json(self.session, url, self.timeout, self.headers())
            records = payload.get(records_key) if records_key and isinstance(payload, dict) else payload
            if not isinstance(records, list):
                raise SourceError(f"Unexpected payload for {path}: expected a list")
            for record in records:
                if not isinstance(record, dict):
                    raise SourceError(f"Unexpected record in {path}: {record!r}")
                yield record
            pages += 1
            if max_pages and pages >= max_pages:
                break
            url = get_next_page(response.headers.get("Link", ""))


class GitHubSource:
    path_template = ""
    records_key = ""
    max_pages = 0

    def __init__(self, client: GitHubClient, repos: Sequence[Repo]) -> None:
        self.client = client
        self.repos = list(repos)

    def records(self, repo: Repo) -> list[dict[str, Any]]:
        path = self.path_template.format(owner=repo.owner, name=repo.name)
        return sort_newest_first(
            list(self.client.iter_records(path, self.records_key, self.max_pages)),
            "created_at",
        )

    def make_item(self, repo: Repo, record: dict[str, Any]) -> Item:
        return Item(value=f"{repo}: {record.get('title') or ''}", url=str(record.get("html_url") or ""))

    def include(self, record: dict[str, Any]) -> bool:
        return True

    def fetch(self) -> Iterator[Item]:
        for repo in self.repos:
            for record in self.records(repo):
                if self.include(record):
                    yield self.make_item(repo, record)


class PullRequestSource(GitHubSource):
    path_template = "/repos/{owner}/{name}/pulls"


class IssueSource(GitHubSource):
    path_template = "/repos/{owner}/{name}/issues"

    def include(self, record: dict[str, Any]) -> bool:
        # The issues endpoint also returns pull requests.
        return "pull_request" not in record


class WorkflowRunSource(GitHubSource):
    path_template = "/repos/{owner}/{name}/actions/runs?per_page=" + str(WORKFLOW_RUNS_PER_PAGE)
    records_key = "workflow_runs"
    max_pages = 1

    def make_item(self, repo: Repo, record: dict[str, Any]) -> Item:
        outcome = record.get("conclusion") or record.get("status") or "unknown"
        return Item(value=f"[{outcome}] {repo}: {record.get('name') or ''}", url=str(record.get("html_url") or ""))


class AlertSource:
    def __init__(
        self,
        session: requests.Session,
        alerts: AlertsConfig,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.server = alerts.server.rstrip("/")
        self.receiver = alerts.receiver
        self.timeout = timeout

    def query(self) -> str:
        return urlencode({"receiver": self.receiver, "silenced": "false", "inhibited": "false"})

    def fetch(self) -> Iterator[Item]:
        query = self.query()
        payload, _ = get_json(self.session, f"{self.server}/api/v2/alerts?{query}", self.timeout)
        if not isinstance(payload, list):
            raise SourceError("Could not parse alerts response: expected a list")
        for alert in payload:
            if not isinstance(alert, dict) or not isinstance(alert.get("annotations") or {}, dict):
                raise SourceError(f"Could not parse alerts response: unexpected alert {alert!r}")
        for alert in sort_newest_first(payload, "startsAt"):
            annotations = alert.get("annotations") or {}
            yield Item(
                value=str(annotations.get("description", "")),
                url=f"{self.server}/#/alerts?{query}",
            )


def configured_tabs(config: AppConfig) -> list[Tab]:
    tabs: list[Tab] = []
    for tab in Tab:
        if tab is Tab.ALERTS:
            if config.alerts.server:
                tabs.append(tab)
        elif config.repos:
            tabs.append(tab)
    return tabs


def build_sources(
    config: AppConfig,
    session: requests.Session,
    stop_event: threading.Event,
) -> dict[Tab, Source]:
    client = GitHubClient(
        session,
        token=config.github_token,
        timeout=config.request_timeout,
        stop_event=stop_event,
    )
    available: dict[Tab, Callable[[], Source]] = {
        Tab.PRS: lambda: PullRequestSource(client, config.repos),
        Tab.ISSUES: lambda: IssueSource(client, config.repos),
        Tab.ALERTS: lambda: AlertSource(session, config.alerts, config.request_timeout),
        Tab.WORKFLOWS: lambda: WorkflowRunSource(client, config.repos),
    }
    return {tab: available[tab]() for tab in configured_tabs(config)}


# ---------------------------------------------------------------------------
# Side effects: notifications, opening items, terminal title
# ---------------------------------------------------------------------------


class DesktopNotifier:
    def __init__(self, program_name: str = PROGRAM_NAME) -> None:
        self.program_name = program_name

    def command(self, message: str) -> list[str]:
        if sys.platform == "darwin":
            script = f"display notification {json.dumps(message)} with title {json.dumps(self.program_name)}"
            return ["osascript", "-e", script]
        if shutil.which("notify-send"):
            return ["notify-send", self.program_name, message]
        return []

    def notify(self, tab_title: str) -> None:
        message = f"New activity in {tab_title}"
        command = self.command(message)
        if not command:
            write_terminal_notification(self.program_name, message)
            return
        if shutil.which(command[0]) is None:
            raise NotificationError(f"{command[0]} not found")
        # Fire and forget; notify() runs on the render thread.
        try:
            subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise NotificationError(f"Could not run {command[0]}: {exc}") from exc


class SilentNotifier:
    def notify(self, tab_title: str) -> None:
        logger.debug("Notification suppressed for %s", tab_title)


def write_terminal_notification(title: str, body: str) -> None:
    out = sys.__stdout__
    if out is None:
        raise NotificationError("No terminal available for notifications")
    try:
        out.write(f"\033]9;{title}: {body}\a")
        out.write("\a")
        out.flush()
    except OSError as exc:
        raise NotificationError(f"Terminal notification failed: {exc}") from exc


def set_terminal_title(title: str) -> None:
    out = sys.__stdout__
    if out is None or not out.isatty():
        return
    try:
        out.write(f"\033]2;{title}\a")
        out.flush()
    except OSError:
        logger.debug("Terminal title write failed", exc_info=True)


def open_link(url: str) -> str:
    clean_url = url.strip()
    if not clean_url:
        return "No URL available for selected item."
    try:
        if sys.platform == "darwin":
            subprocess.Popen(["open", clean_url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        else:
            webbrowser.open(clean_url, new=2)
        return ""
    except (OSError, webbrowser.Error) as exc:
        return f"Failed to open link: {exc}"


def open_item(item: Item) -> str:
    if item.application:
        if sys.platform == "darwin":
            command = ["open", "-a", item.application]
        else:
            command = [item.application]
        try:
            subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            return f"Failed to launch {item.application}: {exc}"
        return ""
    if item.url:
        return open_link(item.url)
    return ""


def notify_if_needed(
    state: DashboardState,
    notifier: Notifier,
    fail_fast: bool = False,
) -> list[Tab]:
    notified: list[Tab] = []
    for tab in state.notifications.due(state.store):
        try:
            notifier.notify(tab.title)
        except NotificationError as exc:
            logger.warning("Failed to create notification for %s: %s", tab.title, exc)
            append_event(state, f"Failed to create notification for {tab.title}: {exc}")
            if fail_fast:
                raise
            continue
        notified.append(tab)
        append_event(state, f"Notified: {tab.title}")
    return notified


def step_frame(
    state: DashboardState,
    key: str,
    notifier: Notifier,
    opener: ItemOpener = open_item,
    now: datetime | None = None,
    fail_fast: bool = False,
) -> bool:
    """One render-loop evaluation: re-clamp cursors, react to input, notify."""
    navigation = state.navigation
    navigation.clamp_cursors(state.store)

    handled = False
    mapped = key_to_action(key)
    if mapped is not None:
        action, argument = mapped
        handled = navigation.handle(action, argument, state.store, now or now_utc(), opener)
        if navigation.last_open_error:
            logger.warning(navigation.last_open_error)
            append_event(state, navigation.last_open_error)
            navigation.last_open_error = ""

    notify_if_needed(state, notifier, fail_fast=fail_fast)
    return handled


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@dataclass
class TabView:
    tab: Tab
    snapshot: TabSnapshot
    selected_item: int
    unread: bool


@dataclass
class DashboardView:
    tabs: list[TabView]
    selected_tab: Tab
    health: dict[Tab, FetchHealth]
    event_log: list[str]
    is_polling: bool
    last_cycle_at: datetime

    @property
    def any_unread(self) -> bool:
        return any(tab_view.unread for tab_view in self.tabs)

    @property
    def selected(self) -> TabView:
        return next(tab_view for tab_view in self.tabs if tab_view.tab is self.selected_tab)


def capture_view(state: DashboardState) -> DashboardView:
    navigation = state.navigation
    tabs = [
        TabView(
            tab=tab,
            snapshot=state.store.get(tab),
            selected_item=navigation.selected_item(tab),
            unread=navigation.is_unread(tab, state.store),
        )
        for tab in state.tab_ids
    ]
    with state.lock:
        health = {
            tab: FetchHealth(
                consecutive_failures=entry.consecutive_failures,
                last_error=entry.last_error,
                next_attempt_at=entry.next_attempt_at,
                last_success_at=entry.last_success_at,
            )
            for tab, entry in state.health.items()
        }
        event_log = list(state.event_log)
        is_polling = state.is_polling
        last_cycle_at = state.last_cycle_at
    return DashboardView(
        tabs=tabs,
        selected_tab=navigation.selected_tab,
        health=health,
        event_log=event_log,
        is_polling=is_polling,
        last_cycle_at=last_cycle_at,
    )


def window_title(any_unread: bool) -> str:
    if any_unread:
        return f"{UNREAD_MARKER} {PROGRAM_NAME}"
    return PROGRAM_NAME


def tab_header_text(tab: Tab, item_count: int, unread: bool) -> str:
    notice = "*" if unread else ""
    return f"{notice}{tab.title} [{item_count}]"


def help_text(tab_count: int) -> str:
    return f"<hjkl, wasd, arrows, 1..{tab_count}> MOVE    <enter, space> OPEN    <q> QUIT"


def visible_window(selected_index: int, item_count: int, max_rows: int) -> tuple[int, int]:
    max_rows = max(1, max_rows)
    if item_count <= max_rows:
        return 0, item_count
    start = min(max(0, selected_index - max_rows + 1), item_count - max_rows)
    return start, start + max_rows


def render_tab_headers(view: DashboardView) -> Table:
    grid = Table.grid(expand=True)
    for _ in view.tabs:
        grid.add_column(justify="center", ratio=1)
    cells = []
    for tab_view in view.tabs:
        text = tab_header_text(tab_view.tab, len(tab_view.snapshot.items), tab_view.unread)
        style = STYLE_SELECTED if tab_view.tab is view.selected_tab else "bold"
        cells.append(Text(text, style=style))
    grid.add_row(*cells)
    return grid


def render_item_table(tab_view: TabView, max_rows: int, width: int) -> Table:
    table = Table(show_header=False, expand=True, box=None, padding=(0, 1))
    table.add_column("Sel", width=1)
    table.add_column("#", justify="right", style="dim", width=4)
    table.add_column("Item", no_wrap=True, overflow="ellipsis")

    items = tab_view.snapshot.items
    selected_index = clamp_selection(tab_view.selected_item, len(items))
    start, end = visible_window(selected_index, len(items), max_rows)
    for idx in range(start, end):
        is_selected = idx == selected_index
        table.add_row(
            ">" if is_selected else "",
            str(idx + 1),
            truncate(items[idx].value, max(20, width - 12)),
            style=STYLE_SELECTED if is_selected else "",
        )

    if not items:
        message = "Waiting for first fetch..." if tab_view.snapshot.modified_at == NEVER else "Nothing here."
        table.add_row("", "-", Text(message, style="dim"))
    return table


def render_status_line(view: DashboardView) -> Text:
    if view.is_polling:
        parts = ["Polling..."]
    elif view.last_cycle_at == NEVER:
        parts = ["Starting..."]
    else:
        parts = [f"Last poll {view.last_cycle_at.strftime('%H:%M:%S UTC')}"]
    for tab, health in view.health.items():
        if health.consecutive_failures:
            parts.append(f"{tab.title}: {health.consecutive_failures} failed")
    style = "yellow" if len(parts) > 1 else "cyan"
    return Text(" | ".join(parts), style=style)


def build_dashboard(view: DashboardView, terminal_width: int, terminal_height: int) -> Panel:
    event_lines = view.event_log[-3:]
    max_rows = max(1, terminal_height - 9 - len(event_lines))
    body = Group(
        render_tab_headers(view),
        Text("─" * max(10, terminal_width - 4), style="grey58"),
        render_item_table(view.selected, max_rows, terminal_width),
        Text(""),
        Text("\n".join(event_lines), style="dim") if event_lines else Text(""),
        Text(help_text(len(view.tabs)), style=STYLE_HELP, justify="center"),
    )
    return Panel(
        body,
        title=window_title(view.any_unread),
        border_style="bright_blue",
        subtitle=render_status_line(view),
        subtitle_align="left",
        height=max(8, terminal_height - 1),
    )


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


ESCAPE_KEYS = {
    "[A": "UP",
    "[B": "DOWN",
    "[C": "RIGHT",
    "[D": "LEFT",
}


def latest_key(key_queue: queue.Queue[str]) -> str:
    key = ""
    while True:
        try:
            key = key_queue.get_nowait()
        except queue.Empty:
            return key


def _line_input_worker(key_queue: queue.Queue[str], stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        try:
            line = sys.stdin.readline()
        except (OSError, ValueError):
            if stop_event.wait(0.2):
                break
            continue
        if line == "":
            if stop_event.wait(0.2):
                break
            continue
        stripped = line.strip()
        key_queue.put(stripped if stripped else "ENTER")


def key_input_worker(key_queue: queue.Queue[str], stop_event: threading.Event) -> None:
    if not sys.stdin.isatty():
        _line_input_worker(key_queue, stop_event)
        return

    try:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
    except (OSError, termios.error, ValueError):
        _line_input_worker(key_queue, stop_event)
        return

    try:
        tty.setcbreak(fd)
        while not stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(fd, 1)
            if not data:
                continue
            key = data.decode("utf-8", errors="ignore")
            if not key:
                continue
            if key in {"\r", "\n"}:
                key_queue.put("ENTER")
                continue
            if key == "\x03":
                key_queue.put("QUIT")
                continue
            if key == "\x1b":
                sequence = ""
                while select.select([fd], [], [], 0.001)[0]:
                    sequence += os.read(fd, 1).decode("utf-8", errors="ignore")
                    if not sequence:
                        continue
                    if sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= 6:
                        break
                key_queue.put(ESCAPE_KEYS.get(sequence, "ESC"))
                continue
            key_queue.put(key)
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        except termios.error:
            logger.debug("Could not restore terminal settings", exc_info=True)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def parse_repo(raw: Any) -> Repo:
    pieces = str(raw).split("/")
    if len(pieces) != 2 or not all(piece.strip() for piece in pieces):
        raise ConfigError(f"Incorrect repo format, should be `owner/name`, got {raw}")
    return Repo(owner=pieces[0].strip(), name=pieces[1].strip())


def load_config_file(path: str | Path) -> tuple[list[Repo], AlertsConfig]:
    try:
        contents = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not open file: {exc}") from exc
    try:
        raw = json.loads(contents)
    except ValueError as exc:
        raise ConfigError(f"Could not parse config: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Could not parse config: expected a JSON object")

    raw_repos = raw.get("repos") or []
    if not isinstance(raw_repos, list):
        raise ConfigError("`repos` must be a list of `owner/name` strings")
    raw_alerts = raw.get("alerts") or {}
    if not isinstance(raw_alerts, dict):
        raise ConfigError("`alerts` must be an object with `server` and `receiver`")

    repos = [parse_repo(repo) for repo in raw_repos]
    alerts = AlertsConfig(
        server=str(raw_alerts.get("server") or ""),
        receiver=str(raw_alerts.get("receiver") or ""),
    )
    return repos, alerts


def parse_args(argv: list[str]) -> AppConfig:
    parser = argparse.ArgumentParser(
        description="Terminal dashboard for pull requests, issues, alerts and workflow runs."
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--interval-seconds", type=float, default=DEFAULT_INTERVAL_SECONDS)
    parser.add_argument(
        "--max-failures",
        type=int,
        default=DEFAULT_MAX_FAILURES,
        help="Consecutive fetch failures for one tab before giving up.",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Exit on the first fetch or notification failure.",
    )
    parser.add_argument("--max-backoff-seconds", type=float, default=DEFAULT_MAX_BACKOFF_SECONDS)
    parser.add_argument("--request-timeout", type=float, default=DEFAULT_REQUEST_TIMEOUT)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument("--no-notify", action="store_true")
    parser.add_argument("--log-file", default=os.getenv("DAESHBOARD_LOG_FILE", ""))
    parser.add_argument("--once", action="store_true")

    args = parser.parse_args(argv)

    if args.interval_seconds <= 0:
        raise ConfigError("--interval-seconds must be > 0")
    if args.max_failures < 1:
        raise ConfigError("--max-failures must be >= 1")
    if args.max_backoff_seconds < args.interval_seconds:
        raise ConfigError("--max-backoff-seconds must be >= --interval-seconds")
    if args.request_timeout <= 0:
        raise ConfigError("--request-timeout must be > 0")
    if not 1 <= args.fps <= 60:
        raise ConfigError("--fps must be between 1 and 60")

    repos, alerts = load_config_file(args.config)
    config = AppConfig(
        repos=repos,
        alerts=alerts,
        github_token=os.getenv("GH_TOKEN", ""),
        interval_seconds=args.interval_seconds,
        max_failures=1 if args.fail_fast else args.max_failures,
        max_backoff_seconds=args.max_backoff_seconds,
        request_timeout=args.request_timeout,
        fps=args.fps,
        notify=not args.no_notify,
        fail_fast=args.fail_fast,
        log_file=args.log_file,
        once=args.once,
    )
    if not configured_tabs(config):
        raise ConfigError("Nothing to show: configure `repos` and/or `alerts.server`")
    return config


def configure_logging(log_file: str, once: bool) -> None:
    handlers: list[logging.Handler] = []
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handlers.append(file_handler)
    if once:
        handlers.append(RichHandler(console=Console(stderr=True), show_path=False))
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=handlers, force=True)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


def poll_settings(config: AppConfig) -> PollSettings:
    return PollSettings(
        interval_seconds=config.interval_seconds,
        max_failures=config.max_failures,
        max_backoff_seconds=config.max_backoff_seconds,
    )


def run(config: AppConfig, console: Console) -> int:
    state = make_dashboard_state(configured_tabs(config))
    stop_event = threading.Event()
    session = requests.Session()
    sources = build_sources(config, session, stop_event)
    settings = poll_settings(config)
    notifier: Notifier = DesktopNotifier() if config.notify else SilentNotifier()

    if config.once:
        try:
            poll_once(state, sources, settings, stop_event)
        finally:
            session.close()
        console.print(build_dashboard(capture_view(state), console.size.width, console.size.height))
        if state.fatal_error:
            console.print(f"[red]{state.fatal_error}[/red]")
            return 1
        return 0

    key_queue: queue.Queue[str] = queue.Queue()
    worker = threading.Thread(
        target=poll_worker,
        args=(state, sources, settings, stop_event),
        daemon=True,
    )
    worker.start()
    key_worker = threading.Thread(
        target=key_input_worker,
        args=(key_queue, stop_event),
        daemon=True,
    )
    key_worker.start()

    frame_seconds = 1.0 / config.fps
    current_title = ""
    with Live(
        build_dashboard(capture_view(state), console.size.width, console.size.height),
        console=console,
        refresh_per_second=config.fps,
        screen=True,
        vertical_overflow="crop",
    ) as live:
        try:
            while not state.navigation.close_requested and not stop_event.is_set():
                try:
                    step_frame(
                        state,
                        latest_key(key_queue),
                        notifier,
                        fail_fast=config.fail_fast,
                    )
                except NotificationError as exc:
                    set_fatal(state, f"Failed to create notification: {exc}", stop_event)
                    break

                view = capture_view(state)
                title = window_title(view.any_unread)
                if title != current_title:
                    set_terminal_title(title)
                    current_title = title
                live.update(build_dashboard(view, console.size.width, console.size.height))
                time.sleep(frame_seconds)
        finally:
            stop_event.set()
            session.close()
            worker.join(timeout=2)
            key_worker.join(timeout=2)
            set_terminal_title("")

    if state.fatal_error:
        console.print(f"[red]{state.fatal_error}[/red]")
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    configure_logging(config.log_file, config.once)
    try:
        return run(config, console)
    except KeyboardInterrupt:
        console.print("\n[bold]Stopped.[/bold]")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
