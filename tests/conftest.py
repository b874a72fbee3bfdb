"""Shared fakes for the dashboard tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import requests

from daeshboard import (
    Item,
    NotificationError,
    SourceError,
    Tab,
    make_dashboard_state,
)

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeSource:
    """Returns queued results in order; an Exception instance is raised instead."""

    def __init__(self, *results: Any) -> None:
        self.results = list(results)
        self.calls = 0

    def push(self, result: Any) -> None:
        self.results.append(result)

    def fetch(self):
        self.calls += 1
        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        yield from result


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.titles: list[str] = []

    def notify(self, tab_title: str) -> None:
        if self.fail:
            raise NotificationError("notification daemon unavailable")
        self.titles.append(tab_title)


class RecordingOpener:
    def __init__(self, error: str = "") -> None:
        self.error = error
        self.opened: list[Item] = []

    def __call__(self, item: Item) -> str:
        self.opened.append(item)
        return self.error


class FakeResponse:
    def __init__(
        self,
        payload: Any = None,
        status_code: int = 200,
        reason: str = "OK",
        headers: dict[str, str] | None = None,
        invalid_json: bool = False,
    ) -> None:
        self.payload = payload
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {}
        self.invalid_json = invalid_json

    def json(self) -> Any:
        if self.invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, headers: dict[str, str] | None = None, timeout: float | None = None):
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        response = self.responses.get(url)
        if response is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stop_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def state():
    return make_dashboard_state([Tab.PRS, Tab.ISSUES, Tab.ALERTS, Tab.WORKFLOWS])


@pytest.fixture
def source_error() -> SourceError:
    return SourceError("Got non-200 status code: 502 Bad Gateway")


def items(*values: str) -> list[Item]:
    return [Item(value=value, url=f"https://example.test/{value}") for value in values]
