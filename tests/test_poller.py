"""Tests for the polling cycle and the snapshot store."""

from __future__ import annotations

import threading
from datetime import timedelta

from conftest import FakeSource, items

from daeshboard import (
    EMPTY_SNAPSHOT,
    NEVER,
    FetchCancelled,
    Item,
    PollSettings,
    SnapshotStore,
    SourceError,
    Tab,
    TabSnapshot,
    backoff_seconds,
    make_dashboard_state,
    poll_once,
    poll_worker,
)


def only_alerts():
    return make_dashboard_state([Tab.ALERTS])


class TestSnapshotStore:
    def test_unknown_tab_returns_empty_snapshot(self):
        store = SnapshotStore([Tab.PRS])
        assert store.get(Tab.ALERTS) is EMPTY_SNAPSHOT

    def test_initial_snapshot_is_zero(self):
        store = SnapshotStore([Tab.PRS])
        snapshot = store.get(Tab.PRS)
        assert snapshot.items == ()
        assert snapshot.modified_at == NEVER

    def test_put_replaces_whole_snapshot(self, clock):
        store = SnapshotStore([Tab.PRS])
        before = store.get(Tab.PRS)
        store.put(Tab.PRS, items("a", "b"), clock())
        after = store.get(Tab.PRS)
        assert after is not before
        assert after == TabSnapshot(items=tuple(items("a", "b")), modified_at=clock())
        assert before.items == ()

    def test_put_copies_input_sequence(self, clock):
        store = SnapshotStore([Tab.PRS])
        values = items("a")
        store.put(Tab.PRS, values, clock())
        values.append(Item("b"))
        assert len(store.get(Tab.PRS).items) == 1


class TestPollOnce:
    def test_first_fetch_commits_even_when_empty(self, clock, stop_event):
        state = only_alerts()
        changed = poll_once(state, {Tab.ALERTS: FakeSource([])}, PollSettings(), stop_event, clock)
        assert changed == [Tab.ALERTS]
        assert state.store.get(Tab.ALERTS).modified_at == clock()

    def test_unchanged_items_keep_timestamp(self, clock, stop_event):
        state = only_alerts()
        source = FakeSource(items("a", "b"), items("a", "b"))
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        first = state.store.get(Tab.ALERTS)

        clock.advance(10)
        changed = poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)

        assert changed == []
        assert state.store.get(Tab.ALERTS) is first

    def test_reordered_items_count_as_change(self, clock, stop_event):
        state = only_alerts()
        source = FakeSource(items("a", "b"), items("b", "a"))
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        clock.advance(10)
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)

        snapshot = state.store.get(Tab.ALERTS)
        assert [item.value for item in snapshot.items] == ["b", "a"]
        assert snapshot.modified_at == clock()

    def test_field_difference_counts_as_change(self, clock, stop_event):
        state = only_alerts()
        source = FakeSource([Item("a", url="u1")], [Item("a", url="u2")])
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        clock.advance(10)
        assert poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock) == [Tab.ALERTS]

    def test_every_tab_fetched_in_order(self, state, clock, stop_event):
        order: list[Tab] = []

        class Recording:
            def __init__(self, tab):
                self.tab = tab

            def fetch(self):
                order.append(self.tab)
                return iter(())

        sources = {tab: Recording(tab) for tab in state.tab_ids}
        poll_once(state, sources, PollSettings(), stop_event, clock)
        assert order == [Tab.PRS, Tab.ISSUES, Tab.ALERTS, Tab.WORKFLOWS]

    def test_modified_at_changes_only_on_difference(self, clock, stop_event):
        state = only_alerts()
        results = [["a"], ["a"], ["a", "b"], ["a", "b"], [], [], ["c"]]
        source = FakeSource(*[items(*values) for values in results])
        timestamps = []
        for _ in results:
            poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
            timestamps.append(state.store.get(Tab.ALERTS).modified_at)
            clock.advance(10)

        changes = [i for i in range(1, len(timestamps)) if timestamps[i] != timestamps[i - 1]]
        assert changes == [2, 4, 6]


class TestFailures:
    def test_failure_keeps_previous_snapshot(self, clock, stop_event, source_error):
        state = only_alerts()
        source = FakeSource(items("a"), source_error)
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        before = state.store.get(Tab.ALERTS)

        clock.advance(10)
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)

        assert state.store.get(Tab.ALERTS) is before
        health = state.health[Tab.ALERTS]
        assert health.consecutive_failures == 1
        assert "502" in health.last_error
        assert not stop_event.is_set()

    def test_failure_does_not_abort_other_tabs(self, clock, stop_event, source_error):
        state = make_dashboard_state([Tab.PRS, Tab.ISSUES])
        sources = {Tab.PRS: FakeSource(source_error), Tab.ISSUES: FakeSource(items("x"))}
        changed = poll_once(state, sources, PollSettings(), stop_event, clock)
        assert changed == [Tab.ISSUES]

    def test_backoff_skips_tab_until_next_attempt(self, clock, stop_event, source_error):
        state = only_alerts()
        source = FakeSource(source_error, source_error, items("a"))
        settings = PollSettings(interval_seconds=10, max_failures=5, max_backoff_seconds=300)

        poll_once(state, {Tab.ALERTS: source}, settings, stop_event, clock)
        assert source.calls == 1

        clock.advance(5)
        poll_once(state, {Tab.ALERTS: source}, settings, stop_event, clock)
        assert source.calls == 1

        clock.advance(5)
        poll_once(state, {Tab.ALERTS: source}, settings, stop_event, clock)
        assert source.calls == 2
        assert state.health[Tab.ALERTS].next_attempt_at == clock() + timedelta(seconds=20)

    def test_success_resets_health(self, clock, stop_event, source_error):
        state = only_alerts()
        source = FakeSource(source_error, items("a"))
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        clock.advance(60)
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)

        health = state.health[Tab.ALERTS]
        assert health.consecutive_failures == 0
        assert health.last_error == ""
        assert health.last_success_at == clock()

    def test_escalates_after_max_failures(self, clock, stop_event, source_error):
        state = only_alerts()
        source = FakeSource(source_error, source_error)
        settings = PollSettings(interval_seconds=1, max_failures=2, max_backoff_seconds=1)

        poll_once(state, {Tab.ALERTS: source}, settings, stop_event, clock)
        assert state.fatal_error == ""
        clock.advance(5)
        poll_once(state, {Tab.ALERTS: source}, settings, stop_event, clock)

        assert stop_event.is_set()
        assert state.fatal_error.startswith("Failed to get items for tab Alerts")

    def test_fail_fast_escalates_on_first_failure(self, clock, stop_event, source_error):
        state = only_alerts()
        settings = PollSettings(max_failures=1)
        poll_once(state, {Tab.ALERTS: FakeSource(source_error)}, settings, stop_event, clock)
        assert stop_event.is_set()
        assert state.fatal_error

    def test_failure_is_logged_to_event_log(self, clock, stop_event, source_error):
        state = only_alerts()
        poll_once(state, {Tab.ALERTS: FakeSource(source_error)}, PollSettings(), stop_event, clock)
        assert any("Alerts: fetch failed" in line for line in state.event_log)

    def test_backoff_is_capped(self):
        assert backoff_seconds(1, 10, 300) == 10
        assert backoff_seconds(2, 10, 300) == 20
        assert backoff_seconds(3, 10, 300) == 40
        assert backoff_seconds(10, 10, 300) == 300


class TestCancellation:
    def test_stop_event_skips_remaining_tabs(self, clock, stop_event):
        state = make_dashboard_state([Tab.PRS, Tab.ISSUES])
        first = FakeSource(items("a"))
        second = FakeSource(items("b"))

        class Stopping:
            def fetch(self):
                stop_event.set()
                yield from first.fetch()

        poll_once(state, {Tab.PRS: Stopping(), Tab.ISSUES: second}, PollSettings(), stop_event, clock)
        assert second.calls == 0

    def test_cancelled_fetch_is_not_a_failure(self, clock, stop_event):
        state = only_alerts()
        source = FakeSource(FetchCancelled("shutting down"))
        poll_once(state, {Tab.ALERTS: source}, PollSettings(), stop_event, clock)
        assert state.health[Tab.ALERTS].consecutive_failures == 0
        assert state.store.get(Tab.ALERTS).modified_at == NEVER

    def test_error_during_shutdown_is_not_recorded(self, clock, stop_event):
        state = only_alerts()

        class Closing:
            def fetch(self):
                stop_event.set()
                raise SourceError("connection pool is closed")
                yield

        poll_once(state, {Tab.ALERTS: Closing()}, PollSettings(), stop_event, clock)
        assert state.health[Tab.ALERTS].consecutive_failures == 0

    def test_polling_flag_cleared_after_cycle(self, clock, stop_event):
        state = only_alerts()
        poll_once(state, {Tab.ALERTS: FakeSource(items("a"))}, PollSettings(), stop_event, clock)
        assert state.is_polling is False
        assert state.last_cycle_at == clock()


class TestPollWorker:
    def test_worker_stops_when_event_set(self):
        state = only_alerts()
        stop_event = threading.Event()

        class StopAfterFetch:
            calls = 0

            def fetch(self):
                self.calls += 1
                stop_event.set()
                return iter(items("a"))

        source = StopAfterFetch()
        worker = threading.Thread(
            target=poll_worker,
            args=(state, {Tab.ALERTS: source}, PollSettings(interval_seconds=0.01), stop_event),
        )
        worker.start()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert source.calls == 1

    def test_unexpected_error_becomes_fatal(self):
        state = only_alerts()
        stop_event = threading.Event()

        class Broken:
            def fetch(self):
                raise KeyError("title")

        poll_worker(state, {Tab.ALERTS: Broken()}, PollSettings(interval_seconds=0.01), stop_event)

        assert stop_event.is_set()
        assert state.fatal_error.startswith("Poller crashed")
