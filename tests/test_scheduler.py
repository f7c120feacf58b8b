from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from ecoboost.config import SettingsStore
from ecoboost.models import AppSettings, EnforcementEvent, ProcessRecord, ThrottleOutcome
from ecoboost.scheduler import EnforcementScheduler, RunState, format_status_message
from ecoboost.throttle import ERROR_ACCESS_DENIED, ERROR_TIMEOUT

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class _MemoryBackend:
    def __init__(self, settings: AppSettings) -> None:
        self._settings = settings
        self.saved: list[AppSettings] = []

    def load(self) -> AppSettings:
        return self._settings

    def save(self, settings: AppSettings) -> None:
        self.saved.append(replace(settings, keywords=list(settings.keywords)))

    def revision(self) -> None:
        return None


class _FakeMatcher:
    def __init__(self, records: list[ProcessRecord]) -> None:
        self.records = records
        self.calls: list[list[str]] = []

    def find_matches(self, keywords: list[str]) -> list[ProcessRecord]:
        self.calls.append(list(keywords))
        return list(self.records)


class _FakeApplier:
    def __init__(self, failing: dict[int, int] | None = None, qos_failing: set[int] | None = None) -> None:
        self.failing = failing or {}
        self.qos_failing = qos_failing or set()
        self.applied: list[int] = []
        self._lock = threading.Lock()

    def apply(self, pid: int, name: str = "") -> ThrottleOutcome:
        with self._lock:
            self.applied.append(pid)
        code = self.failing.get(pid, 0)
        return ThrottleOutcome(
            pid=pid,
            name=name,
            priority_succeeded=code == 0,
            power_qos_succeeded=pid not in self.qos_failing,
            error_code=code,
            error_message="Access denied (process may require elevation)" if code else None,
        )


class _BlockingApplier(_FakeApplier):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def apply(self, pid: int, name: str = "") -> ThrottleOutcome:
        self.entered.set()
        self.release.wait(5)
        return super().apply(pid, name)


def _records(*names: str) -> list[ProcessRecord]:
    return [ProcessRecord(pid=index + 100, name=name) for index, name in enumerate(names)]


def _make_scheduler(
    keywords: list[str],
    matcher: _FakeMatcher,
    applier: _FakeApplier,
    **kwargs,
) -> tuple[EnforcementScheduler, _MemoryBackend, SettingsStore]:
    backend = _MemoryBackend(AppSettings(keywords=keywords, success_policy=kwargs.pop("policy", "priority")))
    store = SettingsStore(backend, clock=lambda: NOW)
    scheduler = EnforcementScheduler(
        store,
        matcher=matcher,
        applier=applier,
        elevation_check=lambda: True,
        clock=lambda: NOW,
        **kwargs,
    )
    return scheduler, backend, store


def test_run_with_no_keywords_is_a_zero_result() -> None:
    matcher = _FakeMatcher(_records("chrome"))
    scheduler, backend, _ = _make_scheduler([], matcher, _FakeApplier())

    result = scheduler.run_once()

    assert result is not None
    assert (result.matched_count, result.success_count, result.fail_count) == (0, 0, 0)
    assert matcher.calls == []
    assert backend.saved == []


def test_run_aggregates_outcomes_and_updates_last_run() -> None:
    matcher = _FakeMatcher(_records("chrome", "chrome", "teams", "svchost"))
    applier = _FakeApplier(failing={103: ERROR_ACCESS_DENIED})
    scheduler, backend, store = _make_scheduler(["chrome", "teams", "svc"], matcher, applier, max_workers=1)

    result = scheduler.run_once()

    assert result.matched_count == 4
    assert result.success_count == 3
    assert result.fail_count == 1
    assert result.process_names == ["chrome", "teams"]
    assert result.event is EnforcementEvent.COMPLETED
    assert len(backend.saved) == 1
    assert store.snapshot().last_run_process_count == 3
    assert store.snapshot().last_enforcement_run == NOW


def test_parallel_apply_gives_same_counts() -> None:
    matcher = _FakeMatcher(_records("a", "b", "c", "d", "e", "f"))
    applier = _FakeApplier(failing={101: ERROR_ACCESS_DENIED, 104: ERROR_ACCESS_DENIED})
    scheduler, _, _ = _make_scheduler(["x"], matcher, applier, max_workers=4)

    result = scheduler.run_once()

    assert sorted(applier.applied) == [100, 101, 102, 103, 104, 105]
    assert (result.success_count, result.fail_count) == (4, 2)
    assert [outcome.pid for outcome in result.outcomes] == [100, 101, 102, 103, 104, 105]


def test_total_failure_emits_failed_event() -> None:
    matcher = _FakeMatcher(_records("antimalware", "antimalware"))
    applier = _FakeApplier(failing={100: ERROR_ACCESS_DENIED, 101: ERROR_ACCESS_DENIED})
    scheduler, _, _ = _make_scheduler(["antimalware"], matcher, applier)
    events: list[EnforcementEvent] = []
    scheduler.subscribe(lambda event, _result: events.append(event))

    result = scheduler.run_once()

    assert result.total_failure is True
    assert events == [EnforcementEvent.FAILED]


def test_either_policy_counts_power_qos_only_success() -> None:
    matcher = _FakeMatcher(_records("updater"))
    applier = _FakeApplier(failing={100: ERROR_ACCESS_DENIED})
    scheduler, _, _ = _make_scheduler(["updater"], matcher, applier, policy="either")

    result = scheduler.run_once()

    assert result.success_count == 1
    assert result.outcomes[0].succeeded is False


def test_overlapping_run_is_dropped() -> None:
    matcher = _FakeMatcher(_records("chrome"))
    applier = _BlockingApplier()
    scheduler, backend, _ = _make_scheduler(["chrome"], matcher, applier, max_workers=1)
    results = []

    worker = threading.Thread(target=lambda: results.append(scheduler.run_once()))
    worker.start()
    assert applier.entered.wait(5)

    assert scheduler.run_state is RunState.RUNNING
    second = scheduler.run_once()
    applier.release.set()
    worker.join(5)

    assert second is None
    assert len(matcher.calls) == 1
    assert len(backend.saved) == 1
    assert results[0].success_count == 1
    assert scheduler.run_state is RunState.IDLE


def test_unexpected_error_is_contained_and_scheduler_recovers() -> None:
    class _ExplodingMatcher(_FakeMatcher):
        def find_matches(self, keywords: list[str]) -> list[ProcessRecord]:
            raise RuntimeError("enumeration failed")

    scheduler, _, _ = _make_scheduler(["chrome"], _ExplodingMatcher([]), _FakeApplier())

    result = scheduler.run_once()

    assert result is not None
    assert result.matched_count == 0
    assert scheduler.run_state is RunState.IDLE
    assert scheduler.run_once() is not None


def test_stalled_process_is_reported_as_timeout() -> None:
    release = threading.Event()

    class _StallingApplier(_FakeApplier):
        def apply(self, pid: int, name: str = "") -> ThrottleOutcome:
            if pid == 100:
                release.wait(5)
            return super().apply(pid, name)

    matcher = _FakeMatcher(_records("stuck", "fine"))
    scheduler, _, _ = _make_scheduler(["x"], matcher, _StallingApplier(), max_workers=2, apply_timeout_seconds=0.05)

    try:
        result = scheduler.run_once()
    finally:
        release.set()

    assert result.fail_count == 1
    assert result.outcomes[0].error_code == ERROR_TIMEOUT
    assert result.outcomes[1].succeeded is True


def test_listener_errors_do_not_break_run() -> None:
    scheduler, _, _ = _make_scheduler(["chrome"], _FakeMatcher(_records("chrome")), _FakeApplier())
    received = []

    def _broken(_event, _result) -> None:
        raise ValueError("listener bug")

    scheduler.subscribe(_broken)
    scheduler.subscribe(lambda event, result: received.append(result.success_count))

    scheduler.run_once()

    assert received == [1]


def test_start_runs_immediately_and_is_idempotent() -> None:
    matcher = _FakeMatcher(_records("chrome"))
    housekeeping: list[str] = []
    scheduler, _, _ = _make_scheduler(
        ["chrome"],
        matcher,
        _FakeApplier(),
        on_start=lambda: housekeeping.append("cleaned"),
    )
    finished = threading.Event()
    scheduler.subscribe(lambda _event, _result: finished.set())

    scheduler.start()
    scheduler.start()
    try:
        assert finished.wait(5)
        assert scheduler.started is True
    finally:
        scheduler.stop()

    assert scheduler.started is False
    assert len(matcher.calls) == 1
    assert housekeeping == ["cleaned"]


def test_restart_after_stop_runs_again() -> None:
    matcher = _FakeMatcher(_records("chrome"))
    scheduler, _, _ = _make_scheduler(["chrome"], matcher, _FakeApplier())
    runs = threading.Semaphore(0)
    scheduler.subscribe(lambda _event, _result: runs.release())

    scheduler.start()
    assert runs.acquire(timeout=5)
    scheduler.stop()
    scheduler.start()
    try:
        assert runs.acquire(timeout=5)
    finally:
        scheduler.stop()

    assert len(matcher.calls) == 2


def test_status_message_reads_store() -> None:
    scheduler, _, store = _make_scheduler(["chrome"], _FakeMatcher(_records("chrome")), _FakeApplier())

    assert scheduler.status_message() == "Running"
    scheduler.run_once()
    assert scheduler.status_message() == "Running (1 processes throttled just now)"
    store.set_enforcement_enabled(False)
    assert scheduler.status_message() == "Paused"


@pytest.mark.parametrize(
    ("enabled", "ago", "count", "expected"),
    [
        (False, timedelta(minutes=5), 3, "Paused"),
        (True, None, 0, "Running"),
        (True, timedelta(seconds=45), 3, "Running (3 processes throttled just now)"),
        (True, timedelta(minutes=12), 4, "Running (4 processes throttled 12m ago)"),
        (True, timedelta(minutes=125), 7, "Running (7 processes throttled 2h ago)"),
        (True, timedelta(days=3, hours=2), 1, "Running (1 processes throttled 3d ago)"),
    ],
)
def test_format_status_message(enabled: bool, ago: timedelta | None, count: int, expected: str) -> None:
    last_run = NOW - ago if ago is not None else None

    assert format_status_message(enabled, last_run, count, NOW) == expected


def test_timer_skips_runs_while_paused(caplog) -> None:
    matcher = _FakeMatcher(_records("chrome"))
    scheduler, _, store = _make_scheduler(["chrome"], matcher, _FakeApplier())
    store.set_enforcement_enabled(False)
    caplog.set_level(logging.INFO, logger="ecoboost.scheduler")

    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while "skipping scheduled run" not in caplog.text and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop()

    assert "skipping scheduled run" in caplog.text
    assert matcher.calls == []
