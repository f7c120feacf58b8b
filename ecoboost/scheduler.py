from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from ecoboost.instance import is_elevated
from ecoboost.matcher import ProcessMatcher
from ecoboost.models import EnforcementEvent, EnforcementResult, ProcessRecord, ThrottleOutcome
from ecoboost.throttle import ERROR_TIMEOUT, ThrottlePolicyApplier, describe_error

if TYPE_CHECKING:
    from ecoboost.config import SettingsStore

LOGGER = logging.getLogger("ecoboost.scheduler")

Listener = Callable[[EnforcementEvent, EnforcementResult], None]


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"


def format_elapsed(elapsed: timedelta) -> str:
    minutes = elapsed.total_seconds() / 60
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{int(minutes)}m ago"
    hours = minutes / 60
    if hours < 24:
        return f"{int(hours)}h ago"
    return f"{int(hours / 24)}d ago"


def format_status_message(
    enabled: bool,
    last_run: datetime | None,
    process_count: int,
    now: datetime,
) -> str:
    if not enabled:
        return "Paused"
    if last_run is None:
        return "Running"
    return f"Running ({process_count} processes throttled {format_elapsed(now - last_run)})"


class EnforcementScheduler:
    def __init__(
        self,
        store: SettingsStore,
        matcher: ProcessMatcher | None = None,
        applier: ThrottlePolicyApplier | None = None,
        max_workers: int = 4,
        apply_timeout_seconds: float = 10.0,
        on_start: Callable[[], object] | None = None,
        elevation_check: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher or ProcessMatcher()
        self._applier = applier or ThrottlePolicyApplier()
        self._max_workers = max(int(max_workers), 1)
        self._apply_timeout_seconds = apply_timeout_seconds
        self._on_start = on_start
        self._elevation_check = elevation_check or is_elevated
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state_lock = threading.Lock()
        self._run_state = RunState.IDLE
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

        self._listeners_lock = threading.Lock()
        self._listeners: list[Listener] = []

    @property
    def started(self) -> bool:
        with self._state_lock:
            return self._thread is not None

    @property
    def run_state(self) -> RunState:
        with self._state_lock:
            return self._run_state

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._timer_loop,
                args=(stop_event,),
                name="ecoboost-scheduler",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread

        LOGGER.info("Enforcement service started")
        thread.start()

    def stop(self) -> None:
        with self._state_lock:
            stop_event = self._stop_event
            self._stop_event = None
            self._thread = None

        if stop_event is None:
            return

        stop_event.set()
        LOGGER.info("Enforcement service stopped")

    def status_message(self) -> str:
        settings = self._store.snapshot()
        return format_status_message(
            enabled=settings.enforcement_enabled,
            last_run=settings.last_enforcement_run,
            process_count=settings.last_run_process_count,
            now=self._clock(),
        )

    def run_once(self) -> EnforcementResult | None:
        if not self._try_begin_run():
            LOGGER.info("Enforcement run already in progress, skipping trigger")
            return None

        result = EnforcementResult(started_at=self._clock())
        try:
            self._execute(result)
        except Exception:
            LOGGER.exception("Enforcement run failed")
        finally:
            with self._state_lock:
                self._run_state = RunState.IDLE

        self._emit(result)
        return result

    def _try_begin_run(self) -> bool:
        with self._state_lock:
            if self._run_state is RunState.RUNNING:
                return False
            self._run_state = RunState.RUNNING
            return True

    def _timer_loop(self, stop_event: threading.Event) -> None:
        self._prepare_start()

        while not stop_event.is_set():
            # Another process may pause enforcement through the shared settings file.
            if self._store.snapshot().enforcement_enabled:
                self.run_once()
            else:
                LOGGER.info("Enforcement is paused, skipping scheduled run")
            interval = self._store.snapshot().interval_seconds
            if stop_event.wait(interval):
                break

    def _prepare_start(self) -> None:
        if self._on_start:
            try:
                self._on_start()
            except Exception:
                LOGGER.exception("Start-up housekeeping failed")

        if self._store.snapshot().elevated_mode_enabled and not self._elevation_check():
            LOGGER.warning("Elevated mode is enabled but not running as administrator; elevated processes will be skipped")

    def _execute(self, result: EnforcementResult) -> None:
        LOGGER.info("========== Enforcement Run Started ==========")
        settings = self._store.snapshot()

        keywords = settings.keywords
        if not keywords:
            LOGGER.info("No keywords configured. Skipping.")
            LOGGER.info("========== Enforcement Run Complete ==========")
            return

        LOGGER.info("Loaded %s keywords: %s", len(keywords), ", ".join(keywords))

        matches = self._matcher.find_matches(keywords)
        result.matched_count = len(matches)

        if matches:
            LOGGER.info("Found %s matching processes", len(matches))
        else:
            LOGGER.info("No matching processes found.")

        for outcome in self._apply_all(matches):
            result.outcomes.append(outcome)
            if outcome.is_success(settings.success_policy):
                result.success_count += 1
                if outcome.name not in result.process_names:
                    result.process_names.append(outcome.name)
                LOGGER.info("Applied: %s (PID: %s)", outcome.name, outcome.pid)
            else:
                result.fail_count += 1
                LOGGER.warning("Failed: %s (PID: %s) - %s", outcome.name, outcome.pid, outcome.error_message)

        LOGGER.info("Results: %s applied, %s failed", result.success_count, result.fail_count)
        if result.total_failure:
            LOGGER.warning("None of the %s matching processes could be throttled", result.matched_count)

        self._store.update_last_run(result.success_count)
        LOGGER.info("========== Enforcement Run Complete ==========")

    def _apply_all(self, matches: list[ProcessRecord]) -> list[ThrottleOutcome]:
        if self._max_workers == 1 or len(matches) <= 1:
            return [self._apply_one(record) for record in matches]

        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(matches)),
            thread_name_prefix="ecoboost-apply",
        )
        try:
            futures = [(record, executor.submit(self._applier.apply, record.pid, record.name)) for record in matches]
            outcomes: list[ThrottleOutcome] = []
            for record, future in futures:
                try:
                    outcomes.append(future.result(timeout=self._apply_timeout_seconds))
                except FutureTimeout:
                    LOGGER.warning("Throttle timed out pid=%s name=%s", record.pid, record.name)
                    outcomes.append(_failed_outcome(record, ERROR_TIMEOUT, describe_error(ERROR_TIMEOUT)))
                except Exception as exc:
                    LOGGER.exception("Unexpected throttle error pid=%s name=%s", record.pid, record.name)
                    outcomes.append(_failed_outcome(record, 0, str(exc)))
            return outcomes
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _apply_one(self, record: ProcessRecord) -> ThrottleOutcome:
        try:
            return self._applier.apply(record.pid, record.name)
        except Exception as exc:
            LOGGER.exception("Unexpected throttle error pid=%s name=%s", record.pid, record.name)
            return _failed_outcome(record, 0, str(exc))

    def _emit(self, result: EnforcementResult) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)

        event = result.event
        for listener in listeners:
            try:
                listener(event, result)
            except Exception:
                LOGGER.exception("Enforcement listener failed")


def _failed_outcome(record: ProcessRecord, code: int, message: str) -> ThrottleOutcome:
    return ThrottleOutcome(
        pid=record.pid,
        name=record.name,
        priority_succeeded=False,
        power_qos_succeeded=False,
        error_code=code,
        error_message=message,
    )
