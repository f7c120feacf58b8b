from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

SuccessPolicy = Literal["priority", "either"]

DEFAULT_INTERVAL_MINUTES = 60
DEFAULT_LOG_RETENTION_DAYS = 7


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    name: str
    window_title: str | None = None


@dataclass(frozen=True)
class ProcessGroup:
    name: str
    display_info: str
    processes: list[ProcessRecord]

    @property
    def total_count(self) -> int:
        return len(self.processes)


@dataclass(frozen=True)
class ThrottleOutcome:
    pid: int
    name: str
    priority_succeeded: bool
    power_qos_succeeded: bool
    error_code: int = 0
    error_message: str | None = None
    power_qos_error_code: int = 0

    @property
    def succeeded(self) -> bool:
        # Power-QoS is best-effort; only the priority change is visible to tools.
        return self.priority_succeeded

    def is_success(self, policy: SuccessPolicy = "priority") -> bool:
        if policy == "either":
            return self.priority_succeeded or self.power_qos_succeeded
        return self.priority_succeeded


class EnforcementEvent(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EnforcementResult:
    matched_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    process_names: list[str] = field(default_factory=list)
    outcomes: list[ThrottleOutcome] = field(default_factory=list)
    started_at: datetime | None = None

    @property
    def total_failure(self) -> bool:
        return self.matched_count > 0 and self.success_count == 0

    @property
    def event(self) -> EnforcementEvent:
        return EnforcementEvent.FAILED if self.total_failure else EnforcementEvent.COMPLETED


@dataclass
class AppSettings:
    keywords: list[str] = field(default_factory=list)
    start_with_windows: bool = False
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    last_enforcement_run: datetime | None = None
    last_run_process_count: int = 0
    enforcement_enabled: bool = True
    elevated_mode_enabled: bool = False
    success_policy: SuccessPolicy = "priority"

    @property
    def interval_seconds(self) -> int:
        return self.interval_minutes * 60
