from __future__ import annotations

from ecoboost.models import EnforcementEvent, EnforcementResult
from ecoboost.notifications import APPLIED_TITLE, FAILED_TITLE, build_notification, summarize_names


def test_summary_lists_three_names_and_remainder() -> None:
    names = ["chrome", "teams", "slack", "chrome", "zoom", "discord"]

    assert summarize_names(names) == "chrome, teams, slack +2 more"


def test_success_notification() -> None:
    result = EnforcementResult(matched_count=3, success_count=3, process_names=["chrome", "teams"])

    assert build_notification(result.event, result) == (APPLIED_TITLE, "Throttled 3 processes: chrome, teams")


def test_total_failure_gets_distinct_notification() -> None:
    result = EnforcementResult(matched_count=2, success_count=0, fail_count=2)

    title, message = build_notification(result.event, result)

    assert result.event is EnforcementEvent.FAILED
    assert title == FAILED_TITLE
    assert "2 matching processes" in message


def test_quiet_run_has_no_notification() -> None:
    result = EnforcementResult()

    assert result.event is EnforcementEvent.COMPLETED
    assert build_notification(result.event, result) is None
