from __future__ import annotations

from ecoboost.models import EnforcementEvent, EnforcementResult

APPLIED_TITLE = "Efficiency Mode Applied"
FAILED_TITLE = "Efficiency Mode Failed"
MAX_LISTED_NAMES = 3


def summarize_names(names: list[str], limit: int = MAX_LISTED_NAMES) -> str:
    distinct = list(dict.fromkeys(names))
    text = ", ".join(distinct[:limit])
    remaining = len(distinct) - limit
    if remaining > 0:
        text += f" +{remaining} more"
    return text


def build_notification(event: EnforcementEvent, result: EnforcementResult) -> tuple[str, str] | None:
    """Return ``(title, message)`` for a finished run, or None when nothing is worth showing."""
    if event is EnforcementEvent.FAILED:
        return (
            FAILED_TITLE,
            f"Could not throttle any of {result.matched_count} matching processes. "
            "Some may require running as administrator.",
        )

    if result.success_count > 0:
        return (
            APPLIED_TITLE,
            f"Throttled {result.success_count} processes: {summarize_names(result.process_names)}",
        )

    return None
