from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

import psutil

from ecoboost.models import ProcessGroup, ProcessRecord
from ecoboost.utils import contains_ignore_case, normalize_keyword, process_base_name
from ecoboost.windows import get_window_titles

LOGGER = logging.getLogger("ecoboost.matcher")

BACKGROUND_PLACEHOLDER = "(Background process)"
MAX_DISPLAY_LENGTH = 60

ProcessSource = Callable[[], Iterable[Any]]
TitleLookup = Callable[[], dict[int, str]]


def _iter_processes() -> Iterable[psutil.Process]:
    return psutil.process_iter(["pid", "name"])


class ProcessMatcher:
    def __init__(
        self,
        process_source: ProcessSource | None = None,
        title_lookup: TitleLookup | None = None,
    ) -> None:
        self._process_source = process_source or _iter_processes
        self._title_lookup = title_lookup or get_window_titles

    def find_matches(self, keywords: Iterable[str]) -> list[ProcessRecord]:
        keyword_list = [kw for kw in (normalize_keyword(raw) for raw in keywords) if kw]
        if not keyword_list:
            return []

        titles = self._load_titles()
        hits: dict[str, int] = {kw: 0 for kw in keyword_list}
        matches: dict[int, ProcessRecord] = {}

        for proc in self._process_source():
            try:
                pid, name = self._read_identity(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if pid is None or not name:
                continue

            matched = [kw for kw in keyword_list if contains_ignore_case(name, kw)]
            if not matched:
                continue

            for keyword in matched:
                hits[keyword] += 1

            if pid not in matches:
                matches[pid] = ProcessRecord(pid=pid, name=name, window_title=titles.get(pid))

        for keyword, count in hits.items():
            if count == 0:
                LOGGER.info("No running processes match keyword=%s", keyword)

        return sorted(matches.values(), key=lambda record: record.pid)

    def _load_titles(self) -> dict[int, str]:
        try:
            return self._title_lookup()
        except Exception:
            LOGGER.debug("Window title lookup failed", exc_info=True)
            return {}

    @staticmethod
    def _read_identity(proc: Any) -> tuple[int | None, str]:
        info = getattr(proc, "info", None)
        if isinstance(info, dict):
            pid = info.get("pid", getattr(proc, "pid", None))
            name = info.get("name")
        else:
            pid = proc.pid
            name = proc.name()
        return pid, process_base_name(name)


def group_by_name(records: Iterable[ProcessRecord]) -> list[ProcessGroup]:
    grouped: dict[str, list[ProcessRecord]] = {}
    for record in records:
        grouped.setdefault(record.name.casefold(), []).append(record)

    groups: list[ProcessGroup] = []
    for members in grouped.values():
        groups.append(
            ProcessGroup(
                name=members[0].name,
                display_info=_display_info(members),
                processes=members,
            )
        )

    return sorted(groups, key=lambda group: group.name.casefold())


def _display_info(members: list[ProcessRecord]) -> str:
    titled = next((record for record in members if record.window_title), None)
    if titled is None:
        return BACKGROUND_PLACEHOLDER

    text = titled.window_title or ""
    if len(text) > MAX_DISPLAY_LENGTH:
        text = text[: MAX_DISPLAY_LENGTH - 3] + "..."
    return text


def format_group_line(group: ProcessGroup) -> str:
    suffix = f" (+{group.total_count - 1} more)" if group.total_count > 1 else ""
    return f"{group.name}{suffix} - {group.display_info}"
