from __future__ import annotations

import re

_EXE_SUFFIX = re.compile(r"\.exe$", re.IGNORECASE)


def normalize_keyword(value: str | None) -> str:
    if not value:
        return ""
    return value.strip()


def process_base_name(value: str | None) -> str:
    """Return the image name without a trailing ``.exe`` ("chrome.exe" -> "chrome")."""
    if not value:
        return ""
    return _EXE_SUFFIX.sub("", value.strip())


def unique_keywords(values: list[str]) -> list[str]:
    output: list[str] = []
    seen: set[str] = set()
    for raw in values:
        keyword = normalize_keyword(raw)
        folded = keyword.casefold()
        if not keyword or folded in seen:
            continue
        seen.add(folded)
        output.append(keyword)
    return output


def contains_ignore_case(haystack: str, needle: str) -> bool:
    return needle.casefold() in haystack.casefold()
