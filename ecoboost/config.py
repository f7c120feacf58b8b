from __future__ import annotations

import json
import logging
import os
import re
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ecoboost.models import (
    DEFAULT_INTERVAL_MINUTES,
    DEFAULT_LOG_RETENTION_DAYS,
    AppSettings,
)
from ecoboost.utils import normalize_keyword, unique_keywords

LOGGER = logging.getLogger("ecoboost.config")

APP_NAME = "EfficiencyBooster"
LEGACY_APP_NAME = "EfficiencyMode"

_ALLOWED_POLICIES = {"priority", "either"}
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def app_data_root() -> Path:
    app_data = os.environ.get("APPDATA")
    if app_data:
        return Path(app_data)
    return Path.home() / ".config"


def settings_path() -> Path:
    return app_data_root() / APP_NAME / "settings.json"


def logs_path() -> Path:
    return app_data_root() / APP_NAME / "logs"


def legacy_keywords_path() -> Path:
    return app_data_root() / LEGACY_APP_NAME / "keywords.txt"


def _parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    text = _LONG_FRACTION.sub(r"\1", str(value).strip())
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        LOGGER.warning("Ignoring unreadable lastEnforcementRun=%s", value)
        return None
    # Naive values were written in local time.
    return parsed.astimezone(UTC)


def _read_int(payload: dict, key: str, default: int, minimum: int) -> int:
    raw = payload.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid %s=%r, using %s", key, raw, default)
        return default
    if value < minimum:
        LOGGER.warning("Out of range %s=%s, using %s", key, value, default)
        return default
    return value


def _read_bool(payload: dict, key: str, default: bool) -> bool:
    raw = payload.get(key, default)
    if isinstance(raw, bool):
        return raw
    LOGGER.warning("Invalid %s=%r, using %s", key, raw, default)
    return default


def settings_from_payload(payload: dict) -> AppSettings:
    raw_keywords = payload.get("keywords") or []
    if not isinstance(raw_keywords, list):
        raw_keywords = []

    policy = str(payload.get("successPolicy", "priority")).strip().lower()
    if policy not in _ALLOWED_POLICIES:
        LOGGER.warning("Unknown successPolicy=%s, using priority", policy)
        policy = "priority"

    return AppSettings(
        keywords=unique_keywords([str(item) for item in raw_keywords]),
        start_with_windows=_read_bool(payload, "startWithWindows", False),
        interval_minutes=_read_int(payload, "intervalMinutes", DEFAULT_INTERVAL_MINUTES, 1),
        log_retention_days=_read_int(payload, "logRetentionDays", DEFAULT_LOG_RETENTION_DAYS, 0),
        last_enforcement_run=_parse_timestamp(payload.get("lastEnforcementRun")),
        last_run_process_count=max(_read_int(payload, "lastRunProcessCount", 0, 0), 0),
        enforcement_enabled=_read_bool(payload, "enforcementEnabled", True),
        elevated_mode_enabled=_read_bool(payload, "runAsAdmin", False),
        success_policy=policy,
    )


def settings_to_payload(settings: AppSettings) -> dict:
    last_run = settings.last_enforcement_run
    return {
        "keywords": list(settings.keywords),
        "startWithWindows": settings.start_with_windows,
        "intervalMinutes": settings.interval_minutes,
        "logRetentionDays": settings.log_retention_days,
        "lastEnforcementRun": last_run.isoformat() if last_run else None,
        "lastRunProcessCount": settings.last_run_process_count,
        "enforcementEnabled": settings.enforcement_enabled,
        "runAsAdmin": settings.elevated_mode_enabled,
        "successPolicy": settings.success_policy,
    }


def read_legacy_keywords(path: str | Path) -> list[str]:
    legacy = Path(path)
    if not legacy.exists():
        return []
    lines = legacy.read_text(encoding="utf-8-sig").splitlines()
    return [keyword for keyword in (normalize_keyword(line) for line in lines) if keyword]


class SettingsBackend(Protocol):
    def load(self) -> AppSettings: ...

    def save(self, settings: AppSettings) -> None: ...

    def revision(self) -> object | None: ...


class JsonSettingsFile:
    def __init__(self, path: str | Path, legacy_path: str | Path | None = None) -> None:
        self.path = Path(path)
        self.legacy_path = Path(legacy_path) if legacy_path else None
        self._legacy_checked = False

    def load(self) -> AppSettings:
        settings = self._read()
        if self._legacy_checked:
            return settings
        self._legacy_checked = True
        if settings.keywords or not self.legacy_path:
            return settings

        try:
            imported = unique_keywords(read_legacy_keywords(self.legacy_path))
        except OSError as exc:
            LOGGER.warning("Failed to read legacy keywords from %s: %s", self.legacy_path, exc)
            return settings

        if not imported:
            return settings

        LOGGER.info("Imported %s keywords from %s", len(imported), self.legacy_path)
        settings = replace(settings, keywords=imported)
        try:
            self.save(settings)
        except OSError as exc:
            LOGGER.warning("Failed to persist imported keywords: %s", exc)
        return settings

    def save(self, settings: AppSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Readers in other processes must never see a half-written file.
        staging = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        staging.write_text(json.dumps(settings_to_payload(settings), indent=2), encoding="utf-8")
        try:
            os.replace(staging, self.path)
        except OSError:
            staging.unlink(missing_ok=True)
            raise

    def revision(self) -> tuple[int, int, int] | None:
        """Identity of the file on disk; changes whenever any process saves it."""
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _read(self) -> AppSettings:
        if not self.path.exists():
            return AppSettings()

        try:
            payload = json.loads(self.path.read_text(encoding="utf-8-sig"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to read settings from %s, using defaults: %s", self.path, exc)
            return AppSettings()

        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s is not a JSON object, using defaults", self.path)
            return AppSettings()

        return settings_from_payload(payload)


class SettingsStore:
    """Owns the application settings; every read and write goes through one lock.

    The settings file is shared with other processes (the CLI edits keywords
    while the tray scheduler records runs), so each access first reloads the
    file when its on-disk revision differs from the one this store last saw.
    """

    def __init__(
        self,
        backend: SettingsBackend,
        startup_registrar: Callable[[bool], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend = backend
        self._startup_registrar = startup_registrar
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._settings = backend.load()
        self._revision = backend.revision()

    @classmethod
    def open(cls, path: str | Path | None = None, **kwargs) -> SettingsStore:
        backend = JsonSettingsFile(path or settings_path(), legacy_path=legacy_keywords_path())
        return cls(backend, **kwargs)

    def snapshot(self) -> AppSettings:
        with self._lock:
            self._refresh_unlocked()
            return replace(self._settings, keywords=list(self._settings.keywords))

    def keywords(self) -> list[str]:
        with self._lock:
            self._refresh_unlocked()
            return list(self._settings.keywords)

    def add_keyword(self, text: str) -> bool:
        keyword = normalize_keyword(text)
        if not keyword:
            return False

        with self._lock:
            self._refresh_unlocked()
            folded = keyword.casefold()
            if any(existing.casefold() == folded for existing in self._settings.keywords):
                return False
            self._settings.keywords.append(keyword)
            self._save_unlocked()

        LOGGER.info("Added keyword=%s", keyword)
        return True

    def remove_keyword(self, text: str) -> bool:
        folded = normalize_keyword(text).casefold()
        if not folded:
            return False

        with self._lock:
            self._refresh_unlocked()
            for index, existing in enumerate(self._settings.keywords):
                if existing.casefold() == folded:
                    removed = self._settings.keywords.pop(index)
                    self._save_unlocked()
                    break
            else:
                return False

        LOGGER.info("Removed keyword=%s", removed)
        return True

    def update_last_run(self, success_count: int) -> None:
        with self._lock:
            self._refresh_unlocked()
            self._settings.last_enforcement_run = self._clock()
            self._settings.last_run_process_count = success_count
            self._save_unlocked()

    def set_enforcement_enabled(self, enabled: bool) -> None:
        self._update(enforcement_enabled=enabled)

    def set_interval_minutes(self, minutes: int) -> None:
        if int(minutes) <= 0:
            raise ValueError(f"Interval must be positive, got {minutes}")
        self._update(interval_minutes=int(minutes))

    def set_log_retention_days(self, days: int) -> None:
        if int(days) < 0:
            raise ValueError(f"Log retention cannot be negative, got {days}")
        self._update(log_retention_days=int(days))

    def set_elevated_mode(self, enabled: bool) -> None:
        self._update(elevated_mode_enabled=enabled)

    def set_success_policy(self, policy: str) -> None:
        normalized = policy.strip().lower()
        if normalized not in _ALLOWED_POLICIES:
            raise ValueError(f"Invalid success policy: {policy}. Expected one of {_ALLOWED_POLICIES}")
        self._update(success_policy=normalized)

    def set_start_with_windows(self, enabled: bool) -> bool:
        if self._startup_registrar:
            try:
                self._startup_registrar(enabled)
            except OSError as exc:
                LOGGER.warning("Failed to update startup registration: %s", exc)
                return False

        self._update(start_with_windows=enabled)
        return True

    def _update(self, **changes) -> None:
        with self._lock:
            self._refresh_unlocked()
            self._settings = replace(self._settings, **changes)
            self._save_unlocked()

    def _refresh_unlocked(self) -> None:
        revision = self._backend.revision()
        if revision is None or revision == self._revision:
            return
        self._settings = self._backend.load()
        self._revision = revision

    def _save_unlocked(self) -> bool:
        try:
            self._backend.save(self._settings)
        except OSError as exc:
            LOGGER.warning("Failed to persist settings: %s", exc)
            return False
        self._revision = self._backend.revision()
        return True
