from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

LOGGER = logging.getLogger("ecoboost.log_files")

LOG_PREFIX = "EfficiencyBooster-"
LOG_PATTERN = f"{LOG_PREFIX}*.log"

_LEVEL_NAMES = {
    logging.DEBUG: "INFO",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def log_file_for(log_dir: str | Path, day: datetime | None = None) -> Path:
    stamp = (day or datetime.now()).strftime("%Y-%m-%d")
    return Path(log_dir) / f"{LOG_PREFIX}{stamp}.log"


class LogLineFormatter(logging.Formatter):
    """``[yyyy-MM-dd HH:mm:ss] [LEVEL] message`` on a single line."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level = _LEVEL_NAMES.get(record.levelno, "ERROR" if record.levelno > logging.ERROR else "INFO")
        message = record.getMessage()
        if record.exc_info and record.exc_info[1] is not None:
            message = f"{message}: {record.exc_info[1]}"
        return f"[{stamp}] [{level}] {message}"


class DailyLogFileHandler(logging.Handler):
    """Appends each record to the log file of the record's calendar day."""

    def __init__(self, log_dir: str | Path, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.log_dir = Path(log_dir)
        self._write_lock = threading.Lock()
        self.setFormatter(LogLineFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            path = log_file_for(self.log_dir, datetime.fromtimestamp(record.created))
            with self._write_lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except Exception:
            self.handleError(record)


def list_log_files(log_dir: str | Path) -> list[Path]:
    directory = Path(log_dir)
    if not directory.is_dir():
        return []
    return sorted(directory.glob(LOG_PATTERN), reverse=True)


def clean_old_logs(log_dir: str | Path, retention_days: int, now: float | None = None) -> list[Path]:
    """Delete log files last modified more than ``retention_days`` days ago."""
    cutoff = (now if now is not None else time.time()) - timedelta(days=retention_days).total_seconds()

    removed: list[Path] = []
    for path in list_log_files(log_dir):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except OSError as exc:
            LOGGER.warning("Failed to remove old log %s: %s", path, exc)

    if removed:
        LOGGER.info("Removed %s log files older than %s days", len(removed), retention_days)
    return removed
