from __future__ import annotations

import logging
from pathlib import Path

from ecoboost.log_files import DailyLogFileHandler


def configure_logging(level: str = "INFO", log_dir: str | Path | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    if not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        root.addHandler(console)

    if log_dir is None:
        return

    target = Path(log_dir)
    for handler in root.handlers:
        if isinstance(handler, DailyLogFileHandler) and handler.log_dir == target:
            return

    root.addHandler(DailyLogFileHandler(target, level=max(numeric_level, logging.INFO)))
