from __future__ import annotations

import logging
import os

LOGGER = logging.getLogger("ecoboost.instance")

MUTEX_NAME = "EfficiencyBooster_SingleInstance"
ERROR_ALREADY_EXISTS = 183


try:
    import win32api
    import win32event
    from win32com.shell import shell

    PYWIN32_AVAILABLE = True
except ImportError:  # pragma: no cover - platform dependency
    win32api = None
    win32event = None
    shell = None
    PYWIN32_AVAILABLE = False


def is_elevated() -> bool:
    if PYWIN32_AVAILABLE:
        return bool(shell.IsUserAnAdmin())
    if hasattr(os, "geteuid"):
        return os.geteuid() == 0
    return False


class SingleInstance:
    """Holds a named mutex for as long as the application runs."""

    def __init__(self, name: str = MUTEX_NAME) -> None:
        self._name = name
        self._handle = None

    def acquire(self) -> bool:
        if not PYWIN32_AVAILABLE:
            LOGGER.debug("pywin32 unavailable, single-instance check skipped")
            return True

        self._handle = win32event.CreateMutex(None, False, self._name)
        if win32api.GetLastError() == ERROR_ALREADY_EXISTS:
            self.release()
            return False
        return True

    def release(self) -> None:
        if self._handle is not None:
            win32api.CloseHandle(self._handle)
            self._handle = None

    def __enter__(self) -> SingleInstance:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
