from __future__ import annotations

import ctypes
import logging
import os
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol

import psutil

from ecoboost.models import ThrottleOutcome

LOGGER = logging.getLogger("ecoboost.throttle")

ERROR_ACCESS_DENIED = 5
ERROR_INVALID_HANDLE = 6
ERROR_NOT_SUPPORTED = 50
ERROR_INVALID_PARAMETER = 87
ERROR_TIMEOUT = 1460

_ERROR_MESSAGES = {
    ERROR_ACCESS_DENIED: "Access denied (process may require elevation)",
    ERROR_INVALID_PARAMETER: "Not found (process no longer exists)",
    ERROR_INVALID_HANDLE: "Invalid handle (process may have exited)",
    ERROR_TIMEOUT: "Timed out (operation timed out)",
}

PROCESS_SET_INFORMATION = 0x0200
PROCESS_POWER_THROTTLING_CURRENT_VERSION = 1
PROCESS_POWER_THROTTLING_EXECUTION_SPEED = 0x1
PROCESS_INFORMATION_CLASS_POWER_THROTTLING = 4

# Windows 11 21H2
_MIN_POWER_QOS_BUILD = 22000

_IDLE_PRIORITY = getattr(psutil, "IDLE_PRIORITY_CLASS", 64)
_POSIX_IDLE_NICE = 19


def describe_error(code: int) -> str:
    return _ERROR_MESSAGES.get(code, f"Error code {code}")


class ThrottleError(Exception):
    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(message or describe_error(code))
        self.code = code


class PrioritySetter(Protocol):
    def lower_priority(self, pid: int) -> None: ...


class PowerQosSetter(Protocol):
    def enable(self, pid: int) -> None: ...


def _os_error_code(exc: OSError) -> int:
    winerror = getattr(exc, "winerror", None)
    if winerror:
        return int(winerror)
    return int(exc.errno or 0)


class PsutilPrioritySetter:
    """Drops a process to the idle priority class (nice 19 outside Windows)."""

    def lower_priority(self, pid: int) -> None:
        try:
            psutil.Process(pid).nice(self._idle_priority())
        except psutil.ZombieProcess as exc:
            raise ThrottleError(ERROR_INVALID_HANDLE) from exc
        except psutil.NoSuchProcess as exc:
            raise ThrottleError(ERROR_INVALID_PARAMETER) from exc
        except psutil.AccessDenied as exc:
            raise ThrottleError(ERROR_ACCESS_DENIED) from exc
        except OSError as exc:
            raise ThrottleError(_os_error_code(exc)) from exc

    @staticmethod
    def _idle_priority() -> int:
        if os.name == "nt":
            return _IDLE_PRIORITY
        return _POSIX_IDLE_NICE


class _PowerThrottlingState(ctypes.Structure):
    _fields_ = [
        ("Version", ctypes.c_ulong),
        ("ControlMask", ctypes.c_ulong),
        ("StateMask", ctypes.c_ulong),
    ]


class Win32PowerQosSetter:
    """Marks a process as EcoQoS through ``SetProcessInformation``."""

    def __init__(self, kernel32=None, last_error: Callable[[], int] | None = None) -> None:
        self._kernel32 = kernel32 or ctypes.WinDLL("kernel32", use_last_error=True)
        self._last_error = last_error or ctypes.get_last_error
        self._kernel32.OpenProcess.argtypes = [ctypes.c_ulong, ctypes.c_int, ctypes.c_ulong]
        self._kernel32.OpenProcess.restype = ctypes.c_void_p
        self._kernel32.CloseHandle.argtypes = [ctypes.c_void_p]
        self._kernel32.CloseHandle.restype = ctypes.c_int
        self._kernel32.SetProcessInformation.argtypes = [
            ctypes.c_void_p,
            ctypes.c_int,
            ctypes.c_void_p,
            ctypes.c_ulong,
        ]
        self._kernel32.SetProcessInformation.restype = ctypes.c_int

    @contextmanager
    def _open_process(self, pid: int, access: int) -> Iterator[int]:
        handle = self._kernel32.OpenProcess(access, False, pid)
        if not handle:
            raise ThrottleError(self._last_error())
        try:
            yield handle
        finally:
            self._kernel32.CloseHandle(handle)

    def enable(self, pid: int) -> None:
        with self._open_process(pid, PROCESS_SET_INFORMATION) as handle:
            state = _PowerThrottlingState(
                Version=PROCESS_POWER_THROTTLING_CURRENT_VERSION,
                ControlMask=PROCESS_POWER_THROTTLING_EXECUTION_SPEED,
                StateMask=PROCESS_POWER_THROTTLING_EXECUTION_SPEED,
            )
            ok = self._kernel32.SetProcessInformation(
                handle,
                PROCESS_INFORMATION_CLASS_POWER_THROTTLING,
                ctypes.byref(state),
                ctypes.sizeof(state),
            )
            if not ok:
                raise ThrottleError(self._last_error())


class UnsupportedPowerQosSetter:
    def enable(self, pid: int) -> None:
        raise ThrottleError(ERROR_NOT_SUPPORTED, "Power throttling is not supported on this system")


def is_power_qos_supported() -> bool:
    if sys.platform != "win32":
        return False
    version = sys.getwindowsversion()
    return version.major >= 10 and version.build >= _MIN_POWER_QOS_BUILD


def default_power_qos_setter() -> PowerQosSetter:
    if is_power_qos_supported():
        return Win32PowerQosSetter()

    LOGGER.info("EcoQoS unavailable, throttling will use priority only")
    return UnsupportedPowerQosSetter()


class ThrottlePolicyApplier:
    def __init__(
        self,
        priority_setter: PrioritySetter | None = None,
        power_qos_setter: PowerQosSetter | None = None,
    ) -> None:
        self._priority_setter = priority_setter or PsutilPrioritySetter()
        self._power_qos_setter = power_qos_setter or default_power_qos_setter()

    def apply(self, pid: int, name: str = "") -> ThrottleOutcome:
        priority_ok = True
        error_code = 0
        error_message: str | None = None
        try:
            self._priority_setter.lower_priority(pid)
        except ThrottleError as exc:
            priority_ok = False
            error_code = exc.code
            error_message = str(exc)

        power_qos_ok = True
        power_qos_code = 0
        try:
            self._power_qos_setter.enable(pid)
        except ThrottleError as exc:
            power_qos_ok = False
            power_qos_code = exc.code
            LOGGER.debug("EcoQoS failed pid=%s name=%s code=%s", pid, name, exc.code)
        except Exception as exc:
            power_qos_ok = False
            power_qos_code = _os_error_code(exc) if isinstance(exc, OSError) else 0
            LOGGER.debug("EcoQoS failed pid=%s name=%s", pid, name, exc_info=True)

        return ThrottleOutcome(
            pid=pid,
            name=name,
            priority_succeeded=priority_ok,
            power_qos_succeeded=power_qos_ok,
            error_code=error_code,
            error_message=error_message,
            power_qos_error_code=power_qos_code,
        )
