from __future__ import annotations

import ctypes
import sys


class _User32:
    def __init__(self) -> None:
        self._user32 = ctypes.WinDLL("user32", use_last_error=True)

    def window_titles(self) -> dict[int, str]:
        from ctypes import wintypes

        titles: dict[int, str] = {}

        @ctypes.WINFUNCTYPE(wintypes.BOOL, wintypes.HWND, wintypes.LPARAM)
        def _collect(hwnd, _lparam):
            if not self._user32.IsWindowVisible(hwnd):
                return True

            length = self._user32.GetWindowTextLengthW(hwnd)
            if length <= 0:
                return True

            pid = wintypes.DWORD()
            self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
            if pid.value == 0 or pid.value in titles:
                return True

            buffer = ctypes.create_unicode_buffer(length + 1)
            self._user32.GetWindowTextW(hwnd, buffer, length + 1)
            title = buffer.value.strip()
            if title:
                titles[int(pid.value)] = title
            return True

        self._user32.EnumWindows(_collect, 0)
        return titles


_USER32: _User32 | None = None


def get_window_titles() -> dict[int, str]:
    """Map pid -> title of its first visible, titled top-level window."""
    global _USER32

    if sys.platform != "win32":
        return {}

    if _USER32 is None:
        _USER32 = _User32()

    try:
        return _USER32.window_titles()
    except OSError:
        return {}
