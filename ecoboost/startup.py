from __future__ import annotations

import subprocess
import sys
import winreg
from pathlib import Path

RUN_KEY_PATH = r"Software\Microsoft\Windows\CurrentVersion\Run"
VALUE_NAME = "EfficiencyBooster"


def _gui_interpreter() -> str:
    executable = Path(sys.executable)
    if getattr(sys, "frozen", False):
        return str(executable)
    windowed = executable.with_name("pythonw.exe")
    return str(windowed if windowed.exists() else executable)


def build_startup_command(settings_file: str | Path | None = None) -> str:
    if getattr(sys, "frozen", False):
        command_parts = [_gui_interpreter(), "tray"]
    else:
        command_parts = [_gui_interpreter(), "-m", "ecoboost", "tray"]
    if settings_file:
        command_parts.extend(["--settings", str(Path(settings_file).resolve())])

    return subprocess.list2cmdline(command_parts)


def registered_command() -> str | None:
    """Command line currently in the user's Run key, or None when absent."""
    try:
        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, RUN_KEY_PATH, 0, winreg.KEY_QUERY_VALUE) as key:
            value, _ = winreg.QueryValueEx(key, VALUE_NAME)
    except FileNotFoundError:
        return None
    return str(value) or None


def set_startup(enabled: bool, settings_file: str | Path | None = None) -> str | None:
    """Add or drop the tray launch entry; returns the registered command line."""
    with winreg.OpenKey(winreg.HKEY_CURRENT_USER, RUN_KEY_PATH, 0, winreg.KEY_SET_VALUE) as key:
        if not enabled:
            try:
                winreg.DeleteValue(key, VALUE_NAME)
            except FileNotFoundError:
                pass
            return None

        command = build_startup_command(settings_file)
        winreg.SetValueEx(key, VALUE_NAME, 0, winreg.REG_SZ, command)
        return command
