from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path

import pystray
from PIL import Image, ImageDraw
from pystray import Menu, MenuItem

from ecoboost.config import SettingsStore
from ecoboost.instance import is_elevated
from ecoboost.log_files import log_file_for
from ecoboost.models import EnforcementEvent, EnforcementResult
from ecoboost.notifications import build_notification
from ecoboost.scheduler import EnforcementScheduler

LOGGER = logging.getLogger("ecoboost.tray")

APP_TITLE = "Efficiency Booster"


def _open_in_notepad(path: Path) -> OSError | None:
    try:
        subprocess.Popen(["notepad.exe", str(path)], close_fds=True)
        return None
    except OSError as exc:
        return exc


class TrayApplication:
    def __init__(self, store: SettingsStore, scheduler: EnforcementScheduler, log_dir: Path) -> None:
        self._store = store
        self._scheduler = scheduler
        self._log_dir = log_dir

        self._icon = pystray.Icon(
            name="EfficiencyBooster",
            icon=self._build_icon(),
            title=APP_TITLE,
            menu=self._build_menu(),
        )
        self._scheduler.subscribe(self._on_enforcement_completed)

    def run(self) -> None:
        LOGGER.info("Starting tray UI")
        self._icon.run(setup=self._on_ready)

    def _on_ready(self, icon: pystray.Icon) -> None:
        icon.visible = True
        if self._store.snapshot().enforcement_enabled:
            self._scheduler.start()
        self._refresh_status()

    def _status_text(self) -> str:
        return f"Status: {self._scheduler.status_message()}"

    def _refresh_status(self) -> None:
        self._icon.title = f"{APP_TITLE}\n{self._scheduler.status_message()}"
        self._icon.update_menu()

    def _build_menu(self) -> Menu:
        return Menu(
            MenuItem(lambda _: self._status_text(), None, enabled=False),
            Menu.SEPARATOR,
            MenuItem("Run Now", self._on_run_now, default=True),
            MenuItem("View Today's Log", self._on_open_logs),
            Menu.SEPARATOR,
            MenuItem("Enabled", self._on_toggle_enabled, checked=self._is_enabled),
            MenuItem("Start with Windows", self._on_toggle_startup, checked=self._is_startup),
            MenuItem("Run as Admin (Full Coverage)", self._on_toggle_elevated, checked=self._is_elevated_mode),
            Menu.SEPARATOR,
            MenuItem("Exit", self._on_exit),
        )

    def _on_enforcement_completed(self, event: EnforcementEvent, result: EnforcementResult) -> None:
        self._refresh_status()

        notification = build_notification(event, result)
        if notification:
            title, message = notification
            self._icon.notify(message, title)

    def _on_run_now(self, _icon: pystray.Icon, _item: MenuItem) -> None:
        LOGGER.info("Manual enforcement run triggered")
        threading.Thread(target=self._scheduler.run_once, name="ecoboost-manual-run", daemon=True).start()

    def _on_open_logs(self, icon: pystray.Icon, _item: MenuItem) -> None:
        error = _open_in_notepad(log_file_for(self._log_dir))
        if error:
            LOGGER.warning("Failed to open log file: %s", error)
            icon.notify("Could not open logs", APP_TITLE)

    def _on_toggle_enabled(self, _icon: pystray.Icon, _item: MenuItem) -> None:
        enabled = not self._store.snapshot().enforcement_enabled
        self._store.set_enforcement_enabled(enabled)

        if enabled:
            self._scheduler.start()
            LOGGER.info("Enforcement enabled by user")
        else:
            self._scheduler.stop()
            LOGGER.info("Enforcement disabled by user")

        self._refresh_status()

    def _on_toggle_startup(self, _icon: pystray.Icon, _item: MenuItem) -> None:
        enabled = not self._store.snapshot().start_with_windows
        if self._store.set_start_with_windows(enabled):
            LOGGER.info("Start with Windows: %s", enabled)

    def _on_toggle_elevated(self, icon: pystray.Icon, _item: MenuItem) -> None:
        enabled = not self._store.snapshot().elevated_mode_enabled
        self._store.set_elevated_mode(enabled)
        LOGGER.info("Run as admin: %s", enabled)

        if enabled and not is_elevated():
            icon.notify("Restart the app as administrator to throttle elevated processes.", "Admin Mode Enabled")

    def _on_exit(self, icon: pystray.Icon, _item: MenuItem) -> None:
        LOGGER.info("Exiting tray UI")
        self._scheduler.unsubscribe(self._on_enforcement_completed)
        self._scheduler.stop()
        icon.stop()

    def _is_enabled(self, _item: MenuItem) -> bool:
        return self._store.snapshot().enforcement_enabled

    def _is_startup(self, _item: MenuItem) -> bool:
        return self._store.snapshot().start_with_windows

    def _is_elevated_mode(self, _item: MenuItem) -> bool:
        return self._store.snapshot().elevated_mode_enabled

    @staticmethod
    def _build_icon() -> Image.Image:
        image = Image.new("RGB", (64, 64), color=(24, 48, 32))
        draw = ImageDraw.Draw(image)
        draw.ellipse((8, 8, 56, 56), outline=(120, 220, 140), width=3)
        draw.polygon([(36, 12), (20, 36), (32, 36), (28, 52), (44, 28), (32, 28)], fill=(120, 220, 140))
        return image


def run_tray_app(store: SettingsStore, scheduler: EnforcementScheduler, log_dir: Path) -> None:
    app = TrayApplication(store=store, scheduler=scheduler, log_dir=log_dir)
    app.run()
