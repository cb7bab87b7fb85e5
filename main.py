"""Entry point for the prayer notification service."""
from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from datetime import date, datetime, timedelta, time as time_module
from pathlib import Path
from typing import Any, Dict, Optional

from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tzlocal import get_localzone_name

from notification_scheduler import (
    NotificationPreferences,
    PrayerNotificationScheduler,
    SchedulerSettings,
)
from notifier import APSchedulerNotifier, select_delivery
from official_times import OfficialTimetable
from prayer_times import (
    CALCULATION_METHOD_SINGAPORE,
    SCHOOL_SHAFI,
    LocationInfo,
    PrayerTimesService,
    build_location_from_config,
    detect_location_from_ip,
    localize,
    resolve_location,
    resolve_timezone,
)
from resolver import PrayerTimeResolver, SourceUnavailable
from schedule_store import JsonFileStorage, ScheduleStore

APP_ROOT = Path(__file__).parent
CONFIG_PATH = APP_ROOT / "config.json"
DEFAULT_DATA_DIR = APP_ROOT / "data"
DEFAULT_STORAGE_PATH = APP_ROOT / "notification_state.json"
PREFERENCES_STORAGE_KEY = "notification_preferences"
REFRESH_JOB_ID = "daily-refresh"
PREFERENCES_JOB_ID = "preferences-check"
DEFAULT_PREFERENCES_CHECK_SECONDS = 60
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

LOGGER = logging.getLogger(__name__)


class PrayerNotificationApp:
    """Wires the notification services together and refreshes them daily."""

    def __init__(self, config_path: Path = CONFIG_PATH, platform: Optional[str] = None) -> None:
        self._config_path = config_path
        self._config = self._load_json(config_path, default={})
        LOGGER.debug("Loaded config keys: %s", list(self._config.keys()))

        self.current_location: Optional[LocationInfo] = build_location_from_config(self._config)
        self._tzinfo = resolve_timezone(self.current_location)

        calc_cfg = self._config.get("calculation", {}) if isinstance(self._config.get("calculation"), dict) else {}
        official_cfg = (
            self._config.get("official_timetable", {})
            if isinstance(self._config.get("official_timetable"), dict)
            else {}
        )
        settings = SchedulerSettings.from_config(self._config)

        self.prayer_service = PrayerTimesService(
            method=int(calc_cfg.get("method", CALCULATION_METHOD_SINGAPORE)),
            school=int(calc_cfg.get("school", SCHOOL_SHAFI)),
        )
        self.timetable = OfficialTimetable(
            data_dir=self._config_relative(official_cfg.get("data_dir"), DEFAULT_DATA_DIR),
            remote_url=official_cfg.get("url") or None,
        )
        self.resolver = PrayerTimeResolver(self.timetable, self.prayer_service)

        self.storage = JsonFileStorage(self._config_relative(self._config.get("storage_path"), DEFAULT_STORAGE_PATH))
        self.store = ScheduleStore(self.storage)
        self.notifier = APSchedulerNotifier(select_delivery(platform), timezone=self._timezone_name())
        self.scheduler = PrayerNotificationScheduler(
            self.notifier,
            self.resolver,
            self.store,
            clock=self.now,
            settings=settings,
        )

    def now(self) -> datetime:
        return datetime.now(self._tzinfo)

    def start(self) -> None:
        self.notifier.start()
        self.refresh()
        self._schedule_preference_check()

    def refresh(self) -> None:
        """Reload preferences, resolve today's times and top up the notification window.

        The next daily refresh is always planned, even when this one fails.
        """
        try:
            self._refresh_notifications()
        except Exception:
            LOGGER.exception("Refresh failed; retrying at next refresh")
        finally:
            self._schedule_refresh(self._next_refresh_time(self.now().date()))

    def check_preferences(self) -> None:
        """Refresh straight away when the notification preferences in the config changed."""
        config = self._load_json(self._config_path, default=self._config)
        try:
            preferences = NotificationPreferences.from_config(config)
        except (TypeError, ValueError):
            LOGGER.warning("Invalid notification preferences in %s", self._config_path, exc_info=True)
            return
        if self._preferences_changed(preferences):
            self.refresh()

    def _refresh_notifications(self) -> None:
        self._config = self._load_json(self._config_path, default=self._config)
        location = self._resolve_location()
        self._tzinfo = resolve_timezone(location)
        preferences = NotificationPreferences.from_config(self._config)
        today = self.now().date()

        try:
            today_times = self.resolver.resolve(today, location)
        except SourceUnavailable:
            LOGGER.error("Could not resolve today's prayer times; retrying at next refresh", exc_info=True)
        else:
            arguments = (
                today_times,
                preferences.reminder_minutes,
                preferences.muted_prayers,
                preferences.alert_sound,
                location,
            )
            if self._preferences_changed(preferences):
                LOGGER.info("Notification preferences changed; rescheduling")
                self.scheduler.reschedule(*arguments)
            else:
                self.scheduler.run(*arguments)
            self._save_preferences(preferences)

    def shutdown(self) -> None:
        self.notifier.shutdown()

    def _resolve_location(self) -> LocationInfo:
        if bool(self._config.get("auto_location", False)):
            LOGGER.debug("Attempting automatic location detection via IP lookup")
            try:
                location = detect_location_from_ip()
            except Exception:
                LOGGER.warning("Automatic location detection failed; falling back to saved location", exc_info=True)
            else:
                self._update_config_location(location)
                self.current_location = location
                return location
        self.current_location = build_location_from_config(self._config) or self.current_location
        return resolve_location(self.current_location)

    def _preferences_changed(self, preferences: NotificationPreferences) -> bool:
        raw = self.storage.get(PREFERENCES_STORAGE_KEY)
        if not raw:
            return False
        try:
            previous = json.loads(raw)
        except ValueError:
            return True
        return previous != _preferences_to_dict(preferences)

    def _save_preferences(self, preferences: NotificationPreferences) -> None:
        try:
            self.storage.set(PREFERENCES_STORAGE_KEY, json.dumps(_preferences_to_dict(preferences)))
        except OSError:
            LOGGER.warning("Failed to persist notification preferences", exc_info=True)

    def _schedule_refresh(self, next_run: datetime) -> None:
        self.notifier.scheduler.add_job(
            self.refresh,
            trigger=DateTrigger(run_date=next_run),
            id=REFRESH_JOB_ID,
            replace_existing=True,
        )
        LOGGER.debug("Scheduled refresh job at %s", next_run)

    def _schedule_preference_check(self) -> None:
        seconds = max(1, int(self._config.get("preferences_check_seconds", DEFAULT_PREFERENCES_CHECK_SECONDS)))
        self.notifier.scheduler.add_job(
            self.check_preferences,
            trigger=IntervalTrigger(seconds=seconds),
            id=PREFERENCES_JOB_ID,
            replace_existing=True,
        )
        LOGGER.debug("Checking notification preferences every %d seconds", seconds)

    def _next_refresh_time(self, today: date) -> datetime:
        refresh_naive = datetime.combine(today + timedelta(days=1), time_module(hour=0, minute=5))
        return localize(refresh_naive, self._tzinfo)

    def _update_config_location(self, location: LocationInfo) -> None:
        if not isinstance(self._config.get("location"), dict):
            self._config["location"] = {}
        self._config["location"].update(
            {
                "city": location.city,
                "country": location.country,
                "latitude": location.latitude,
                "longitude": location.longitude,
                "timezone": location.timezone,
            }
        )
        LOGGER.debug("Persisting location config: %s", self._config.get("location"))
        try:
            self._save_json(self._config_path, self._config)
        except OSError:
            LOGGER.warning("Failed to persist detected location to %s", self._config_path, exc_info=True)

    def _timezone_name(self) -> str:
        zone = getattr(self._tzinfo, "zone", None)
        if zone:
            return str(zone)
        try:
            return get_localzone_name()
        except Exception:
            return "UTC"

    def _config_relative(self, value: Any, default: Path) -> Path:
        if not value:
            return default
        path = Path(str(value))
        return path if path.is_absolute() else self._config_path.parent / path

    @staticmethod
    def _load_json(path: Path, default: Dict[str, Any]) -> Dict[str, Any]:
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError):
            LOGGER.warning("Could not read %s; keeping previous configuration", path, exc_info=True)
            return default

    @staticmethod
    def _save_json(path: Path, payload: Dict[str, Any]) -> None:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)


def _preferences_to_dict(preferences: NotificationPreferences) -> Dict[str, Any]:
    return {
        "reminder_minutes": preferences.reminder_minutes,
        "muted_prayers": sorted(preferences.muted_prayers),
        "alert_sound": preferences.alert_sound,
    }


def configure_logging(config_path: Path = CONFIG_PATH) -> None:
    level_name = str(PrayerNotificationApp._load_json(config_path, default={}).get("log_level", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


def main() -> int:
    configure_logging()
    app = PrayerNotificationApp()
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    app.start()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
    finally:
        app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
