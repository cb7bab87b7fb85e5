"""Platform notifier: one-off desktop notifications driven by APScheduler."""
from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

LOGGER = logging.getLogger(__name__)

APP_NAME = "Prayer Times"
JOB_ID_PREFIX = "prayer-notification-"


class PermissionDenied(Exception):
    """Notification permission was not granted on this device."""


class SubmissionFailed(Exception):
    """A single notification could not be registered with the platform."""

    def __init__(self, prayer: str, target_date: Optional[date], kind: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Failed to schedule {kind} for {prayer} on {target_date}{detail}")
        self.prayer = prayer
        self.date = target_date
        self.kind = kind


@dataclass(frozen=True)
class PlatformNotification:
    title: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sound: Optional[str] = None


class Notifier(ABC):
    """Interface of the platform notification subsystem."""

    @abstractmethod
    def request_permission(self) -> bool:
        """Return whether notifications may be shown."""

    @abstractmethod
    def schedule(
        self,
        title: str,
        body: str,
        payload: Dict[str, Any],
        trigger_at: datetime,
        sound: Optional[str] = None,
    ) -> str:
        """Register a notification and return its identifier.

        Raises ``SubmissionFailed`` when the platform rejects it.
        """

    @abstractmethod
    def cancel(self, notification_id: str) -> None:
        """Cancel one notification; unknown identifiers are ignored."""

    @abstractmethod
    def cancel_all(self) -> None:
        """Cancel every pending notification."""

    @abstractmethod
    def list_pending(self) -> List[str]:
        """Return identifiers of notifications that have not fired yet."""


class Delivery(ABC):
    """Shows a notification on the desktop once its trigger fires."""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def show(self, notification: PlatformNotification) -> None:
        ...


class NotifySendDelivery(Delivery):
    """Linux desktops (libnotify)."""

    def is_available(self) -> bool:
        return shutil.which("notify-send") is not None

    def show(self, notification: PlatformNotification) -> None:
        command = ["notify-send", "--app-name", APP_NAME]
        if notification.sound:
            command.extend(["--hint", f"string:sound-name:{notification.sound}"])
        command.extend([notification.title, notification.body])
        subprocess.run(command, check=False)


class OsascriptDelivery(Delivery):
    """macOS Notification Center."""

    def is_available(self) -> bool:
        return shutil.which("osascript") is not None

    def show(self, notification: PlatformNotification) -> None:
        script = f"display notification {_quote(notification.body)} with title {_quote(notification.title)}"
        if notification.sound:
            script += f" sound name {_quote(notification.sound)}"
        subprocess.run(["osascript", "-e", script], check=False)


class LogDelivery(Delivery):
    """Writes notifications to the log where no desktop integration exists."""

    def is_available(self) -> bool:
        return True

    def show(self, notification: PlatformNotification) -> None:
        LOGGER.info("%s - %s", notification.title, notification.body)


def select_delivery(platform: Optional[str] = None) -> Delivery:
    """Choose the delivery backend for *platform* (defaults to ``sys.platform``)."""
    platform = platform or sys.platform
    if platform.startswith("linux"):
        delivery: Delivery = NotifySendDelivery()
    elif platform == "darwin":
        delivery = OsascriptDelivery()
    else:
        delivery = LogDelivery()
    if not delivery.is_available():
        LOGGER.warning("%s unavailable on %s; notifications will only be logged", type(delivery).__name__, platform)
        delivery = LogDelivery()
    return delivery


class APSchedulerNotifier(Notifier):
    """Wrap APScheduler so each notification is a one-off date job."""

    def __init__(self, delivery: Delivery, timezone: str = "UTC", scheduler: Optional[BackgroundScheduler] = None) -> None:
        self._delivery = delivery
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone)
        self._counter = 0
        self._lock = threading.Lock()

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    def start(self) -> None:
        if not self._scheduler.running:
            LOGGER.info("Starting background scheduler")
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            LOGGER.info("Stopping background scheduler")
            self._scheduler.shutdown(wait=False)

    def request_permission(self) -> bool:
        granted = self._delivery.is_available()
        LOGGER.debug("Notification permission via %s: %s", type(self._delivery).__name__, granted)
        return granted

    def schedule(
        self,
        title: str,
        body: str,
        payload: Dict[str, Any],
        trigger_at: datetime,
        sound: Optional[str] = None,
    ) -> str:
        prayer = str(payload.get("prayer", ""))
        kind = str(payload.get("type", "notification"))
        target_date = trigger_at.date()
        now = datetime.now(trigger_at.tzinfo)
        if trigger_at <= now:
            raise SubmissionFailed(prayer, target_date, kind, f"trigger {trigger_at.isoformat()} is in the past")

        notification = PlatformNotification(title=title, body=body, payload=dict(payload), sound=sound)
        job_id = self._next_job_id()
        try:
            job = self._scheduler.add_job(
                self._delivery.show,
                trigger=DateTrigger(run_date=trigger_at),
                args=[notification],
                id=job_id,
                name=f"{kind}:{prayer}",
            )
        except Exception as exc:
            raise SubmissionFailed(prayer, target_date, kind, str(exc)) from exc
        LOGGER.debug("Scheduled notification job %s at %s", job.id, trigger_at)
        return job.id

    def cancel(self, notification_id: str) -> None:
        try:
            self._scheduler.remove_job(notification_id)
        except JobLookupError:
            LOGGER.debug("Notification job %s already gone", notification_id)

    def cancel_all(self) -> None:
        for job_id in self.list_pending():
            self.cancel(job_id)

    def list_pending(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs() if job.id.startswith(JOB_ID_PREFIX)]

    def _next_job_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"{JOB_ID_PREFIX}{datetime.now().strftime('%Y%m%d%H%M%S%f')}-{self._counter}"


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
