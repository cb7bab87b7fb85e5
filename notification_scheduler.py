"""Keeps a rolling window of prayer notifications scheduled.

Each run checks whether the stored schedule still covers enough future days
and whether the notifier still holds those notifications. If not, every
notification is cancelled and the whole window is recomputed: today's times
come from the caller, later days from the resolver. A failure for one day or
one notification only loses that day or that notification.
"""
from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo as TzInfo
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from cancellation import CancellationController
from notifier import Notifier, PermissionDenied, SubmissionFailed
from prayer_times import (
    PRAYER_ORDER,
    DailyPrayerTimes,
    LocationInfo,
    canonical_prayer_name,
    resolve_location,
)
from resolver import PrayerTimeResolver, SourceUnavailable
from schedule_store import (
    DEFAULT_COVERAGE_THRESHOLD,
    NotificationKind,
    NotificationRecord,
    ScheduleMetadata,
    ScheduleStore,
    StoreWriteFailed,
)

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    CHECKING_COVERAGE = "checking_coverage"
    CANCELLING = "cancelling"
    RESOLVING = "resolving"
    SUBMITTING = "submitting"
    PERSISTING = "persisting"


@dataclass(frozen=True)
class SchedulerSettings:
    lookahead_days: int = 5
    coverage_threshold: int = DEFAULT_COVERAGE_THRESHOLD
    max_workers: int = 4

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SchedulerSettings":
        section = config.get("notifications") if isinstance(config, dict) else None
        if not isinstance(section, dict):
            return cls()
        defaults = cls()
        return cls(
            lookahead_days=max(1, int(section.get("lookahead_days", defaults.lookahead_days))),
            coverage_threshold=max(1, int(section.get("coverage_threshold", defaults.coverage_threshold))),
            max_workers=max(1, int(section.get("max_workers", defaults.max_workers))),
        )


@dataclass(frozen=True)
class NotificationPreferences:
    reminder_minutes: int = 0
    muted_prayers: FrozenSet[str] = field(default_factory=frozenset)
    alert_sound: str = "default"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "NotificationPreferences":
        section = config.get("notifications") if isinstance(config, dict) else None
        if not isinstance(section, dict):
            return cls()
        return cls(
            reminder_minutes=max(0, int(section.get("reminder_minutes", 0) or 0)),
            muted_prayers=frozenset(str(name) for name in section.get("muted_prayers", []) or []),
            alert_sound=str(section.get("alert_sound") or "default"),
        )


@dataclass(frozen=True)
class ScheduledDatesInfo:
    dates: List[date]
    count: int
    next_date: Optional[date]


class PrayerNotificationScheduler:
    """Schedules reminder and event notifications for the lookahead window."""

    def __init__(
        self,
        notifier: Notifier,
        resolver: PrayerTimeResolver,
        store: ScheduleStore,
        clock: Clock,
        settings: Optional[SchedulerSettings] = None,
        cancellation: Optional[CancellationController] = None,
    ) -> None:
        self._notifier = notifier
        self._resolver = resolver
        self._store = store
        self._clock = clock
        self.settings = settings or SchedulerSettings()
        self.cancellation = cancellation or CancellationController(notifier, store, clock)
        self.state = SchedulerState.IDLE

    def run(
        self,
        today_times: DailyPrayerTimes,
        reminder_minutes: int,
        muted_prayers: Iterable[str],
        alert_sound: str,
        location: Optional[LocationInfo] = None,
    ) -> None:
        started_at = self._clock()
        today = started_at.date()
        muted_prayers = list(muted_prayers)
        LOGGER.info(
            "Starting notification scheduling: %d days, reminder=%s min, muted=%s, sound=%s",
            self.settings.lookahead_days,
            reminder_minutes,
            sorted(muted_prayers),
            alert_sound,
        )
        try:
            self.state = SchedulerState.CHECKING_COVERAGE
            if self._store.has_sufficient_future_coverage(
                today, self.settings.coverage_threshold
            ) and self._stored_notifications_pending(started_at):
                LOGGER.info("Notifications already scheduled, skipping")
                return

            self._ensure_permission()

            self.state = SchedulerState.CANCELLING
            self.cancellation.cancel_all()

            self.state = SchedulerState.RESOLVING
            days = self._resolve_window(today_times, today, resolve_location(location))

            self.state = SchedulerState.SUBMITTING
            muted = _canonical_muted(muted_prayers)
            records: List[NotificationRecord] = []
            for day, times in days:
                day_records = self._schedule_day(times, day, started_at, reminder_minutes, muted, alert_sound)
                records.extend(day_records)

            self.state = SchedulerState.PERSISTING
            metadata = ScheduleMetadata.for_records(records, last_scheduled_date=today, last_updated=self._clock())
            try:
                self._store.commit(records, metadata)
            except StoreWriteFailed:
                LOGGER.exception("Scheduled %d notifications but could not save them", len(records))
                return
            LOGGER.info(
                "Notification scheduling complete: %d notifications (%d reminders, %d events) across %s",
                len(records),
                _count(records, NotificationKind.REMINDER),
                _count(records, NotificationKind.EVENT),
                [day.isoformat() for day in metadata.scheduled_dates],
            )
        except PermissionDenied:
            LOGGER.warning("No notification permission, skipping scheduling")
        finally:
            self.state = SchedulerState.IDLE

    def reschedule(
        self,
        today_times: DailyPrayerTimes,
        reminder_minutes: int,
        muted_prayers: Iterable[str],
        alert_sound: str,
        location: Optional[LocationInfo] = None,
    ) -> None:
        """Drop the current schedule and build a new one, e.g. after a settings change."""
        self.force_reschedule()
        self.run(today_times, reminder_minutes, muted_prayers, alert_sound, location)

    def force_reschedule(self) -> None:
        """Cancel everything so the next run recomputes the whole window."""
        LOGGER.info("Force rescheduling all notifications")
        self.cancellation.cancel_all()

    def pending_count(self) -> int:
        try:
            return len(self._notifier.list_pending())
        except Exception:
            LOGGER.warning("Failed to get pending notifications count", exc_info=True)
            return 0

    def scheduled_dates_info(self, today: Optional[date] = None) -> ScheduledDatesInfo:
        metadata = self._store.metadata()
        if metadata is None:
            return ScheduledDatesInfo(dates=[], count=0, next_date=None)
        today = today or self._clock().date()
        future_dates = [day for day in metadata.scheduled_dates if day >= today]
        return ScheduledDatesInfo(
            dates=future_dates,
            count=metadata.scheduled_count,
            next_date=future_dates[0] if future_dates else None,
        )

    def _stored_notifications_pending(self, now: datetime) -> bool:
        """Whether every stored notification still due is known to the notifier.

        Stored records outlive the notifier's jobs when the process restarts.
        """
        expected = {record.id for record in self._store.records() if record.scheduled_for > now}
        try:
            pending = set(self._notifier.list_pending())
        except Exception:
            LOGGER.warning("Failed to list pending notifications", exc_info=True)
            return False
        missing = expected - pending
        if missing:
            LOGGER.warning("%d stored notifications are no longer pending, rescheduling", len(missing))
            return False
        return True

    def _ensure_permission(self) -> None:
        try:
            granted = self._notifier.request_permission()
        except Exception:
            LOGGER.warning("Error requesting notification permission", exc_info=True)
            granted = False
        if not granted:
            raise PermissionDenied("Notification permission not granted")

    def _resolve_window(
        self,
        today_times: DailyPrayerTimes,
        today: date,
        location: LocationInfo,
    ) -> List[Tuple[date, DailyPrayerTimes]]:
        if today_times.date != today:
            LOGGER.debug("Applying provided %s times to today (%s)", today_times.date, today)
        days: List[Tuple[date, DailyPrayerTimes]] = [(today, today_times)]
        future_dates = [today + timedelta(days=offset) for offset in range(1, self.settings.lookahead_days)]
        if not future_dates:
            return days

        workers = min(self.settings.max_workers, len(future_dates))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [(day, executor.submit(self._resolver.resolve, day, location)) for day in future_dates]
            for day, future in futures:
                try:
                    days.append((day, future.result()))
                except SourceUnavailable:
                    LOGGER.error("Skipping %s: no prayer times available", day, exc_info=True)
                except Exception:
                    LOGGER.exception("Skipping %s: failed to resolve prayer times", day)
        return days

    def _schedule_day(
        self,
        times: DailyPrayerTimes,
        day: date,
        started_at: datetime,
        reminder_minutes: int,
        muted: FrozenSet[str],
        alert_sound: str,
    ) -> List[NotificationRecord]:
        tzinfo: Optional[TzInfo] = started_at.tzinfo
        records: List[NotificationRecord] = []
        for prayer in PRAYER_ORDER:
            if prayer in muted:
                LOGGER.debug("Skipping muted prayer %s on %s", prayer, day)
                continue
            event_at = times.instant(prayer, tzinfo, on_date=day)
            if event_at <= started_at:
                LOGGER.debug("Prayer time %s on %s has passed, skipping", prayer, day)
                continue

            if reminder_minutes > 0:
                reminder_at = event_at - timedelta(minutes=reminder_minutes)
                if reminder_at > started_at:
                    record = self._submit(
                        prayer,
                        day,
                        NotificationKind.REMINDER,
                        reminder_at,
                        title=f"{prayer} in {reminder_minutes} minutes",
                        body="Time to prepare for prayer",
                    )
                    if record:
                        records.append(record)

            record = self._submit(
                prayer,
                day,
                NotificationKind.EVENT,
                event_at,
                title=f"{prayer} Prayer Time",
                body="Time for prayer",
                sound=alert_sound,
            )
            if record:
                records.append(record)

        LOGGER.debug(
            "Scheduled %d notifications for %s from %s times",
            len(records),
            day,
            times.source,
        )
        return records

    def _submit(
        self,
        prayer: str,
        day: date,
        kind: NotificationKind,
        trigger_at: datetime,
        title: str,
        body: str,
        sound: Optional[str] = None,
    ) -> Optional[NotificationRecord]:
        payload: Dict[str, Any] = {"type": kind.value, "prayer": prayer, "date": day.isoformat()}
        if sound:
            payload["sound"] = sound
        try:
            notification_id = self._notifier.schedule(title, body, payload, trigger_at, sound=sound)
        except SubmissionFailed:
            LOGGER.error("Failed to schedule %s for %s on %s", kind.value, prayer, day, exc_info=True)
            return None
        except Exception:
            LOGGER.exception("Notifier error scheduling %s for %s on %s", kind.value, prayer, day)
            return None
        return NotificationRecord(
            id=notification_id,
            prayer_name=prayer,
            kind=kind,
            scheduled_for=trigger_at,
            date=day,
        )


def _canonical_muted(muted_prayers: Iterable[str]) -> FrozenSet[str]:
    muted = set()
    for name in muted_prayers:
        canonical = canonical_prayer_name(name)
        if canonical is None:
            LOGGER.warning("Ignoring unknown muted prayer %r", name)
            continue
        muted.add(canonical)
    return frozenset(muted)


def _count(records: List[NotificationRecord], kind: NotificationKind) -> int:
    return sum(1 for record in records if record.kind is kind)
