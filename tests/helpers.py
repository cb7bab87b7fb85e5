from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pytz

from notifier import Notifier, SubmissionFailed
from prayer_times import ALADHAN_FIELD_MAP, DailyPrayerTimes

SGT = pytz.timezone("Asia/Singapore")
TODAY = date(2025, 12, 22)

DEFAULT_TIMINGS = {
    "Fajr": "05:45",
    "Sunrise": "07:05",
    "Dhuhr": "13:05",
    "Asr": "16:25",
    "Maghrib": "19:05",
    "Isha": "20:20",
}


def make_times(day: date, source: str = "test", **overrides: str) -> DailyPrayerTimes:
    timings = dict(DEFAULT_TIMINGS, **overrides)
    return DailyPrayerTimes.from_timings(day, timings, ALADHAN_FIELD_MAP, source)


def at(hour: int, minute: int = 0, day: date = TODAY) -> datetime:
    return SGT.localize(datetime(day.year, day.month, day.day, hour, minute))


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeNotifier(Notifier):
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.pending: Dict[str, dict] = {}
        self.submissions: List[dict] = []
        self.cancelled: List[str] = []
        self.fail_for: set = set()
        self.on_schedule = None
        self._counter = 0

    def request_permission(self) -> bool:
        return self.granted

    def schedule(self, title, body, payload, trigger_at, sound=None) -> str:
        if self.on_schedule:
            self.on_schedule()
        if (payload["prayer"], payload["type"]) in self.fail_for:
            raise SubmissionFailed(payload["prayer"], trigger_at.date(), payload["type"], "rejected")
        self._counter += 1
        notification_id = f"n{self._counter}"
        entry = {
            "id": notification_id,
            "title": title,
            "body": body,
            "payload": payload,
            "trigger_at": trigger_at,
            "sound": sound,
        }
        self.pending[notification_id] = entry
        self.submissions.append(entry)
        return notification_id

    def cancel(self, notification_id: str) -> None:
        self.cancelled.append(notification_id)
        self.pending.pop(notification_id, None)

    def cancel_all(self) -> None:
        self.pending.clear()

    def list_pending(self) -> List[str]:
        return list(self.pending)


class StubOfficialSource:
    def __init__(self, days: Optional[Dict[date, DailyPrayerTimes]] = None, error: Optional[Exception] = None) -> None:
        self.days = days or {}
        self.error = error
        self.calls: List[date] = []

    def lookup(self, target_date: date) -> Optional[DailyPrayerTimes]:
        self.calls.append(target_date)
        if self.error:
            raise self.error
        return self.days.get(target_date)


class StubComputedSource:
    def __init__(self, failing: Optional[set] = None) -> None:
        self.failing = failing or set()
        self.calls: List[tuple] = []

    def lookup(self, target_date: date, latitude: float, longitude: float) -> DailyPrayerTimes:
        self.calls.append((target_date, latitude, longitude))
        if target_date in self.failing:
            raise RuntimeError("AlAdhan unavailable")
        return make_times(target_date, source="aladhan")


def window(start: date = TODAY, days: int = 5) -> List[date]:
    return [start + timedelta(days=offset) for offset in range(days)]
