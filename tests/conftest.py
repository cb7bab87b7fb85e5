import pytest

from helpers import FakeNotifier, FixedClock, StubComputedSource, StubOfficialSource, at, make_times, window
from notification_scheduler import PrayerNotificationScheduler, SchedulerSettings
from resolver import PrayerTimeResolver
from schedule_store import MemoryStorage, ScheduleStore


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def official() -> StubOfficialSource:
    return StubOfficialSource({day: make_times(day, source="official") for day in window()})


@pytest.fixture
def computed() -> StubComputedSource:
    return StubComputedSource()


@pytest.fixture
def store() -> ScheduleStore:
    return ScheduleStore(MemoryStorage())


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(at(0, 30))


@pytest.fixture
def scheduler(notifier, official, computed, store, clock) -> PrayerNotificationScheduler:
    resolver = PrayerTimeResolver(official, computed)
    return PrayerNotificationScheduler(notifier, resolver, store, clock, SchedulerSettings())
