"""Resolve a day's prayer times from the official timetable, falling back to AlAdhan."""
from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Protocol

from prayer_times import DailyPrayerTimes, LocationInfo, resolve_location

LOGGER = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """Neither prayer-time source could produce times for a date."""

    def __init__(self, target_date: date) -> None:
        super().__init__(f"No prayer time source available for {target_date.isoformat()}")
        self.date = target_date


class AuthoritativeSource(Protocol):
    def lookup(self, target_date: date) -> Optional[DailyPrayerTimes]:
        ...


class ComputedSource(Protocol):
    def lookup(self, target_date: date, latitude: float, longitude: float) -> DailyPrayerTimes:
        ...


class PrayerTimeResolver:
    """Authoritative source first; computed source when it has no entry or fails."""

    def __init__(self, authoritative: AuthoritativeSource, computed: ComputedSource) -> None:
        self._authoritative = authoritative
        self._computed = computed

    def resolve(self, target_date: date, location: Optional[LocationInfo] = None) -> DailyPrayerTimes:
        try:
            official = self._authoritative.lookup(target_date)
        except Exception:
            LOGGER.warning("Official timetable failed for %s; using computed times", target_date, exc_info=True)
        else:
            if official is not None:
                LOGGER.debug("Using official prayer times for %s", target_date)
                return official
            LOGGER.debug("Official timetable has no entry for %s; using computed times", target_date)

        location = resolve_location(location)
        try:
            computed = self._computed.lookup(target_date, location.latitude, location.longitude)
        except Exception as exc:
            LOGGER.error("All prayer time sources failed for %s (%s, %s)", target_date, location.latitude, location.longitude)
            raise SourceUnavailable(target_date) from exc
        LOGGER.debug("Using computed prayer times for %s", target_date)
        return computed
