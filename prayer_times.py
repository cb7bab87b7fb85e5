"""Canonical prayer-time model, the AlAdhan computed source and location helpers."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo as TzInfo
from typing import Dict, Mapping, Optional, Tuple

import pytz
import requests
from tzlocal import get_localzone_name

LOGGER = logging.getLogger(__name__)

ALADHAN_TIMINGS_URL = "https://api.aladhan.com/v1/timings"
IPINFO_URL = "https://ipinfo.io/json"

# Chronological order; every source is normalised onto these names.
PRAYER_ORDER = ["Fajr", "Sunrise", "Dhuhr", "Asr", "Maghrib", "Isha"]

ALADHAN_FIELD_MAP = {name: name for name in PRAYER_ORDER}

# Localized names used by the official timetable and older settings files.
PRAYER_ALIASES = {
    "subuh": "Fajr",
    "syuruk": "Sunrise",
    "zohor": "Dhuhr",
    "asar": "Asr",
    "isyak": "Isha",
}

CALCULATION_METHOD_SINGAPORE = 11
SCHOOL_SHAFI = 0

_ZONE_SUFFIX = re.compile(r"\s*\([A-Za-z+\-0-9]+\)\s*$")


@dataclass
class LocationInfo:
    city: str
    country: str
    latitude: Optional[float]
    longitude: Optional[float]
    timezone: Optional[str]


DEFAULT_LOCATION = LocationInfo(
    city="Singapore",
    country="Singapore",
    latitude=1.3521,
    longitude=103.8198,
    timezone="Asia/Singapore",
)


@dataclass(frozen=True)
class PrayerTime:
    name: str
    time: time


@dataclass(frozen=True)
class DailyPrayerTimes:
    """The six canonical prayer times of one calendar date."""

    date: date
    prayers: Tuple[PrayerTime, ...]
    source: str = field(default="unknown", compare=False)

    @classmethod
    def from_timings(
        cls,
        target_date: date,
        timings: Mapping[str, str],
        field_map: Mapping[str, str],
        source: str,
    ) -> "DailyPrayerTimes":
        """Build from a raw payload whose keys are mapped onto canonical names.

        ``field_map`` maps the payload's own key to the canonical prayer name.
        Raises ``ValueError`` if any of the six prayers is missing or unparsable.
        """
        canonical: Dict[str, time] = {}
        for raw_name, canonical_name in field_map.items():
            raw_value = timings.get(raw_name)
            if raw_value in (None, ""):
                continue
            canonical[canonical_name] = parse_time_of_day(str(raw_value))

        missing = [name for name in PRAYER_ORDER if name not in canonical]
        if missing:
            raise ValueError(f"{source} timings for {target_date} missing {', '.join(missing)}")

        prayers = tuple(PrayerTime(name=name, time=canonical[name]) for name in PRAYER_ORDER)
        return cls(date=target_date, prayers=prayers, source=source)

    def names(self) -> Tuple[str, ...]:
        return tuple(info.name for info in self.prayers)

    def time_of(self, name: str) -> time:
        for info in self.prayers:
            if info.name == name:
                return info.time
        raise KeyError(name)

    def instant(self, name: str, tzinfo: TzInfo, on_date: Optional[date] = None) -> datetime:
        """Return the aware instant of *name* on this date (or on *on_date*)."""
        naive = datetime.combine(on_date or self.date, self.time_of(name))
        return localize(naive, tzinfo)


class PrayerTimesService:
    """Computes prayer times from coordinates via the AlAdhan API."""

    source_name = "aladhan"

    def __init__(
        self,
        method: int = CALCULATION_METHOD_SINGAPORE,
        school: int = SCHOOL_SHAFI,
        timeout: int = 10,
    ) -> None:
        self.method = method
        self.school = school
        self.timeout = timeout

    def lookup(self, target_date: date, latitude: float, longitude: float) -> DailyPrayerTimes:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "method": self.method,
            "school": self.school,
            "date": target_date.strftime("%d-%m-%Y"),
        }
        LOGGER.debug("Requesting prayer times with params=%s", params)
        response = requests.get(ALADHAN_TIMINGS_URL, params=params, timeout=self.timeout)
        LOGGER.debug("Prayer times response status: %s", response.status_code)
        response.raise_for_status()

        payload = response.json()
        if payload.get("code") != 200:
            raise RuntimeError(f"Invalid response from AlAdhan API: {payload.get('status')}")

        data = payload.get("data", {}) or {}
        timings: Dict[str, str] = data.get("timings", {}) or {}
        gregorian = (data.get("date", {}) or {}).get("gregorian", {}) or {}
        resolved_date = _parse_api_date(gregorian.get("date"), target_date)
        if resolved_date != target_date:
            LOGGER.warning("AlAdhan returned %s for requested date %s", resolved_date, target_date)

        return DailyPrayerTimes.from_timings(target_date, timings, ALADHAN_FIELD_MAP, self.source_name)


def canonical_prayer_name(name: str) -> Optional[str]:
    """Map a canonical or localized prayer name onto its canonical form."""
    key = str(name).strip().lower()
    for canonical in PRAYER_ORDER:
        if canonical.lower() == key:
            return canonical
    return PRAYER_ALIASES.get(key)


def clean_time_string(time_str: str) -> str:
    """Normalise ``"5:30"``, ``"05:30 (SGT)"`` or ``"05:30:00"`` to ``"05:30"``."""
    cleaned = _ZONE_SUFFIX.sub("", time_str).strip()
    parts = cleaned.split(":")
    if len(parts) < 2:
        raise ValueError(f"Unrecognised time string: {time_str!r}")
    hours, minutes = parts[0].strip(), parts[1].strip()[:2]
    if not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Unrecognised time string: {time_str!r}")
    return f"{int(hours):02d}:{int(minutes):02d}"


def parse_time_of_day(time_str: str) -> time:
    hour, minute = map(int, clean_time_string(time_str).split(":"))
    return time(hour=hour, minute=minute)


def localize(naive: datetime, tzinfo: TzInfo) -> datetime:
    if hasattr(tzinfo, "localize"):
        return tzinfo.localize(naive)
    return naive.replace(tzinfo=tzinfo)


def resolve_timezone(location: Optional[LocationInfo]) -> TzInfo:
    """Return the location's timezone, else the system zone, else UTC."""
    timezone_name = location.timezone if location else None
    if timezone_name:
        try:
            return pytz.timezone(timezone_name)
        except pytz.UnknownTimeZoneError:
            LOGGER.warning("Unknown timezone '%s'; using system timezone", timezone_name)
    try:
        return pytz.timezone(get_localzone_name())
    except Exception:
        LOGGER.warning("Falling back to UTC for system timezone resolution")
        return pytz.UTC


def resolve_location(location: Optional[LocationInfo]) -> LocationInfo:
    """Return *location* when it has coordinates, else the default location."""
    if location is None or location.latitude is None or location.longitude is None:
        LOGGER.warning(
            "No usable location provided; using default %s (%s, %s)",
            DEFAULT_LOCATION.city,
            DEFAULT_LOCATION.latitude,
            DEFAULT_LOCATION.longitude,
        )
        return DEFAULT_LOCATION
    return location


def detect_location_from_ip(timeout: int = 5) -> LocationInfo:
    """Attempt to detect approximate location using the ipinfo.io service."""
    LOGGER.debug("Requesting IP-based location from ipinfo.io (timeout=%s)", timeout)
    response = requests.get(IPINFO_URL, timeout=timeout)
    LOGGER.debug("ipinfo.io response status: %s", response.status_code)
    response.raise_for_status()
    payload = response.json()

    loc_token = payload.get("loc", "0,0")
    latitude, longitude = map(float, loc_token.split(","))

    timezone = payload.get("timezone") or "UTC"
    try:
        pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Falling back to UTC for unknown timezone %s", timezone)
        timezone = "UTC"

    return LocationInfo(
        city=payload.get("city", ""),
        country=payload.get("country", ""),
        latitude=latitude,
        longitude=longitude,
        timezone=timezone,
    )


def build_location_from_config(config: Dict[str, object]) -> Optional[LocationInfo]:
    """Create a LocationInfo instance if the config contains the required data."""
    location_cfg = config.get("location") if isinstance(config, dict) else None
    if not isinstance(location_cfg, dict):
        return None

    try:
        return LocationInfo(
            city=str(location_cfg.get("city", "")),
            country=str(location_cfg.get("country", "")),
            latitude=_safe_float(location_cfg.get("latitude")),
            longitude=_safe_float(location_cfg.get("longitude")),
            timezone=str(location_cfg.get("timezone")) if location_cfg.get("timezone") else None,
        )
    except (KeyError, TypeError, ValueError):
        LOGGER.exception("Invalid location config: %s", location_cfg)
        return None


def _parse_api_date(value: Optional[str], default: date) -> date:
    try:
        return datetime.strptime(value, "%d-%m-%Y").date() if value else default
    except (TypeError, ValueError):
        return default


def _safe_float(value: Optional[object]) -> Optional[float]:
    try:
        if value in (None, ""):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None
