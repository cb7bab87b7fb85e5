"""Officially published, date-indexed prayer timetable.

The timetable is published once per year as a list of daily records::

    {"date": "22/12/2025", "subuh": "5:45", "syuruk": "7:07", "zohor": "13:06",
     "asar": "16:29", "maghrib": "19:03", "isyak": "20:18"}

Records are read from ``prayer_times_<year>.json`` in a local data directory,
optionally refreshed from a remote URL first. Field names are localized and
are mapped onto the canonical prayer names before leaving this module.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from prayer_times import DailyPrayerTimes

LOGGER = logging.getLogger(__name__)

OFFICIAL_FIELD_MAP = {
    "subuh": "Fajr",
    "syuruk": "Sunrise",
    "zohor": "Dhuhr",
    "asar": "Asr",
    "maghrib": "Maghrib",
    "isyak": "Isha",
}


def official_date_key(target_date: date) -> str:
    """Format a date the way the timetable indexes it (``D/M/YYYY``)."""
    return f"{target_date.day}/{target_date.month}/{target_date.year}"


class OfficialTimetable:
    """Looks up official prayer times by date, caching each year's table."""

    source_name = "official"

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        remote_url: Optional[str] = None,
        timeout: int = 10,
    ) -> None:
        self._data_dir = Path(data_dir) if data_dir else None
        self._remote_url = remote_url
        self._timeout = timeout
        self._years: Dict[int, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def lookup(self, target_date: date) -> Optional[DailyPrayerTimes]:
        """Return the official times for *target_date*, or ``None`` if unpublished."""
        table = self._table_for_year(target_date.year)
        record = table.get(official_date_key(target_date))
        if record is None:
            LOGGER.debug("No official timetable entry for %s", target_date)
            return None
        return DailyPrayerTimes.from_timings(target_date, record, OFFICIAL_FIELD_MAP, self.source_name)

    def refresh(self, year: Optional[int] = None) -> None:
        """Drop cached tables so the next lookup reloads them."""
        with self._lock:
            if year is None:
                self._years.clear()
            else:
                self._years.pop(year, None)

    def _table_for_year(self, year: int) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            if year not in self._years:
                self._years[year] = self._index(self._load_year(year))
                LOGGER.debug("Loaded %d official entries for %s", len(self._years[year]), year)
            return self._years[year]

    def _load_year(self, year: int) -> List[Dict[str, Any]]:
        records = self._load_year_from_remote(year)
        if records:
            return records
        return self._load_year_from_file(year)

    def _load_year_from_remote(self, year: int) -> List[Dict[str, Any]]:
        if not self._remote_url:
            return []
        url = self._remote_url.format(year=year)
        try:
            LOGGER.debug("Requesting official timetable from %s", url)
            response = requests.get(url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError):
            LOGGER.warning("Failed to load official timetable for %s from %s", year, url, exc_info=True)
            return []
        records = payload.get("data", []) if isinstance(payload, dict) else payload
        return list(records) if isinstance(records, list) else []

    def _load_year_from_file(self, year: int) -> List[Dict[str, Any]]:
        if not self._data_dir:
            return []
        path = self._data_dir / f"prayer_times_{year}.json"
        if not path.exists():
            LOGGER.debug("Official timetable file %s not found", path)
            return []
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        records = payload.get("data", []) if isinstance(payload, dict) else payload
        return list(records) if isinstance(records, list) else []

    @staticmethod
    def _index(records: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        indexed: Dict[str, Dict[str, Any]] = {}
        for record in records:
            if not isinstance(record, dict):
                continue
            key = str(record.get("date") or "").strip()
            if key:
                indexed[_canonical_key(key)] = record
        return indexed


def _canonical_key(raw: str) -> str:
    # "02/01/2025" and "2/1/2025" index the same day
    parts = raw.split("/")
    if len(parts) != 3 or not all(part.strip().isdigit() for part in parts):
        return raw
    day, month, year = (int(part) for part in parts)
    return f"{day}/{month}/{year}"
