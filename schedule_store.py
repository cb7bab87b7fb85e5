"""Persisted record of scheduled prayer notifications."""
from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

LOGGER = logging.getLogger(__name__)

NOTIFICATION_STORAGE_KEY = "scheduled_notifications"
METADATA_STORAGE_KEY = "notification_metadata"
DEFAULT_COVERAGE_THRESHOLD = 3


class StoreWriteFailed(Exception):
    """The record list and metadata could not be persisted."""


class NotificationKind(str, enum.Enum):
    REMINDER = "reminder"
    EVENT = "event"


@dataclass(frozen=True)
class NotificationRecord:
    id: str
    prayer_name: str
    kind: NotificationKind
    scheduled_for: datetime
    date: date

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "prayer_name": self.prayer_name,
            "kind": self.kind.value,
            "scheduled_for": self.scheduled_for.isoformat(),
            "date": self.date.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NotificationRecord":
        return cls(
            id=str(payload["id"]),
            prayer_name=str(payload["prayer_name"]),
            kind=NotificationKind(payload["kind"]),
            scheduled_for=datetime.fromisoformat(payload["scheduled_for"]),
            date=date.fromisoformat(payload["date"]),
        )


@dataclass(frozen=True)
class ScheduleMetadata:
    last_scheduled_date: date
    scheduled_dates: Tuple[date, ...] = field(default_factory=tuple)
    scheduled_count: int = 0
    last_updated: Optional[datetime] = None

    @classmethod
    def for_records(
        cls,
        records: Iterable[NotificationRecord],
        last_scheduled_date: date,
        last_updated: Optional[datetime] = None,
    ) -> "ScheduleMetadata":
        records = list(records)
        return cls(
            last_scheduled_date=last_scheduled_date,
            scheduled_dates=tuple(sorted({record.date for record in records})),
            scheduled_count=len(records),
            last_updated=last_updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_scheduled_date": self.last_scheduled_date.isoformat(),
            "scheduled_dates": [day.isoformat() for day in self.scheduled_dates],
            "scheduled_count": self.scheduled_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ScheduleMetadata":
        last_updated = payload.get("last_updated")
        return cls(
            last_scheduled_date=date.fromisoformat(payload["last_scheduled_date"]),
            scheduled_dates=tuple(sorted({date.fromisoformat(day) for day in payload.get("scheduled_dates") or []})),
            scheduled_count=int(payload.get("scheduled_count", 0)),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )


class MemoryStorage:
    """Volatile key/value storage."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def set_many(self, values: Mapping[str, str]) -> None:
        self._values.update(values)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._values.pop(key, None)


class JsonFileStorage:
    """Key/value storage kept in one JSON file, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, str]) -> None:
        with self._lock:
            payload = self._read()
            payload.update(values)
            self._write(payload)

    def delete(self, key: str) -> None:
        self.delete_many([key])

    def delete_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            payload = self._read()
            removed = [key for key in keys if payload.pop(key, None) is not None]
            if removed:
                self._write(payload)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError):
            LOGGER.warning("Unreadable storage file %s; treating as empty", self._path, exc_info=True)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write(self, payload: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=self._path.name, suffix=".tmp", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


class ScheduleStore:
    """Reads and writes the scheduled notification list and its metadata."""

    def __init__(self, storage, coverage_threshold: int = DEFAULT_COVERAGE_THRESHOLD) -> None:
        self._storage = storage
        self.coverage_threshold = coverage_threshold
        self._commit_lock = threading.Lock()

    def has_sufficient_future_coverage(self, today: date, threshold: Optional[int] = None) -> bool:
        threshold = self.coverage_threshold if threshold is None else threshold
        metadata = self.metadata()
        if metadata is None:
            LOGGER.debug("No notification metadata found, scheduling needed")
            return False
        future_dates = [day for day in metadata.scheduled_dates if day >= today]
        enough = len(future_dates) >= threshold
        LOGGER.info(
            "Existing notifications: %d future dates (need %d), %d total, last scheduled %s",
            len(future_dates),
            threshold,
            metadata.scheduled_count,
            metadata.last_scheduled_date,
        )
        return enough

    def commit(self, records: List[NotificationRecord], metadata: ScheduleMetadata) -> None:
        serialized = {
            NOTIFICATION_STORAGE_KEY: json.dumps([record.to_dict() for record in records]),
            METADATA_STORAGE_KEY: json.dumps(metadata.to_dict()),
        }
        with self._commit_lock:
            try:
                self._storage.set_many(serialized)
            except Exception as exc:
                raise StoreWriteFailed(f"Could not persist {len(records)} notification records") from exc
        LOGGER.debug("Saved %d notifications across %d dates", len(records), len(metadata.scheduled_dates))

    def replace_records(self, records: List[NotificationRecord], today: date) -> None:
        """Rewrite the record list, deriving the metadata dates and count from it.

        *today* becomes the last scheduled date when no metadata exists yet.
        """
        previous = self.metadata()
        metadata = ScheduleMetadata.for_records(
            records,
            last_scheduled_date=previous.last_scheduled_date if previous else today,
            last_updated=previous.last_updated if previous else None,
        )
        self.commit(records, metadata)

    def records(self) -> List[NotificationRecord]:
        raw = self._storage.get(NOTIFICATION_STORAGE_KEY)
        if not raw:
            return []
        try:
            return [NotificationRecord.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError):
            LOGGER.warning("Discarding unreadable notification records", exc_info=True)
            return []

    def records_for_date(self, target_date: date) -> List[NotificationRecord]:
        return [record for record in self.records() if record.date == target_date]

    def metadata(self) -> Optional[ScheduleMetadata]:
        raw = self._storage.get(METADATA_STORAGE_KEY)
        if not raw:
            return None
        try:
            return ScheduleMetadata.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            LOGGER.warning("Discarding unreadable notification metadata", exc_info=True)
            return None

    def clear(self) -> None:
        with self._commit_lock:
            self._storage.delete_many([METADATA_STORAGE_KEY, NOTIFICATION_STORAGE_KEY])
        LOGGER.debug("Cleared notification storage")
