"""Cancelling scheduled prayer notifications together with their stored records."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable

from notifier import Notifier
from schedule_store import ScheduleStore

LOGGER = logging.getLogger(__name__)


class CancellationController:
    def __init__(self, notifier: Notifier, store: ScheduleStore, clock: Callable[[], datetime]) -> None:
        self._notifier = notifier
        self._store = store
        self._clock = clock

    def cancel_all(self) -> None:
        """Cancel every pending notification and clear the store."""
        try:
            pending = len(self._notifier.list_pending())
            self._notifier.cancel_all()
            self._store.clear()
        except Exception:
            LOGGER.exception("Error cancelling notifications")
            return
        LOGGER.info("Cancelled %d pending notifications and cleared storage", pending)

    def cancel_for_date(self, target_date: date) -> int:
        """Cancel the tracked notifications of *target_date*; return how many were cancelled."""
        try:
            records = self._store.records()
        except Exception:
            LOGGER.exception("Error reading notifications to cancel for %s", target_date)
            return 0

        to_cancel = [record for record in records if record.date == target_date]
        LOGGER.debug("Found %d notifications to cancel for %s", len(to_cancel), target_date)
        for record in to_cancel:
            try:
                self._notifier.cancel(record.id)
            except Exception:
                LOGGER.warning(
                    "Failed to cancel notification %s (%s %s)",
                    record.id,
                    record.prayer_name,
                    record.kind.value,
                    exc_info=True,
                )

        remaining = [record for record in records if record.date != target_date]
        try:
            self._store.replace_records(remaining, self._clock().date())
        except Exception:
            LOGGER.exception("Error saving remaining notifications after cancelling %s", target_date)
        LOGGER.info("Cancelled %d notifications for %s, %d remaining", len(to_cancel), target_date, len(remaining))
        return len(to_cancel)
