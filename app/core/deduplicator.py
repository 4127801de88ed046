"""
In-memory dispatch deduplication for the medication scheduler.

Schedule times are minute-granular while the scheduler may tick many times
per minute. The deduplicator remembers which (patient, medication, time)
slots already fired so each due dose actuates the dispenser once.
"""

from datetime import datetime
from typing import Callable, Dict, Optional

from app.core.models import DispatchKey
from app.core.reminders import ReminderManager
from app.utils.logger import get_logger


logger = get_logger(__name__)


class DispatchDeduplicator:
    """
    Tracks dispatched slots for the current matching window.

    Records are cleared when the minute rolls over, except while any
    follow-up reminder is pending. In that case the clear is skipped so a
    fresh dispatch cannot race the outstanding reminder, and the window
    stretches until a rollover happens with no reminders pending.
    """

    def __init__(
        self,
        reminders: ReminderManager,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.reminders = reminders
        self.clock = clock
        self._records: Dict[DispatchKey, datetime] = {}
        self._last_minute: Optional[str] = None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: DispatchKey) -> bool:
        return key in self._records

    def should_dispatch(self, key: DispatchKey) -> bool:
        """
        Check whether a due slot still needs to fire.

        Args:
            key: Candidate dispatch

        Returns:
            True if the slot has not fired in the current window
        """
        dispatched_at = self._records.get(key)
        if dispatched_at is None:
            return True

        seconds_ago = int((self.clock() - dispatched_at).total_seconds())
        logger.debug(f"Already dispatched {key} {seconds_ago} seconds ago, skipping")
        return False

    def record_dispatch(self, key: DispatchKey) -> None:
        self._records[key] = self.clock()

    def rollover(self, minute_marker: str) -> bool:
        """
        Expire records when the minute changes.

        Args:
            minute_marker: Identifier of the current calendar minute

        Returns:
            True if records were cleared on this call
        """
        if minute_marker == self._last_minute:
            return False

        self._last_minute = minute_marker

        if self.reminders.pending_count:
            logger.info(
                f"New minute {minute_marker}: keeping {len(self._records)} dispatch "
                f"records due to {self.reminders.pending_count} pending reminders"
            )
            return False

        if self._records:
            logger.debug(
                f"New minute {minute_marker}: clearing {len(self._records)} dispatch records"
            )
        self._records.clear()
        return True
