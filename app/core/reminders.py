"""
Delayed follow-up reminders for dispensed doses.

Each reminder re-triggers the dispenser once, a fixed delay after the
initial dispatch, to prompt the patient to take the dose. Reminders live
in process memory only; cancelling them at shutdown means the follow-up
actuation does not happen.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from app.config import settings
from app.core.models import DispatchKey
from app.utils.logger import get_logger, log_reminders_cancelled


logger = get_logger(__name__)

ReminderAction = Callable[[], Awaitable[None]]


@dataclass
class PendingReminder:
    """Handle for one armed reminder."""

    key: DispatchKey
    due_at: datetime
    timer: asyncio.TimerHandle
    task: Optional[asyncio.Task] = None

    @property
    def firing(self) -> bool:
        return self.task is not None


class ReminderManager:
    """
    Arms, fires and cancels one-shot reminders keyed by DispatchKey.

    At most one reminder is pending per key. The action runs in its own
    task once the timer expires; the key stays pending until the action
    has finished so the deduplicator keeps treating the slot as handled.
    """

    def __init__(
        self,
        delay_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.delay_seconds = (
            settings.reminder_delay_seconds if delay_seconds is None else delay_seconds
        )
        self.clock = clock
        self._pending: Dict[DispatchKey, PendingReminder] = {}

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, key: DispatchKey) -> bool:
        return key in self._pending

    def arm(
        self,
        key: DispatchKey,
        action: ReminderAction,
        delay: Optional[float] = None
    ) -> bool:
        """
        Schedule action to run once after delay seconds.

        Must be called from inside the running event loop.

        Args:
            key: Dispatch the reminder follows up on
            action: Coroutine function performing the follow-up trigger
            delay: Seconds to wait, defaults to the configured delay

        Returns:
            True if armed, False if a reminder was already pending for key
        """
        if key in self._pending:
            logger.debug(f"Reminder already pending for {key}, not re-arming")
            return False

        delay = self.delay_seconds if delay is None else delay
        loop = asyncio.get_running_loop()
        timer = loop.call_later(delay, self._on_due, key, action)
        self._pending[key] = PendingReminder(
            key=key,
            due_at=self.clock() + timedelta(seconds=delay),
            timer=timer,
        )
        logger.debug(f"Armed reminder for {key} in {delay:g}s")
        return True

    def _on_due(self, key: DispatchKey, action: ReminderAction):
        reminder = self._pending.get(key)
        if reminder is None:
            return
        reminder.task = asyncio.create_task(self._fire(reminder, action))

    async def _fire(self, reminder: PendingReminder, action: ReminderAction):
        key = reminder.key
        try:
            await action()
        except Exception as e:
            logger.error(f"Reminder action for {key} failed: {e}", exc_info=True)
        finally:
            if self._pending.get(key) is reminder:
                del self._pending[key]

    def cancel_all(self) -> int:
        """
        Cancel every pending reminder and clear the map.

        A reminder whose action is already running is cancelled too. The
        actuator does not start a write for a cancelled caller and holds its
        lock until a write already handed to the port has finished, so no
        reminder actuates after this returns.

        Returns:
            Number of reminders cancelled
        """
        reminders = list(self._pending.values())
        self._pending.clear()

        for reminder in reminders:
            if reminder.firing:
                reminder.task.cancel()
            else:
                reminder.timer.cancel()
            logger.debug(
                f"Cancelled reminder for {reminder.key} due at "
                f"{reminder.due_at:%Y-%m-%d %H:%M:%S}"
            )

        if reminders:
            log_reminders_cancelled(len(reminders))
        return len(reminders)
