"""
Medication dispensing scheduler.

Polls every patient's medication timetable on a fixed interval and, when a
dose is due in the current minute, actuates the dispenser exactly once and
arms a follow-up reminder. Dispatch is idempotent within the matching
window even with sub-minute polling, and ticks never overlap.
"""

import asyncio
from typing import Optional

from app.config import settings
from app.core.deduplicator import DispatchDeduplicator
from app.core.models import DispatchKey, PatientSchedule, ResolvedTime
from app.core.reminders import ReminderManager
from app.core.time_resolver import TimeResolver
from app.db.schedule_store import ScheduleStore, StoreError
from app.hardware.actuator import ActuatorChannel, HardwareError
from app.utils.logger import (
    get_logger,
    log_dose_dispensed,
    log_dispatch_failed,
    log_reminder_scheduled,
    log_reminder_fired,
    log_error
)


logger = get_logger(__name__)


class MedicationScheduler:
    """
    Orchestrates store reads, time matching, deduplication, dispensing
    and reminders.

    All mutable dispatch state lives on the instance. Collaborators are
    injected so tests can swap in a fake clock, store and actuator.

    Lifecycle: start() spawns the tick loop and returns its task as the
    handle; stop() cancels the loop and every pending reminder. Both are
    synchronous and safe to call from a signal handler.
    """

    def __init__(
        self,
        store: ScheduleStore,
        actuator: ActuatorChannel,
        resolver: Optional[TimeResolver] = None,
        reminders: Optional[ReminderManager] = None,
        deduplicator: Optional[DispatchDeduplicator] = None,
        check_interval: Optional[float] = None
    ):
        self.store = store
        self.actuator = actuator
        self.resolver = TimeResolver() if resolver is None else resolver
        self.reminders = (
            ReminderManager(clock=self.resolver.clock) if reminders is None else reminders
        )
        self.deduplicator = (
            DispatchDeduplicator(self.reminders, clock=self.resolver.clock)
            if deduplicator is None else deduplicator
        )
        self.check_interval = (
            settings.check_interval if check_interval is None else check_interval
        )

        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._tick_in_progress = False
        self._stop_requested = False

    # ---------- lifecycle ----------

    def start(self) -> asyncio.Task:
        """
        Start the tick loop: one immediate check, then one per interval.

        Must be called from inside the running event loop. Calling it again
        while running returns the existing handle.

        Returns:
            Handle to pass to stop()
        """
        if self.running and self._loop_task is not None:
            logger.warning("Medication scheduler already running, ignoring start()")
            return self._loop_task

        self.running = True
        self._stop_requested = False
        logger.info(
            f"Starting medication scheduler (checking every {self.check_interval:g}s, "
            f"reminder delay {self.reminders.delay_seconds:g}s)"
        )
        self._loop_task = asyncio.create_task(self._run_loop())
        return self._loop_task

    def stop(self, handle: Optional[asyncio.Task] = None) -> None:
        """
        Stop ticking and cancel all pending reminders.

        A trigger write already in flight is allowed to finish, but the
        tick that issued it will not arm a new reminder.

        Args:
            handle: Task returned by start()
        """
        self.running = False
        self._stop_requested = True

        for task in (handle, self._loop_task):
            if task is not None and not task.done():
                task.cancel()
        self._loop_task = None

        self.reminders.cancel_all()
        logger.info("Medication scheduler stopped")

    async def _run_loop(self):
        # Ticks are pinned to start + n * interval so the period does not
        # stretch by the time spent launching each one
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while self.running:
            self._launch_tick()
            next_at += self.check_interval
            now = loop.time()
            if next_at < now - self.check_interval:
                # Event loop was blocked for several periods; resync
                next_at = now
            await asyncio.sleep(max(0.0, next_at - now))

    def _launch_tick(self) -> None:
        if self._tick_in_progress:
            logger.warning("Previous medication check still running, skipping this tick")
            return
        self._tick_in_progress = True
        self._tick_task = asyncio.create_task(self._tick())

    # ---------- one tick ----------

    async def check_medication_times(self) -> int:
        """
        Run one scan unless another scan is already in progress.

        Returns:
            Number of doses dispensed by this scan
        """
        if self._tick_in_progress:
            logger.warning("Medication check already in progress, skipping")
            return 0
        self._tick_in_progress = True
        return await self._tick()

    async def _tick(self) -> int:
        try:
            return await self._scan()
        except Exception as e:
            logger.error(f"Error checking medication times: {e}", exc_info=True)
            return 0
        finally:
            self._tick_in_progress = False

    async def _scan(self) -> int:
        now = self.resolver.resolve_now()
        self.deduplicator.rollover(now.minute_marker)

        await self.actuator.maybe_reconnect()

        try:
            patients = await self.store.fetch_active_schedules()
        except StoreError as e:
            log_error("fetch_schedules", str(e))
            return 0

        logger.debug(
            f"Checking {len(patients)} patients for {now.weekday} "
            f"{sorted(now.times)}"
        )

        dispensed = 0
        for patient in patients:
            dispensed += await self._check_patient(patient, now)

        if dispensed:
            logger.info(f"Dispensed {dispensed} doses for {now.minute_marker}")
        return dispensed

    async def _check_patient(self, patient: PatientSchedule, now: ResolvedTime) -> int:
        dispensed = 0
        for name, entry in patient.medications.items():
            if self._stop_requested:
                break
            if not entry.active:
                continue

            todays_times = entry.times_for(now.weekday)
            matched_time = next((t for t in todays_times if t in now.times), None)
            if matched_time is None:
                continue

            key = DispatchKey(patient.patient_id, name, matched_time)
            if not self.deduplicator.should_dispatch(key):
                continue

            if await self._dispatch(key, patient.label):
                dispensed += 1
        return dispensed

    async def _dispatch(self, key: DispatchKey, label: str) -> bool:
        logger.info(
            f"Time match for {key.medication} at {key.matched_time} for patient {label}"
        )

        # Recorded before the write so a failed dose is not retried this window
        self.deduplicator.record_dispatch(key)

        try:
            await self.actuator.trigger()
        except HardwareError as e:
            log_dispatch_failed(label, key.medication, str(e))
            return False

        log_dose_dispensed(label, key.medication, key.matched_time)

        if self._stop_requested:
            logger.info(f"Scheduler stopping, no reminder armed for {key}")
            return True

        async def follow_up():
            await self._dispense_follow_up(key, label)

        if self.reminders.arm(key, follow_up):
            log_reminder_scheduled(label, key.medication, self.reminders.delay_seconds / 60)
        return True

    async def _dispense_follow_up(self, key: DispatchKey, label: str):
        logger.info(f"Follow-up reminder for {key.medication} for patient {label}")
        try:
            await self.actuator.trigger()
        except HardwareError as e:
            log_dispatch_failed(label, key.medication, f"follow-up: {e}")
            log_reminder_fired(label, key.medication, success=False)
            return
        log_reminder_fired(label, key.medication, success=True)
