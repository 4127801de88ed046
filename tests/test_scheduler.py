import asyncio
import time
import unittest
from unittest import mock

from app.core.deduplicator import DispatchDeduplicator
from app.core.models import DispatchKey
from app.core.reminders import ReminderManager
from app.core.scheduler import MedicationScheduler
from app.core.time_resolver import TimeResolver
from app.db.schedule_store import StoreError
from tests.fakes import FakeActuator, FakeClock, FakeStore, make_patient


LISINOPRIL_KEY = DispatchKey("p1", "Lisinopril", "08:00")


def lisinopril(active=True, schedule=None):
    return make_patient("p1", {
        "Lisinopril": (active, schedule or {"Monday": ["08:00"]}),
    })


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    reminder_delay = 60.0

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = FakeStore()
        self.actuator = FakeActuator()
        self.scheduler = MedicationScheduler(
            self.store,
            self.actuator,
            resolver=TimeResolver(self.clock),
            reminders=ReminderManager(delay_seconds=self.reminder_delay),
            check_interval=3600,
        )

    async def asyncTearDown(self):
        self.scheduler.stop()


class TestConstruction(unittest.IsolatedAsyncioTestCase):
    def test_empty_collaborators_are_used_as_given(self):
        reminders = ReminderManager(delay_seconds=0.05)
        deduplicator = DispatchDeduplicator(reminders)

        scheduler = MedicationScheduler(
            FakeStore(),
            FakeActuator(),
            reminders=reminders,
            deduplicator=deduplicator,
            check_interval=3600,
        )

        self.assertIs(scheduler.reminders, reminders)
        self.assertIs(scheduler.deduplicator, deduplicator)
        self.assertEqual(scheduler.reminders.delay_seconds, 0.05)

    def test_defaults_share_resolver_clock(self):
        clock = FakeClock()
        scheduler = MedicationScheduler(
            FakeStore(), FakeActuator(), resolver=TimeResolver(clock)
        )

        self.assertIs(scheduler.reminders.clock, clock)
        self.assertIs(scheduler.deduplicator.reminders, scheduler.reminders)


class TestDispatchMatching(SchedulerTestCase):
    async def test_due_dose_triggers_once_and_arms_reminder(self):
        self.store.schedules = [lisinopril()]

        dispensed = await self.scheduler.check_medication_times()

        self.assertEqual(dispensed, 1)
        self.assertEqual(self.actuator.trigger_calls, 1)
        self.assertEqual(self.scheduler.reminders.pending_count, 1)
        self.assertTrue(self.scheduler.reminders.is_pending(LISINOPRIL_KEY))

    async def test_inactive_medication_never_triggers(self):
        self.store.schedules = [lisinopril(active=False)]

        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 0)
        self.assertEqual(self.scheduler.reminders.pending_count, 0)

    async def test_other_weekday_does_not_trigger(self):
        self.store.schedules = [lisinopril(schedule={"Tuesday": ["08:00"]})]

        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 0)

    async def test_non_matching_time_does_not_trigger(self):
        self.store.schedules = [lisinopril(schedule={"Monday": ["08:01", "8:00 PM"]})]

        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 0)

    async def test_twelve_hour_entry_matches(self):
        self.store.schedules = [lisinopril(schedule={"Monday": ["8:00 AM"]})]

        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 1)
        self.assertTrue(self.scheduler.reminders.is_pending(
            DispatchKey("p1", "Lisinopril", "8:00 AM")
        ))

    async def test_duplicate_representations_dispense_once(self):
        self.store.schedules = [lisinopril(schedule={"Monday": ["08:00 AM", "08:00"]})]

        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 1)

    async def test_each_patient_medication_dispatches(self):
        self.store.schedules = [
            lisinopril(),
            make_patient("p2", {
                "Metformin": (True, {"Monday": ["08:00"]}),
                "Aspirin": (True, {"Monday": ["09:00"]}),
            }),
        ]

        dispensed = await self.scheduler.check_medication_times()

        self.assertEqual(dispensed, 2)
        self.assertEqual(self.actuator.trigger_calls, 2)
        self.assertEqual(self.scheduler.reminders.pending_count, 2)


class TestDeduplication(SchedulerTestCase):
    async def test_repeated_ticks_in_same_minute_trigger_once(self):
        self.store.schedules = [lisinopril()]

        await self.scheduler.check_medication_times()
        self.clock.advance(seconds=30)
        await self.scheduler.check_medication_times()
        self.clock.advance(seconds=29)
        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 1)
        self.assertEqual(self.scheduler.reminders.pending_count, 1)

    async def test_pending_reminder_keeps_record_across_rollover(self):
        self.store.schedules = [lisinopril()]

        await self.scheduler.check_medication_times()
        self.clock.advance(minutes=1)
        await self.scheduler.check_medication_times()

        self.assertIn(LISINOPRIL_KEY, self.scheduler.deduplicator)
        self.assertFalse(self.scheduler.deduplicator.should_dispatch(LISINOPRIL_KEY))

    async def test_same_slot_fires_again_next_week(self):
        self.store.schedules = [lisinopril()]

        await self.scheduler.check_medication_times()
        self.scheduler.reminders.cancel_all()
        self.clock.advance(days=7)
        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 2)


class TestFailures(SchedulerTestCase):
    async def test_store_error_skips_tick(self):
        self.store.schedules = [lisinopril()]
        self.store.error = StoreError("connection refused")

        self.assertEqual(await self.scheduler.check_medication_times(), 0)
        self.assertEqual(self.actuator.trigger_calls, 0)

        self.store.error = None
        self.assertEqual(await self.scheduler.check_medication_times(), 1)

    async def test_hardware_error_is_not_retried_in_window(self):
        self.store.schedules = [lisinopril()]
        self.actuator.fail = True

        self.assertEqual(await self.scheduler.check_medication_times(), 0)
        await self.scheduler.check_medication_times()

        self.assertEqual(self.actuator.trigger_calls, 1)
        self.assertEqual(self.scheduler.reminders.pending_count, 0)
        self.assertIn(LISINOPRIL_KEY, self.scheduler.deduplicator)

    async def test_unexpected_error_does_not_escape_tick(self):
        self.store.error = RuntimeError("bad document")

        self.assertEqual(await self.scheduler.check_medication_times(), 0)
        self.assertFalse(self.scheduler._tick_in_progress)


class TestReminderFollowUp(SchedulerTestCase):
    reminder_delay = 0.05

    async def test_exactly_one_reminder_fires(self):
        self.store.schedules = [lisinopril()]

        for _ in range(3):
            await self.scheduler.check_medication_times()
        await asyncio.sleep(0.15)
        for _ in range(3):
            await self.scheduler.check_medication_times()
        await asyncio.sleep(0.15)

        # Initial dispense plus a single follow-up
        self.assertEqual(self.actuator.trigger_calls, 2)
        self.assertEqual(self.scheduler.reminders.pending_count, 0)

    async def test_stop_cancels_pending_reminders(self):
        self.store.schedules = [lisinopril()]
        await self.scheduler.check_medication_times()

        self.scheduler.stop()
        await asyncio.sleep(0.15)

        self.assertEqual(self.actuator.trigger_calls, 1)

    async def test_stop_during_trigger_arms_no_reminder(self):
        self.store.schedules = [lisinopril()]
        self.actuator.gate = asyncio.Event()

        tick = asyncio.create_task(self.scheduler.check_medication_times())
        await asyncio.sleep(0.01)
        self.scheduler.stop()
        self.actuator.gate.set()
        await tick
        await asyncio.sleep(0.15)

        self.assertEqual(self.actuator.trigger_calls, 1)
        self.assertEqual(self.scheduler.reminders.pending_count, 0)


class TestLifecycle(SchedulerTestCase):
    async def test_start_runs_immediate_check(self):
        self.store.schedules = [lisinopril()]

        handle = self.scheduler.start()
        await asyncio.sleep(0.05)

        self.assertTrue(self.scheduler.running)
        self.assertEqual(self.store.calls, 1)
        self.assertEqual(self.actuator.trigger_calls, 1)

        self.scheduler.stop(handle)
        with self.assertRaises(asyncio.CancelledError):
            await handle
        self.assertFalse(self.scheduler.running)

    async def test_start_twice_returns_same_handle(self):
        first = self.scheduler.start()
        second = self.scheduler.start()

        self.assertIs(first, second)

    async def test_overlapping_check_is_skipped(self):
        self.store.schedules = [lisinopril()]
        self.store.gate = asyncio.Event()

        first = asyncio.create_task(self.scheduler.check_medication_times())
        await asyncio.sleep(0.01)

        self.assertEqual(await self.scheduler.check_medication_times(), 0)
        self.assertEqual(self.store.calls, 1)

        self.store.gate.set()
        self.assertEqual(await first, 1)
        self.assertEqual(self.actuator.trigger_calls, 1)

    async def test_late_wakeups_do_not_accumulate(self):
        self.scheduler.check_interval = 0.01
        real_sleep = asyncio.sleep
        delays = []

        async def late_sleep(delay):
            delays.append(delay)
            # Every wakeup arrives 3ms late
            time.sleep(delay + 0.003)
            await real_sleep(0)
            if len(delays) >= 20:
                self.scheduler.running = False

        with mock.patch('app.core.scheduler.asyncio.sleep', late_sleep):
            handle = self.scheduler.start()
            await asyncio.wait_for(handle, timeout=2)

        self.assertEqual(len(delays), 20)
        # Later sleeps are shortened by the lateness of the previous wakeup
        self.assertTrue(all(d < 0.0085 for d in delays[1:]))
        elapsed = self.store.call_times[-1] - self.store.call_times[0]
        self.assertLess(elapsed, 19 * 0.01 + 0.02)

    async def test_slow_tick_suppresses_periodic_ticks(self):
        self.store.schedules = [lisinopril()]
        self.store.gate = asyncio.Event()
        self.scheduler.check_interval = 0.01

        handle = self.scheduler.start()
        await asyncio.sleep(0.1)

        self.assertEqual(self.store.calls, 1)

        self.store.gate.set()
        await asyncio.sleep(0.05)
        self.scheduler.stop(handle)

        self.assertGreater(self.store.calls, 1)
        self.assertEqual(self.actuator.trigger_calls, 1)


if __name__ == '__main__':
    unittest.main()
