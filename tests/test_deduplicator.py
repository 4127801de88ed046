import unittest

from app.core.deduplicator import DispatchDeduplicator
from app.core.models import DispatchKey
from app.core.reminders import ReminderManager
from tests.fakes import FakeClock


KEY = DispatchKey("p1", "Lisinopril", "08:00")


async def noop():
    pass


class TestDispatchDeduplicator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.reminders = ReminderManager(delay_seconds=60)
        self.dedup = DispatchDeduplicator(self.reminders, clock=self.clock)

    def tearDown(self):
        self.reminders.cancel_all()

    def test_record_blocks_repeat_dispatch(self):
        self.dedup.rollover("2026-10-19 08:00")
        self.assertTrue(self.dedup.should_dispatch(KEY))

        self.dedup.record_dispatch(KEY)

        self.assertFalse(self.dedup.should_dispatch(KEY))
        self.assertTrue(self.dedup.should_dispatch(KEY._replace(patient_id="p2")))

    def test_same_minute_does_not_clear(self):
        self.dedup.rollover("2026-10-19 08:00")
        self.dedup.record_dispatch(KEY)

        self.assertFalse(self.dedup.rollover("2026-10-19 08:00"))
        self.assertIn(KEY, self.dedup)

    def test_new_minute_clears_without_pending_reminders(self):
        self.dedup.rollover("2026-10-19 08:00")
        self.dedup.record_dispatch(KEY)

        self.assertTrue(self.dedup.rollover("2026-10-19 08:01"))
        self.assertTrue(self.dedup.should_dispatch(KEY))
        self.assertEqual(len(self.dedup), 0)

    async def test_pending_reminder_defers_clear(self):
        self.dedup.rollover("2026-10-19 08:00")
        self.dedup.record_dispatch(KEY)
        self.reminders.arm(KEY, noop)

        self.assertFalse(self.dedup.rollover("2026-10-19 08:01"))
        self.assertFalse(self.dedup.should_dispatch(KEY))

        self.reminders.cancel_all()
        self.assertTrue(self.dedup.rollover("2026-10-19 08:02"))
        self.assertTrue(self.dedup.should_dispatch(KEY))


if __name__ == '__main__':
    unittest.main()
