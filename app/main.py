"""
Main application loop for the medication dispensing service.

Wires the schedule store, the dispenser link and the scheduler together:
1. Connect to MongoDB
2. Open the serial link to the dispenser
3. Run the medication scheduler until a shutdown signal arrives

Hardware and database failures are logged and never stop the process.
"""

import asyncio
import signal
from typing import Optional

from app.config import settings
from app.core.scheduler import MedicationScheduler
from app.db.schedule_store import ScheduleStore
from app.hardware.actuator import ActuatorChannel, HardwareError
from app.utils.logger import get_logger


logger = get_logger(__name__)


class Application:
    """
    Main application orchestrator.

    Manages the lifecycle of the dispensing service:
    - MongoDB connection for medication timetables
    - Serial link to the dispenser
    - Medication scheduler and its reminders
    - Graceful shutdown on signals
    """

    def __init__(
        self,
        store: Optional[ScheduleStore] = None,
        actuator: Optional[ActuatorChannel] = None,
        scheduler: Optional[MedicationScheduler] = None
    ):
        self.store = ScheduleStore() if store is None else store
        self.actuator = ActuatorChannel() if actuator is None else actuator
        self.scheduler = (
            MedicationScheduler(self.store, self.actuator) if scheduler is None else scheduler
        )
        self.scheduler_handle: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self._shutdown_done = False

    async def initialize(self):
        """
        Initialize all system components.

        The dispenser may be unplugged at startup; the scheduler keeps
        trying to reopen it on every tick.
        """
        logger.info("Initializing application...")

        await self.store.connect()
        logger.info("Schedule store connected")

        try:
            await self.actuator.open()
        except HardwareError as e:
            logger.error(f"Dispenser initialization error: {e}")
            logger.warning("Continuing without dispenser, will retry on each check")

        logger.info("Application initialized successfully")

    async def run(self):
        """
        Start the scheduler and block until shutdown() is called.
        """
        logger.info("Starting medication dispensing service")
        logger.info(f"Serial port: {self.actuator.port} @ {self.actuator.baud_rate}")
        logger.info(f"Check interval: {settings.check_interval:g}s")

        self.scheduler_handle = self.scheduler.start()
        await self._stopped.wait()

    async def shutdown(self):
        """
        Gracefully shutdown all system components.

        Stops the scheduler (cancelling pending reminders), closes the
        dispenser link and the database connection. Safe to call twice.
        """
        if self._shutdown_done:
            return
        self._shutdown_done = True

        logger.info("Shutting down application...")

        self.scheduler.stop(self.scheduler_handle)
        await self.actuator.close()
        await self.store.close()

        self._stopped.set()
        logger.info("Application shutdown complete")


async def main():
    """
    Main entry point for the application.

    Initializes the application, sets up signal handlers for graceful shutdown,
    and runs the main loop.
    """
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.shutdown())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.initialize()
        await app.run()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)

    finally:
        await app.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
