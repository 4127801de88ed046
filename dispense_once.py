"""
Bench check for the dispenser: open the serial link, send one dispense
command, close.

Run with: python dispense_once.py
"""

import asyncio
import sys

from app.hardware.actuator import ActuatorChannel, HardwareError
from app.utils.logger import get_logger


logger = get_logger('dispense_once')


async def dispense_once() -> bool:
    channel = ActuatorChannel()
    try:
        logger.info("Initializing dispenser...")
        await channel.open()

        logger.info("Sending dispense command...")
        await channel.trigger()
        logger.info("Dispense command executed successfully")
        return True
    except HardwareError as e:
        logger.error(f"Dispenser test failed: {e}")
        return False
    finally:
        await channel.close()


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(dispense_once()) else 1)
