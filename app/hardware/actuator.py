"""
Serial link to the pill dispenser.

The dispenser firmware performs one dispense motion for every command line
it receives. This module owns the single serial connection to it: opening
it, logging whatever the device prints, writing the command, and reopening
the link with backoff after it drops.

pyserial is blocking, so open, write and close run in worker threads via
asyncio.to_thread. All writes go through one asyncio.Lock, so no two
trigger calls are ever in flight at the same time.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, List, Optional

import serial
from serial.tools import list_ports

from app.config import settings
from app.utils.logger import get_logger


logger = get_logger(__name__)


class HardwareError(Exception):
    """Raised when the dispenser link cannot be opened or written."""
    pass


class ChannelState(Enum):
    CLOSED = "CLOSED"
    OPENING = "OPENING"
    OPEN = "OPEN"


class ActuatorChannel:
    """
    Exclusive owner of the dispenser serial connection.

    Args:
        port: Device path, e.g. /dev/ttyACM0
        baud_rate: Link speed
        command: Command line written per trigger (newline appended)
        settle_seconds: Wait after opening before the device accepts commands
        timeout: Read and write timeout for the serial port
        reconnect_backoffs: Seconds to wait between reopen attempts
        serial_factory: Builds an unopened serial.Serial; tests inject a fake
        port_lister: Enumerates available ports for the startup log
    """

    def __init__(
        self,
        port: Optional[str] = None,
        baud_rate: Optional[int] = None,
        command: Optional[str] = None,
        settle_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        reconnect_backoffs: Optional[List[float]] = None,
        serial_factory: Callable[[], serial.Serial] = serial.Serial,
        port_lister: Callable[[], list] = list_ports.comports
    ):
        self.port = settings.serial_port if port is None else port
        self.baud_rate = settings.serial_baud_rate if baud_rate is None else baud_rate
        self.command = settings.dispense_command if command is None else command
        self.settle_seconds = (
            settings.serial_settle_seconds if settle_seconds is None else settle_seconds
        )
        self.timeout = settings.serial_timeout if timeout is None else timeout
        self.reconnect_backoffs = list(
            settings.reconnect_backoffs if reconnect_backoffs is None else reconnect_backoffs
        )
        if not self.reconnect_backoffs:
            raise ValueError("reconnect_backoffs must not be empty")
        self._serial_factory = serial_factory
        self._port_lister = port_lister

        self.state = ChannelState.CLOSED
        self._serial: Optional[serial.Serial] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._backoff_idx = 0
        self._next_attempt_at = 0.0
        # Bumped by close() and _drop(); open() gives up if it changed underneath it
        self._generation = 0

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.OPEN

    # ---------- lifecycle ----------

    async def open(self) -> None:
        """
        Open the serial link and wait for the device to settle.

        Raises:
            HardwareError: If the channel is not closed or the port cannot be opened
        """
        if self.state is not ChannelState.CLOSED:
            raise HardwareError(f"Actuator channel already {self.state.value.lower()}")

        self.state = ChannelState.OPENING
        generation = self._generation
        self._log_available_ports()

        try:
            ser = await asyncio.to_thread(self._open_serial)
        except (serial.SerialException, OSError, ValueError) as e:
            self.state = ChannelState.CLOSED
            logger.error(f"Failed to open dispenser port {self.port}: {e}")
            raise HardwareError(f"Cannot open {self.port}: {e}") from e

        if self._generation != generation:
            await asyncio.to_thread(ser.close)
            raise HardwareError(f"Channel closed while opening {self.port}")

        self._serial = ser
        self._reader_task = asyncio.create_task(self._read_loop(ser))
        logger.info(f"Serial port {self.port} opened at {self.baud_rate} baud")

        # Boards reset on connect; commands sent before they boot are lost
        await asyncio.sleep(self.settle_seconds)

        if self._serial is not ser or self._generation != generation:
            raise HardwareError(f"Serial port {self.port} dropped while settling")

        self.state = ChannelState.OPEN
        self._backoff_idx = 0
        logger.info("Dispenser ready")

    async def close(self) -> None:
        """Release the serial link. Safe to call when never opened."""
        ser = self._serial
        self._serial = None
        self.state = ChannelState.CLOSED
        self._generation += 1

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None

        if ser is None:
            return

        logger.info("Closing dispenser connection...")
        try:
            await asyncio.to_thread(ser.close)
            logger.info("Dispenser connection closed")
        except (serial.SerialException, OSError) as e:
            logger.warning(f"Error closing dispenser port: {e}")

    async def maybe_reconnect(self) -> bool:
        """
        Reopen a dropped link if the backoff delay has elapsed.

        Never waits for the backoff; a call made too early returns False
        and the next caller tries again.

        Returns:
            True if the channel is open after the call
        """
        if self.is_open:
            return True
        if self.state is ChannelState.OPENING:
            return False
        if time.monotonic() < self._next_attempt_at:
            return False

        try:
            await self.open()
            logger.info(f"Reconnected to dispenser on {self.port}")
            return True
        except HardwareError as e:
            delay = self.reconnect_backoffs[
                min(self._backoff_idx, len(self.reconnect_backoffs) - 1)
            ]
            self._backoff_idx += 1
            self._next_attempt_at = time.monotonic() + delay
            logger.warning(f"Dispenser reconnect failed, next attempt in {delay:g}s: {e}")
            return False

    # ---------- commands ----------

    async def trigger(self) -> None:
        """
        Send one dispense command.

        Raises:
            HardwareError: If the channel is not open or the write fails
        """
        async with self._write_lock:
            ser = self._serial
            if not self.is_open or ser is None:
                raise HardwareError("Dispenser not initialized")

            # The worker thread cannot be interrupted; a cancelled caller
            # keeps the lock until the bytes are out
            write = asyncio.ensure_future(asyncio.to_thread(self._write_command, ser))
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                await asyncio.wait({write})
                if write.exception() is not None:
                    logger.error(f"Error sending command to dispenser: {write.exception()}")
                    await self._drop(ser)
                raise
            except (serial.SerialException, OSError) as e:
                logger.error(f"Error sending command to dispenser: {e}")
                await self._drop(ser)
                raise HardwareError(f"Write to {self.port} failed: {e}") from e

        logger.info(f"'{self.command}' command sent to dispenser")

    # ---------- internals ----------

    def _open_serial(self) -> serial.Serial:
        ser = self._serial_factory()
        ser.port = self.port
        ser.baudrate = self.baud_rate
        ser.timeout = self.timeout
        ser.write_timeout = self.timeout
        # Keep DTR/RTS low so opening does not reset the board
        ser.dtr = False
        ser.rts = False
        ser.open()
        return ser

    def _write_command(self, ser: serial.Serial) -> None:
        ser.write(f"{self.command}\n".encode('ascii'))
        ser.flush()

    def _log_available_ports(self) -> None:
        try:
            ports = [p.device for p in self._port_lister()]
            logger.info(f"Available serial ports: {ports}")
        except Exception as e:
            logger.debug(f"Could not enumerate serial ports: {e}")

    async def _read_loop(self, ser: serial.Serial) -> None:
        """Log every line the device prints until the port closes or fails."""
        while self._serial is ser:
            try:
                data = await asyncio.to_thread(ser.readline)
            except (serial.SerialException, OSError) as e:
                if self._serial is ser:
                    logger.error(f"Serial port error: {e}")
                    await self._drop(ser)
                return

            if not data:
                continue
            for line in data.decode('utf-8', errors='replace').splitlines():
                line = line.strip()
                if line:
                    logger.info(f"Dispenser says: {line}")

    async def _drop(self, ser: serial.Serial) -> None:
        """Forget a failed connection so maybe_reconnect can reopen it."""
        if self._serial is not ser:
            return
        self._serial = None
        self.state = ChannelState.CLOSED
        self._generation += 1
        self._next_attempt_at = 0.0
        logger.warning(f"Dispenser connection on {self.port} dropped")
        try:
            await asyncio.to_thread(ser.close)
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Error closing dropped port: {e}")
