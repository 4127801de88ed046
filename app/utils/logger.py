"""
Centralized logging configuration for the medication dispensing service.

Provides a single rotating log file with daily rotation and 30-day retention.
Logs all key events: dose dispensed, dispatch failed, reminder scheduled,
reminder fired, reminders cancelled.
"""

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


def setup_logger(
    name: str = None,
    log_level: str = 'INFO',
    log_file: str = 'logs/application.log'
) -> logging.Logger:
    """
    Configure and return a logger with rotating file handler.

    Creates a logger that writes to a single log file with daily rotation
    and 30-day retention. Also outputs to console for development.

    Args:
        name: Logger name (uses root logger if None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file

    Returns:
        Configured logger instance
    """
    # Create logs directory if it doesn't exist
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)

    # Only configure if not already configured
    if logger.handlers:
        return logger

    level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Daily rotation, 30-day retention
    file_handler = TimedRotatingFileHandler(
        filename=log_file,
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    file_handler.suffix = "%Y-%m-%d"

    # logs/application.log.2025-11-16 -> logs/application-2025-11-16.log
    def namer(default_name):
        base_filename = log_file.replace('.log', '')
        date_part = default_name.split('.')[-1]
        return f"{base_filename}-{date_part}.log"

    file_handler.namer = namer
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance.

    If the logger hasn't been configured yet, it will be set up with
    default settings from environment variables.

    Args:
        name: Logger name (uses root logger if None)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
        log_file = os.getenv('LOG_FILE', 'logs/application.log')
        return setup_logger(name, log_level, log_file)

    return logger


# Create default application logger
app_logger = get_logger('app')


def log_dose_dispensed(patient: str, medication: str, scheduled_time: str):
    """
    Log when the dispenser was actuated for a scheduled dose.

    Args:
        patient: Patient display label (name, email or id)
        medication: Medication name
        scheduled_time: Schedule entry that matched the current time
    """
    app_logger.info(
        f"Dose dispensed | patient={patient} | "
        f"medication={medication} | time={scheduled_time}"
    )


def log_dispatch_failed(patient: str, medication: str, error: str):
    """
    Log a dispatch attempt that did not actuate the dispenser.

    The dose is not retried, so this line is what a caregiver needs to see.

    Args:
        patient: Patient display label
        medication: Medication name
        error: Hardware error message
    """
    app_logger.error(
        f"Dispatch failed | patient={patient} | "
        f"medication={medication} | error={error}"
    )


def log_reminder_scheduled(patient: str, medication: str, delay_minutes: float):
    """
    Log when a follow-up reminder is armed.

    Args:
        patient: Patient display label
        medication: Medication name
        delay_minutes: Minutes until the reminder fires
    """
    app_logger.info(
        f"Reminder scheduled | patient={patient} | "
        f"medication={medication} | delay_minutes={delay_minutes:g}"
    )


def log_reminder_fired(patient: str, medication: str, success: bool):
    """
    Log when a follow-up reminder has run.

    Args:
        patient: Patient display label
        medication: Medication name
        success: Whether the follow-up actuation went through
    """
    app_logger.info(
        f"Reminder fired | patient={patient} | "
        f"medication={medication} | success={success}"
    )


def log_reminders_cancelled(count: int):
    """
    Log reminders dropped at shutdown. Cancelled reminders do not actuate.

    Args:
        count: Number of reminders cancelled
    """
    app_logger.warning(
        f"Reminders cancelled | count={count} | "
        f"follow-up dispensing will not happen for these doses"
    )


def log_error(context: str, error: str):
    """
    Log an error in the dispensing pipeline.

    Args:
        context: Where the error happened
        error: Error message
    """
    app_logger.error(f"Scheduler error | context={context} | error={error}")
