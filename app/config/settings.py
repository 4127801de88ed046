"""
Application configuration using Pydantic Settings.

Loads all environment variables from .env file with validation and type safety.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Automatically loads from .env file in project root.
    """

    # Database Configuration
    mongodb_uri: str = Field('mongodb://localhost:27017/recovery', alias='MONGODB_URI')
    mongodb_db: Optional[str] = Field(None, alias='MONGODB_DB')
    patients_collection: str = Field('patients', alias='PATIENTS_COLLECTION')

    # Dispenser Serial Link
    serial_port: str = Field('/dev/ttyACM0', alias='SERIAL_PORT')
    serial_baud_rate: int = Field(9600, alias='SERIAL_BAUD_RATE')
    serial_timeout: float = Field(1.0, alias='SERIAL_TIMEOUT')
    serial_settle_seconds: float = Field(2.0, alias='SERIAL_SETTLE_SECONDS')
    dispense_command: str = Field('move', alias='DISPENSE_COMMAND')
    reconnect_backoffs: list[float] = Field(
        default_factory=lambda: [1.0, 2.0, 5.0, 10.0, 30.0],
        alias='RECONNECT_BACKOFFS'
    )

    # Scheduler Configuration
    check_interval: float = Field(60, alias='CHECK_INTERVAL')
    reminder_delay_minutes: float = Field(5, alias='REMINDER_DELAY_MINUTES')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')
    log_file: str = Field('logs/application.log', alias='LOG_FILE')

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        populate_by_name=True,
        extra='ignore'
    )

    @field_validator('check_interval', 'reminder_delay_minutes')
    @classmethod
    def must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError('must be greater than zero')
        return value

    @field_validator('reconnect_backoffs')
    @classmethod
    def backoffs_not_empty(cls, value: list[float]) -> list[float]:
        if not value or any(delay < 0 for delay in value):
            raise ValueError('must be a non-empty list of non-negative delays')
        return value

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def reminder_delay_seconds(self) -> float:
        """Follow-up reminder delay expressed in seconds."""
        return self.reminder_delay_minutes * 60


# Global settings instance
settings = Settings()
