"""
Document store access.
"""

from app.db.schedule_store import (
    ScheduleStore,
    StoreError,
    DatabaseNotConnectedError,
    parse_patient_document,
)

__all__ = [
    'ScheduleStore',
    'StoreError',
    'DatabaseNotConnectedError',
    'parse_patient_document',
]
