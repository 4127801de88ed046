"""
Core scheduling components.
"""

from app.core.models import (
    WEEKDAYS,
    DispatchKey,
    MedicationEntry,
    PatientSchedule,
    ResolvedTime,
)

__all__ = [
    'WEEKDAYS',
    'DispatchKey',
    'MedicationEntry',
    'PatientSchedule',
    'ResolvedTime',
]
