"""
Data types shared by the dispensing scheduler components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, NamedTuple


WEEKDAYS = (
    'Monday', 'Tuesday', 'Wednesday', 'Thursday',
    'Friday', 'Saturday', 'Sunday'
)


@dataclass
class MedicationEntry:
    """One medication in a patient's timetable."""

    name: str
    active: bool = False
    schedule: Dict[str, List[str]] = field(default_factory=dict)

    def times_for(self, weekday: str) -> List[str]:
        return self.schedule.get(weekday, [])


@dataclass
class PatientSchedule:
    """A patient document reduced to what the scheduler reads."""

    patient_id: str
    label: str
    medications: Dict[str, MedicationEntry] = field(default_factory=dict)


class DispatchKey(NamedTuple):
    """Deduplication identity of one dispatch attempt."""

    patient_id: str
    medication: str
    matched_time: str

    def __str__(self) -> str:
        return f"{self.patient_id}_{self.medication}_{self.matched_time}"


@dataclass(frozen=True)
class ResolvedTime:
    """
    The current instant as schedule entries may express it.

    minute_marker identifies the calendar minute and changes on every
    minute rollover, including across days.
    """

    weekday: str
    times: frozenset
    minute_marker: str
    instant: datetime
