"""
Resolves the current weekday and time of day in schedule formats.

Stored schedules are not normalized: the same dose may be written as
"08:00", "08:00 AM" or "8:00 AM" depending on which client wrote it.
The resolver emits every one of those forms so matching is a plain
membership test.
"""

from datetime import datetime
from typing import Callable

from app.core.models import WEEKDAYS, ResolvedTime


def format_24h(moment: datetime) -> str:
    return f"{moment.hour:02d}:{moment.minute:02d}"


def format_12h(moment: datetime, pad_hour: bool = True) -> str:
    period = 'AM' if moment.hour < 12 else 'PM'
    hour = moment.hour % 12 or 12
    if pad_hour:
        return f"{hour:02d}:{moment.minute:02d} {period}"
    return f"{hour}:{moment.minute:02d} {period}"


class TimeResolver:
    """
    Stateless view of the local wall clock.

    Args:
        clock: Returns the current local datetime. Tests inject a fake.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def resolve_now(self) -> ResolvedTime:
        now = self.clock()
        times = frozenset({
            format_24h(now),
            format_12h(now, pad_hour=True),
            format_12h(now, pad_hour=False),
        })
        return ResolvedTime(
            weekday=WEEKDAYS[now.weekday()],
            times=times,
            minute_marker=now.strftime('%Y-%m-%d %H:%M'),
            instant=now,
        )
