"""Monday-aligned week windows used by weekly and year-wide finance views."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

MAX_WEEKS_PER_MONTH = 5
MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# 23:59:59.999, matching millisecond-precision clients.
END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True, slots=True)
class WeekWindow:
    week_number: int
    label: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def last_day_of_month(year: int, month_index: int) -> date:
    month = month_index + 1
    return date(year, month, calendar.monthrange(year, month)[1])


def weeks_of_month(year: int, month_index: int) -> list[WeekWindow]:
    """Return at most five week windows covering the month (``month_index`` is 0-based).

    Week 1 starts on the Monday on or before the 1st. The last window always
    ends on the month's last day, so it absorbs the trailing days of months
    that would otherwise need a sixth week.
    """
    if not 0 <= month_index <= 11:
        raise ValueError(f"month_index must be within 0..11, got {month_index}")

    first_day = date(year, month_index + 1, 1)
    last_day = last_day_of_month(year, month_index)
    month_end = datetime.combine(last_day, END_OF_DAY)

    week_start = first_day - timedelta(days=first_day.weekday())
    windows: list[WeekWindow] = []
    week_number = 1
    while week_number <= MAX_WEEKS_PER_MONTH:
        days_left = (last_day - week_start).days
        # Never step past date.max.
        week_end_day = last_day if days_left < 6 else week_start + timedelta(days=6)
        windows.append(
            WeekWindow(
                week_number=week_number,
                label=f"Week {week_number}",
                start=datetime.combine(week_start, time.min),
                end=datetime.combine(week_end_day, END_OF_DAY),
            )
        )
        if days_left < 7:
            break
        week_start += timedelta(days=7)
        week_number += 1

    if windows:
        final = windows[-1]
        windows[-1] = WeekWindow(
            week_number=final.week_number,
            label=final.label,
            start=final.start,
            end=month_end,
        )
    return windows


def week_number_for(windows: list[WeekWindow], moment: date | datetime) -> int | None:
    if not isinstance(moment, datetime):
        moment = datetime.combine(moment, time.min)
    for window in windows:
        if window.contains(moment):
            return window.week_number
    return None
