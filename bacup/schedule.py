"""
Schedule resolution for backup jobs.

Turns a `when` descriptor into the next fire instant. Recognized grammars,
tried in this order:
- daily HH:MM
- [weekly] <day-name> HH:MM
- monthly <day-of-month> HH:MM
- standard 5-field cron expression

All arithmetic is done in UTC, without daylight-saving adjustments.
"""

import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger


class ScheduleError(Exception):
    """Base class for schedule problems."""
    pass


class InvalidSchedule(ScheduleError):
    """Raised when a descriptor matches none of the recognized grammars."""
    pass


WEEKDAYS = {
    'monday': 0, 'mon': 0,
    'tuesday': 1, 'tue': 1,
    'wednesday': 2, 'wed': 2,
    'thursday': 3, 'thu': 3,
    'friday': 4, 'fri': 4,
    'saturday': 5, 'sat': 5,
    'sunday': 6, 'sun': 6,
}

_DAILY_RE = re.compile(r'^daily\s+(\d{2}):(\d{2})$')
_WEEKLY_RE = re.compile(r'^(?:weekly\s+)?([a-z]+)\s+(\d{2}):(\d{2})$')
_MONTHLY_RE = re.compile(r'^monthly\s+(\d{1,2})\s+(\d{2}):(\d{2})$')


def _parse_time(hours: str, minutes: str, descriptor: str):
    hour, minute = int(hours), int(minutes)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidSchedule(f"Invalid time of day in schedule: {descriptor!r}")
    return hour, minute


# Cron day-of-week numbering, 0 and 7 are both Sunday
_CRON_WEEKDAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')


def _cron_day_of_week(field: str) -> str:
    """
    Rewrite numeric day-of-week entries as weekday names.

    APScheduler numbers weekdays from Monday = 0, cron from Sunday = 0, so
    numbers are expanded to names before the expression reaches
    CronTrigger. Entries already using names are passed through.

    Raises:
        ValueError: If a numeric entry is outside 0-7 or malformed
    """
    if not any(char.isdigit() for char in field):
        return field

    days = []
    for part in field.split(','):
        spec, _, step = part.partition('/')
        if spec == '*':
            first, last = '0', '6'
        elif '-' in spec:
            first, last = spec.split('-', 1)
        else:
            first, last = spec, ('7' if step else spec)

        if not (first.isdigit() and last.isdigit() and (not step or step.isdigit())):
            days.append(part)
            continue

        first, last, step = int(first), int(last), int(step or 1)
        if not 0 <= first <= last <= 7 or step < 1:
            raise ValueError(f"Invalid day of week {part!r}")
        days.extend(_CRON_WEEKDAY_NAMES[day] for day in range(first, last + 1, step))

    return ','.join(dict.fromkeys(days))


def _cron_expression(descriptor: str) -> str:
    fields = descriptor.split()
    if len(fields) == 5:
        fields[4] = _cron_day_of_week(fields[4])
    return ' '.join(fields)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class Schedule:
    """
    A parsed `when` descriptor.

    Parsing happens once, at configuration load time; `next_fire_time` is then
    evaluated every time a job needs a new fire instant.
    """

    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    CRON = 'cron'

    def __init__(self, descriptor: str, kind: str, hour: int = 0, minute: int = 0,
                 weekday: Optional[int] = None, day: Optional[int] = None,
                 trigger: Optional[CronTrigger] = None):
        self.descriptor = descriptor
        self.kind = kind
        self.hour = hour
        self.minute = minute
        self.weekday = weekday
        self.day = day
        self.trigger = trigger

    @classmethod
    def parse(cls, descriptor: str) -> 'Schedule':
        """
        Parse a schedule descriptor.

        Args:
            descriptor: Raw `when` string from the configuration

        Returns:
            Schedule instance

        Raises:
            InvalidSchedule: If the descriptor matches no grammar
        """
        if not isinstance(descriptor, str) or not descriptor.strip():
            raise InvalidSchedule(f"Empty schedule descriptor: {descriptor!r}")

        text = ' '.join(descriptor.strip().lower().split())

        match = _DAILY_RE.match(text)
        if match:
            hour, minute = _parse_time(match.group(1), match.group(2), descriptor)
            return cls(descriptor, cls.DAILY, hour, minute)

        match = _WEEKLY_RE.match(text)
        if match and match.group(1) in WEEKDAYS:
            hour, minute = _parse_time(match.group(2), match.group(3), descriptor)
            return cls(descriptor, cls.WEEKLY, hour, minute, weekday=WEEKDAYS[match.group(1)])

        match = _MONTHLY_RE.match(text)
        if match:
            day = int(match.group(1))
            if not 1 <= day <= 31:
                raise InvalidSchedule(
                    f"Day of month out of range [1,31] in schedule: {descriptor!r}"
                )
            hour, minute = _parse_time(match.group(2), match.group(3), descriptor)
            return cls(descriptor, cls.MONTHLY, hour, minute, day=day)

        try:
            trigger = CronTrigger.from_crontab(_cron_expression(descriptor), timezone='UTC')
        except (ValueError, TypeError) as e:
            raise InvalidSchedule(f"Unable to parse schedule {descriptor!r}: {e}") from e

        return cls(descriptor, cls.CRON, trigger=trigger)

    def next_fire_time(self, reference: datetime) -> datetime:
        """
        Compute the next fire instant strictly after `reference`.

        Args:
            reference: Reference instant (naive values are taken as UTC)

        Returns:
            Timezone-aware UTC datetime

        Raises:
            InvalidSchedule: For a monthly day that the reference month lacks
        """
        reference = _as_utc(reference)

        if self.kind == self.DAILY:
            candidate = reference.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
            if candidate <= reference:
                candidate += timedelta(days=1)
            return candidate

        if self.kind == self.WEEKLY:
            days_ahead = (self.weekday - reference.weekday()) % 7
            candidate = reference.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
            candidate += timedelta(days=days_ahead)
            if candidate <= reference:
                candidate += timedelta(days=7)
            return candidate

        if self.kind == self.MONTHLY:
            return self._next_monthly(reference)

        # CronTrigger returns instants >= now, so nudge past the reference
        fire_time = self.trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))
        if fire_time is None:
            raise InvalidSchedule(f"Schedule {self.descriptor!r} never fires again")
        return fire_time.astimezone(timezone.utc)

    def _next_monthly(self, reference: datetime) -> datetime:
        month_length = calendar.monthrange(reference.year, reference.month)[1]
        if self.day > month_length:
            raise InvalidSchedule(
                f"Day {self.day} does not exist in {reference.year}-{reference.month:02d} "
                f"(schedule {self.descriptor!r})"
            )

        candidate = reference.replace(day=self.day, hour=self.hour, minute=self.minute,
                                      second=0, microsecond=0)
        if candidate > reference:
            return candidate

        year, month = reference.year, reference.month
        # Any day in 1..31 shows up at least once within a year
        for _ in range(12):
            month += 1
            if month > 12:
                year, month = year + 1, 1
            if self.day <= calendar.monthrange(year, month)[1]:
                return candidate.replace(year=year, month=month, day=self.day)

        raise InvalidSchedule(f"Schedule {self.descriptor!r} never fires again")

    def __repr__(self):
        return f"Schedule({self.descriptor!r}, kind={self.kind!r})"


def next_fire_time(descriptor: str, reference: datetime) -> datetime:
    """
    Resolve a descriptor and reference instant to the next fire instant.

    Args:
        descriptor: Raw `when` string
        reference: Reference instant

    Returns:
        Next fire instant in UTC, strictly after `reference`

    Raises:
        InvalidSchedule: If the descriptor is invalid or cannot fire
    """
    return Schedule.parse(descriptor).next_fire_time(reference)
