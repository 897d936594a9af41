"""Timezone-correct conversions between civil (date, time, zone) and UTC instants.

Every range and recurrence computation goes through `Clock.to_instant` and
`Clock.day_bounds`, so DST handling lives in exactly one place.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

import pytz
from pytz import AmbiguousTimeError, NonExistentTimeError

from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput
from tutordesk.common.logging import logger

END_OF_DAY = time(23, 59, 59, 999000)

ZoneLike = str | pytz.BaseTzInfo | None


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_localize(tz: pytz.BaseTzInfo, naive_dt: datetime) -> datetime:
    """Localize ``naive_dt`` handling DST edge cases.

    A repeated wall time resolves to its first pass unless ``naive_dt.fold``
    is 1; a skipped one is shifted forward by an hour.
    """
    try:
        return tz.localize(naive_dt, is_dst=None)
    except AmbiguousTimeError:
        # is_dst=True picks the earlier UTC candidate, False the later one
        return tz.localize(naive_dt, is_dst=not naive_dt.fold)
    except NonExistentTimeError as e:
        logger.warning("nonexistent_local_time value=%s zone=%s error=%s", naive_dt, tz, e)
        return tz.localize(naive_dt + timedelta(hours=1), is_dst=True)


def weekday_of(day: date) -> int:
    """Weekday index with 0 = Sunday ... 6 = Saturday."""

    return day.isoweekday() % 7


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string."""

    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise InvalidInput(f"invalid date: {value!r}") from exc


def parse_time(value: str) -> time:
    """Parse a 24-hour ``HH:MM`` string."""

    try:
        hour, minute = (int(part) for part in value.strip().split(":"))
    except (AttributeError, ValueError) as exc:
        raise InvalidInput(f"invalid time: {value!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidInput(f"invalid time: {value!r}")
    return time(hour, minute)


class Clock:
    """Stateless civil/UTC conversions plus an injectable notion of "now"."""

    def __init__(self, now: Callable[[], datetime] | None = None, default_timezone: str | None = None) -> None:
        self._now = now
        self.default_timezone = default_timezone or settings.default_timezone

    def now(self) -> datetime:
        if self._now is None:
            return datetime.now(timezone.utc)
        return as_utc(self._now())

    def resolve_timezone(self, zone: ZoneLike) -> pytz.BaseTzInfo:
        """Blank zone names fall back to the configured default."""

        if isinstance(zone, pytz.BaseTzInfo):
            return zone
        name = zone.strip() if isinstance(zone, str) else ""
        try:
            return pytz.timezone(name or self.default_timezone)
        except pytz.UnknownTimeZoneError as exc:
            raise InvalidInput(f"unknown timezone: {zone!r}") from exc

    def to_instant(self, day: date, at: time, zone: ZoneLike) -> datetime:
        """Resolve a wall-clock time in `zone` to an aware UTC instant."""

        tz = self.resolve_timezone(zone)
        naive = datetime.combine(day, at.replace(tzinfo=None))
        return safe_localize(tz, naive).astimezone(timezone.utc)

    def to_local(self, instant: datetime, zone: ZoneLike) -> datetime:
        """Aware local datetime for `instant` in `zone`.

        Inside a repeated hour the second pass carries `fold=1`, so
        `to_instant(local.date(), local.time(), zone)` gives `instant` back.
        """

        tz = self.resolve_timezone(zone)
        instant = as_utc(instant)
        local = instant.astimezone(tz)
        first_pass = tz.localize(local.replace(tzinfo=None), is_dst=True)
        if first_pass.astimezone(timezone.utc) != instant:
            local = local.replace(fold=1)
        return local

    def local_date(self, instant: datetime, zone: ZoneLike) -> date:
        return self.to_local(instant, zone).date()

    def today(self, zone: ZoneLike) -> date:
        return self.local_date(self.now(), zone)

    def day_bounds(self, day: date, zone: ZoneLike) -> tuple[datetime, datetime]:
        """Start (00:00) and end (23:59:59.999) of the civil day as UTC instants."""

        return self.to_instant(day, time.min, zone), self.to_instant(day, END_OF_DAY, zone)
