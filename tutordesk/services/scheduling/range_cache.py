"""Per-session cache of lesson lists keyed by UTC date ranges.

Every entry only ever holds lessons whose start lies inside its own bounds;
each mutation re-filters the entries it touches. Loads and local writes are
stamped from one monotonically increasing sequence so that an older fetch
never overwrites a newer write, and only the most recently requested range
becomes the visible view.
"""

import asyncio
import itertools
import time
from calendar import monthrange
from datetime import date, datetime, timedelta
from typing import Callable, Iterable

from pydantic import BaseModel, ConfigDict

from tutordesk.common.clock import Clock, ZoneLike, as_utc
from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput, RangeLoadError
from tutordesk.common.logging import logger
from tutordesk.common.metrics import range_fetch_seconds, range_loads_total, stale_range_responses_total
from tutordesk.common.tracing import traced
from tutordesk.services.scheduling.schemas import LessonView


class LessonRange(BaseModel):
    """Inclusive `[start, end]` UTC bounds of one or more civil days."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}_{self.end.isoformat()}"

    def contains(self, instant: datetime) -> bool:
        return self.start <= as_utc(instant) <= self.end


class RangeEntry(BaseModel):
    key: str
    range: LessonRange
    lessons: list[LessonView]
    request_id: int


def range_from_key(key: str) -> LessonRange:
    try:
        start_iso, end_iso = key.split("_")
        return LessonRange(start=as_utc(datetime.fromisoformat(start_iso)), end=as_utc(datetime.fromisoformat(end_iso)))
    except ValueError as exc:
        raise InvalidInput(f"invalid range key: {key!r}") from exc


def _ordered(lessons: Iterable[LessonView]) -> list[LessonView]:
    return sorted(lessons, key=lambda lesson: (as_utc(lesson.start_at), lesson.id))


class RangeCache:
    """Range-keyed lesson cache for one user session.

    `store` is any object with an async `list_lessons(start, end)`; see
    `tutordesk.services.scheduling.client.LessonStore`.
    """

    def __init__(
        self,
        store,
        clock: Clock,
        zone: ZoneLike = None,
        fetch_timeout: float | None = None,
        service_name: str = "scheduling",
    ) -> None:
        self.store = store
        self.clock = clock
        self.zone = zone
        self.fetch_timeout = fetch_timeout or settings.lesson_fetch_timeout_seconds
        self.service_name = service_name
        self._entries: dict[str, RangeEntry] = {}
        self._sequence = itertools.count(1)
        self._latest_view_request = 0
        self._current_key: str | None = None
        self._visible: list[LessonView] = []

    # ranges

    def build_range(self, start_day: date, end_day: date) -> LessonRange:
        """Day-boundary instants of `start_day` 00:00 .. `end_day` 23:59:59.999."""

        if end_day < start_day:
            raise InvalidInput(f"range end {end_day} is before start {start_day}")
        start, _ = self.clock.day_bounds(start_day, self.zone)
        _, end = self.clock.day_bounds(end_day, self.zone)
        return LessonRange(start=start, end=end)

    def build_day_range(self, day: date) -> LessonRange:
        return self.build_range(day, day)

    def build_week_range(self, day: date) -> LessonRange:
        monday = day - timedelta(days=day.weekday())
        return self.build_range(monday, monday + timedelta(days=6))

    def build_month_range(self, anchor: date, offset: int = 0) -> LessonRange:
        """Month of `anchor` shifted by `offset`, padded to whole Monday-first weeks."""

        month_index = anchor.year * 12 + anchor.month - 1 + offset
        year, month = divmod(month_index, 12)
        first = date(year, month + 1, 1)
        last = first.replace(day=monthrange(year, month + 1)[1])
        return self.build_range(first - timedelta(days=first.weekday()), last + timedelta(days=6 - last.weekday()))

    # reads

    @property
    def lessons(self) -> list[LessonView]:
        return list(self._visible)

    @property
    def current_range(self) -> LessonRange | None:
        if self._current_key is None:
            return None
        return self._entries[self._current_key].range

    def entry(self, key: str) -> RangeEntry | None:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def is_in_current_range(self, lesson: LessonView) -> bool:
        current = self.current_range
        return current is not None and current.contains(lesson.start_at)

    def filter_for_current_range(self, lessons: Iterable[LessonView]) -> list[LessonView]:
        return [lesson for lesson in lessons if self.is_in_current_range(lesson)]

    # writes

    async def load(self, lesson_range: LessonRange, force: bool = False) -> list[LessonView]:
        """Return the lessons of `lesson_range`, fetching them when not cached.

        A fetch that fails or times out raises `RangeLoadError` and leaves all
        entries and the visible list as they were.
        """

        request_id = next(self._sequence)
        self._latest_view_request = request_id
        key = lesson_range.key

        cached = self._entries.get(key)
        if cached is not None and not force:
            range_loads_total.labels(service=self.service_name, outcome="cache_hit").inc()
            self._show(key)
            return list(cached.lessons)

        started = time.perf_counter()
        try:
            with traced("range_cache.fetch", range_key=key):
                fetched = await asyncio.wait_for(
                    self.store.list_lessons(lesson_range.start, lesson_range.end),
                    timeout=self.fetch_timeout,
                )
        except Exception as exc:
            range_loads_total.labels(service=self.service_name, outcome="failed").inc()
            logger.warning("range_load_failed key=%s request_id=%s error=%r", key, request_id, exc)
            raise RangeLoadError(f"failed to load lessons for {key}") from exc
        finally:
            range_fetch_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)

        lessons = _ordered(lesson for lesson in fetched if lesson_range.contains(lesson.start_at))
        range_loads_total.labels(service=self.service_name, outcome="fetched").inc()

        existing = self._entries.get(key)
        if existing is None or existing.request_id < request_id:
            self._entries[key] = RangeEntry(key=key, range=lesson_range, lessons=lessons, request_id=request_id)

        if request_id != self._latest_view_request:
            stale_range_responses_total.labels(service=self.service_name).inc()
            logger.info(
                "range_load_stale key=%s request_id=%s latest=%s",
                key,
                request_id,
                self._latest_view_request,
            )
            return list(lessons)

        self._show(key)
        return list(self._entries[key].lessons)

    def apply_for_range(self, lesson_range: LessonRange, lessons: Iterable[LessonView]) -> None:
        """Replace the entry for `lesson_range` and make it the visible view."""

        request_id = next(self._sequence)
        self._latest_view_request = request_id
        key = lesson_range.key
        self._entries[key] = RangeEntry(
            key=key,
            range=lesson_range,
            lessons=_ordered(lesson for lesson in lessons if lesson_range.contains(lesson.start_at)),
            request_id=request_id,
        )
        self._show(key)

    def update_current(self, updater: Callable[[list[LessonView]], Iterable[LessonView]]) -> None:
        """Run `updater` on the visible list and write the result back to its entry."""

        current = self.current_range
        if current is None:
            return
        updated = _ordered(lesson for lesson in updater(list(self._visible)) if current.contains(lesson.start_at))
        entry = self._entries[self._current_key]
        entry.lessons = updated
        entry.request_id = next(self._sequence)
        self._visible = list(updated)

    def sync_across_ranges(self, lessons: Iterable[LessonView]) -> None:
        """Reflect saved lessons in every cached window that could contain them."""

        incoming = {lesson.id: lesson for lesson in lessons}
        if not incoming:
            return
        for entry in self._entries.values():
            kept = [lesson for lesson in entry.lessons if lesson.id not in incoming]
            kept.extend(lesson for lesson in incoming.values() if entry.range.contains(lesson.start_at))
            entry.lessons = _ordered(kept)
            entry.request_id = next(self._sequence)
        self._refresh_visible()
        logger.info("range_sync lessons=%s entries=%s", sorted(incoming), len(self._entries))

    def remove_across_ranges(
        self,
        ids: Iterable[int] | None = None,
        series_id: str | None = None,
        start_from: datetime | None = None,
    ) -> None:
        """Drop lessons by id, or a series' SCHEDULED occurrences from `start_from` on.

        A series without `start_from` loses every cached occurrence.
        """

        id_set = set(ids or ())
        if not id_set and not series_id:
            return
        cutoff = as_utc(start_from) if start_from is not None else None

        def doomed(lesson: LessonView) -> bool:
            if lesson.id in id_set:
                return True
            if series_id is None or lesson.series_id != series_id:
                return False
            if cutoff is None:
                return True
            return as_utc(lesson.start_at) >= cutoff and lesson.status == "SCHEDULED"

        for entry in self._entries.values():
            remaining = [lesson for lesson in entry.lessons if not doomed(lesson)]
            if len(remaining) != len(entry.lessons):
                entry.lessons = remaining
                entry.request_id = next(self._sequence)
        self._refresh_visible()

    def _show(self, key: str) -> None:
        self._current_key = key
        self._visible = list(self._entries[key].lessons)

    def _refresh_visible(self) -> None:
        if self._current_key is not None:
            self._visible = list(self._entries[self._current_key].lessons)
