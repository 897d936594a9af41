import asyncio
from datetime import date, datetime, timezone

import pytest

from tutordesk.common.clock import Clock
from tutordesk.common.errors import InvalidInput, RangeLoadError
from tutordesk.services.scheduling.range_cache import RangeCache, range_from_key
from tutordesk.services.scheduling.schemas import LessonView


def at(day: int, hour: int = 10, month: int = 1) -> datetime:
    return datetime(2024, month, day, hour, 0, tzinfo=timezone.utc)


def view(lesson_id: int, start_at: datetime, series_id: str | None = None, status: str = "SCHEDULED") -> LessonView:
    return LessonView(
        id=lesson_id,
        teacher_id=1,
        student_id=1,
        series_id=series_id,
        start_at=start_at,
        duration_minutes=60,
        status=status,
    )


class GatedStore:
    """Serves `lessons` filtered by range; fetches of gated keys wait for their event."""

    def __init__(self, lessons=(), gates=None, error: Exception | None = None, delay: float = 0) -> None:
        self.lessons = list(lessons)
        self.gates = gates or {}
        self.error = error
        self.delay = delay
        self.calls = 0

    async def list_lessons(self, start, end):
        self.calls += 1
        gate = self.gates.get(f"{start.isoformat()}_{end.isoformat()}")
        if gate is not None:
            await gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return [lesson for lesson in self.lessons if start <= lesson.start_at <= end]


def make_cache(store, **kwargs) -> RangeCache:
    return RangeCache(store, Clock(default_timezone="UTC"), zone="UTC", fetch_timeout=kwargs.pop("timeout", 5), **kwargs)


def test_range_builders():
    cache = make_cache(GatedStore())

    week = cache.build_week_range(date(2024, 1, 3))
    assert week.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert week.end == datetime(2024, 1, 7, 23, 59, 59, 999000, tzinfo=timezone.utc)

    month = cache.build_month_range(date(2024, 1, 15))
    assert month.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert month.end.date() == date(2024, 2, 4)

    previous = cache.build_month_range(date(2024, 1, 15), offset=-1)
    assert previous.start.date() == date(2023, 11, 27)
    assert previous.end.date() == date(2023, 12, 31)

    assert range_from_key(week.key) == week
    with pytest.raises(InvalidInput):
        cache.build_range(date(2024, 1, 2), date(2024, 1, 1))


def test_day_range_in_teacher_zone():
    cache = RangeCache(GatedStore(), Clock(default_timezone="UTC"), zone="Europe/Moscow")

    day = cache.build_day_range(date(2024, 1, 1))

    assert day.start == datetime(2023, 12, 31, 21, 0, tzinfo=timezone.utc)
    assert day.contains(datetime(2024, 1, 1, 20, 30, tzinfo=timezone.utc))
    assert not day.contains(datetime(2024, 1, 1, 21, 0, tzinfo=timezone.utc))


def test_load_fetches_once_and_keeps_only_in_range_lessons():
    store = GatedStore([view(1, at(2)), view(2, at(9))])
    cache = make_cache(store)
    week = cache.build_week_range(date(2024, 1, 1))

    first = asyncio.run(cache.load(week))
    again = asyncio.run(cache.load(week))

    assert [lesson.id for lesson in first] == [1]
    assert [lesson.id for lesson in again] == [1]
    assert store.calls == 1
    assert cache.current_range == week
    assert [lesson.id for lesson in cache.lessons] == [1]


def test_older_response_does_not_replace_newer_view():
    week1_lessons = [view(1, at(2))]
    week2_lessons = [view(2, at(9))]
    store = GatedStore(week1_lessons + week2_lessons)
    cache = make_cache(store)
    week1 = cache.build_week_range(date(2024, 1, 1))
    week2 = cache.build_week_range(date(2024, 1, 8))
    gate = asyncio.Event()
    store.gates[week1.key] = gate

    async def scenario():
        slow = asyncio.create_task(cache.load(week1))
        await asyncio.sleep(0)
        await cache.load(week2)
        gate.set()
        return await slow

    stale = asyncio.run(scenario())

    assert [lesson.id for lesson in stale] == [1]
    assert cache.current_range == week2
    assert [lesson.id for lesson in cache.lessons] == [2]
    # the late response is still cached for its own range
    assert [lesson.id for lesson in cache.entry(week1.key).lessons] == [1]


def test_fetch_started_before_a_local_write_cannot_erase_it():
    store = GatedStore([view(1, at(2))])
    cache = make_cache(store)
    week = cache.build_week_range(date(2024, 1, 1))
    asyncio.run(cache.load(week))
    gate = asyncio.Event()
    store.gates[week.key] = gate

    async def scenario():
        reload = asyncio.create_task(cache.load(week, force=True))
        await asyncio.sleep(0)
        cache.sync_across_ranges([view(3, at(4))])
        gate.set()
        await reload

    asyncio.run(scenario())

    assert [lesson.id for lesson in cache.entry(week.key).lessons] == [1, 3]
    assert [lesson.id for lesson in cache.lessons] == [1, 3]


def test_failed_load_leaves_cache_untouched():
    store = GatedStore([view(1, at(2))])
    cache = make_cache(store)
    week1 = cache.build_week_range(date(2024, 1, 1))
    asyncio.run(cache.load(week1))

    store.error = RuntimeError("connection reset")
    with pytest.raises(RangeLoadError):
        asyncio.run(cache.load(cache.build_week_range(date(2024, 1, 8))))

    assert cache.keys() == [week1.key]
    assert cache.current_range == week1
    assert [lesson.id for lesson in cache.lessons] == [1]


def test_timed_out_load_raises_range_error():
    cache = make_cache(GatedStore(delay=1), timeout=0.01)

    with pytest.raises(RangeLoadError):
        asyncio.run(cache.load(cache.build_week_range(date(2024, 1, 1))))

    assert cache.keys() == []
    assert cache.lessons == []


def test_moved_lesson_leaves_old_range_and_enters_new_one():
    cache = make_cache(GatedStore())
    week1 = cache.build_week_range(date(2024, 1, 1))
    week2 = cache.build_week_range(date(2024, 1, 8))
    cache.apply_for_range(week2, [view(2, at(9))])
    cache.apply_for_range(week1, [view(1, at(2)), view(5, at(3))])

    cache.sync_across_ranges([view(5, at(10))])

    assert [lesson.id for lesson in cache.entry(week1.key).lessons] == [1]
    assert [lesson.id for lesson in cache.entry(week2.key).lessons] == [2, 5]
    assert [lesson.id for lesson in cache.lessons] == [1]


def test_apply_and_update_current_filter_to_range():
    cache = make_cache(GatedStore())
    week = cache.build_week_range(date(2024, 1, 1))

    cache.apply_for_range(week, [view(2, at(5)), view(1, at(2)), view(9, at(20))])
    assert [lesson.id for lesson in cache.lessons] == [1, 2]

    cache.update_current(lambda lessons: lessons + [view(4, at(3)), view(8, at(15))])
    assert [lesson.id for lesson in cache.lessons] == [1, 4, 2]
    assert cache.filter_for_current_range([view(9, at(20)), view(1, at(2))]) == [view(1, at(2))]


def test_series_truncation_keeps_past_and_finished_occurrences():
    cache = make_cache(GatedStore())
    month = cache.build_month_range(date(2024, 1, 15))
    cutoff = at(10)
    cache.apply_for_range(
        month,
        [
            view(1, at(3), "s"),
            view(2, at(10), "s"),
            view(3, at(17), "s", status="COMPLETED"),
            view(4, at(24), "s"),
            view(5, at(24, 12), "other"),
        ],
    )

    cache.remove_across_ranges(series_id="s", start_from=cutoff)

    assert [lesson.id for lesson in cache.lessons] == [1, 3, 5]


def test_series_removal_without_cutoff_drops_all_occurrences():
    cache = make_cache(GatedStore())
    month = cache.build_month_range(date(2024, 1, 15))
    cache.apply_for_range(month, [view(1, at(3), "s"), view(2, at(10), "s"), view(3, at(12))])

    cache.remove_across_ranges(series_id="s")
    cache.remove_across_ranges()

    assert [lesson.id for lesson in cache.lessons] == [3]


def test_removal_by_id_reaches_every_range():
    cache = make_cache(GatedStore())
    week = cache.build_week_range(date(2024, 1, 1))
    month = cache.build_month_range(date(2024, 1, 15))
    cache.apply_for_range(month, [view(1, at(2)), view(2, at(20))])
    cache.apply_for_range(week, [view(1, at(2))])

    cache.remove_across_ranges(ids=[1])

    assert cache.entry(week.key).lessons == []
    assert [lesson.id for lesson in cache.entry(month.key).lessons] == [2]
    assert cache.lessons == []
