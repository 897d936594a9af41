"""Weekly recurrence expansion and series edit/delete decisions.

Occurrence instants are computed per civil date in the teacher's zone, so a
series keeps its local wall time across DST changes.
"""

from datetime import date, datetime, timedelta
from uuid import uuid4

from pydantic import BaseModel

from tutordesk.common.clock import Clock, ZoneLike, weekday_of
from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput
from tutordesk.services.scheduling.schemas import (
    DecisionRequired,
    DeleteKind,
    EditKind,
    LessonView,
    SeriesScope,
    ValidatedDraft,
)


class SeriesPlan(BaseModel):
    series_id: str
    weekdays: list[int]
    # the end date as requested; None keeps the series open-ended
    until: date | None = None
    # last civil day actually expanded (end date or horizon)
    last_day: date
    occurrences: list[datetime]


class EditPlan(BaseModel):
    kind: EditKind
    series_id: str | None = None
    start_from: datetime | None = None


class DeletePlan(BaseModel):
    kind: DeleteKind
    lesson_id: int
    series_id: str | None = None
    start_from: datetime | None = None


def pattern_changed(original: LessonView, weekdays, until: date | None) -> bool:
    """True when the weekday set or the end date differs from the stored series."""

    return set(original.weekdays) != set(weekdays or ()) or original.until != until


class RecurrenceEngine:
    """Expands weekly rules and decides how an occurrence edit/delete applies."""

    def __init__(
        self,
        clock: Clock,
        horizon_days: int | None = None,
        max_occurrences: int | None = None,
    ) -> None:
        self.clock = clock
        self.horizon_days = horizon_days or settings.recurrence_horizon_days
        self.max_occurrences = max_occurrences or settings.recurrence_max_occurrences

    def generate(
        self,
        start_instant: datetime,
        weekdays,
        until: date | None,
        zone: ZoneLike,
        series_id: str | None = None,
    ) -> SeriesPlan:
        """Expand one weekly rule, `until` inclusive, at the start's local wall time."""

        days = set(weekdays or ())
        if not days:
            raise InvalidInput("recurrence needs at least one weekday")
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
            raise InvalidInput(f"invalid weekdays: {sorted(days)}")

        local = self.clock.to_local(start_instant, zone)
        start_day = local.date()
        wall_time = local.time().replace(tzinfo=None)
        if until is not None and until < start_day:
            raise InvalidInput("recurrence end date is before the first lesson")

        horizon = start_day + timedelta(days=self.horizon_days)
        last_day = min(until, horizon) if until is not None else horizon

        occurrences: list[datetime] = []
        day = start_day
        while day <= last_day and len(occurrences) < self.max_occurrences:
            if weekday_of(day) in days:
                occurrences.append(self.clock.to_instant(day, wall_time, zone))
            day += timedelta(days=1)

        if not occurrences:
            raise InvalidInput("recurrence rule produces no lessons")
        return SeriesPlan(
            series_id=series_id or str(uuid4()),
            weekdays=sorted(days),
            until=until,
            last_day=last_day,
            occurrences=occurrences,
        )

    def resolve_edit(
        self,
        original: LessonView,
        draft: ValidatedDraft,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> EditPlan | DecisionRequired:
        if original.series_id is None:
            if draft.is_recurring:
                return EditPlan(kind=EditKind.CONVERT_TO_SERIES, series_id=str(uuid4()))
            return EditPlan(kind=EditKind.PLAIN_UPDATE)

        if scope == SeriesScope.SINGLE:
            return EditPlan(kind=EditKind.DETACH)
        if scope == SeriesScope.ASK and not pattern_changed(original, draft.weekdays, draft.until):
            return DecisionRequired(action="edit", lesson_id=original.id, series_id=original.series_id)
        # explicit SERIES, or ASK with a new weekday set / end date
        return EditPlan(
            kind=EditKind.APPLY_TO_SERIES,
            series_id=original.series_id,
            start_from=original.start_at,
        )

    def resolve_delete(
        self,
        lesson: LessonView,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> DeletePlan | DecisionRequired:
        if lesson.series_id is None or scope == SeriesScope.SINGLE:
            return DeletePlan(kind=DeleteKind.SINGLE, lesson_id=lesson.id)
        if scope == SeriesScope.ASK:
            return DecisionRequired(action="delete", lesson_id=lesson.id, series_id=lesson.series_id)
        return DeletePlan(
            kind=DeleteKind.SERIES,
            lesson_id=lesson.id,
            series_id=lesson.series_id,
            start_from=lesson.start_at,
        )
