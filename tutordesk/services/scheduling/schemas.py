"""Request/response schemas for scheduling plus draft validation."""

from datetime import date, datetime, time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tutordesk.common.clock import as_utc, parse_date, parse_time
from tutordesk.common.errors import InvalidInput

MAX_DURATION_MINUTES = 24 * 60


class ParticipantView(BaseModel):
    """Payment state of one student on one lesson."""

    student_id: int
    is_paid: bool = False
    price: int | None = None


class LessonView(BaseModel):
    """Snapshot of a lesson as cached and returned to callers."""

    id: int
    teacher_id: int
    student_id: int
    series_id: str | None = None
    start_at: datetime
    duration_minutes: int
    status: str = "SCHEDULED"
    price: int | None = None
    is_paid: bool = False
    color: str | None = None
    meeting_link: str | None = None
    is_recurring: bool = False
    weekdays: list[int] = Field(default_factory=list)
    until: date | None = None
    participants: list[ParticipantView] = Field(default_factory=list)

    @classmethod
    def from_row(cls, lesson, participants) -> "LessonView":
        return cls(
            id=lesson.id,
            teacher_id=lesson.teacher_id,
            student_id=lesson.student_id,
            series_id=lesson.series_id,
            start_at=as_utc(lesson.start_at),
            duration_minutes=lesson.duration_minutes,
            status=lesson.status,
            price=lesson.price,
            is_paid=lesson.is_paid,
            color=lesson.color,
            meeting_link=lesson.meeting_link,
            is_recurring=lesson.is_recurring,
            weekdays=sorted(lesson.recurrence_weekdays or []),
            until=lesson.recurrence_until,
            participants=[
                ParticipantView(student_id=p.student_id, is_paid=p.is_paid, price=p.price) for p in participants
            ],
        )


class LessonDraft(BaseModel):
    """Lesson form payload; civil date/time are resolved in the teacher's zone."""

    student_ids: list[int] = Field(default_factory=list)
    lesson_date: str = ""
    start_time: str = ""
    duration_minutes: int = 60
    price: int | None = None
    color: str | None = None
    meeting_link: str | None = None
    is_recurring: bool = False
    weekdays: list[int] = Field(default_factory=list)
    repeat_until: str | None = None


class ValidatedDraft(BaseModel):
    """A draft after parsing; only built by `validate_draft`."""

    model_config = ConfigDict(frozen=True)

    student_ids: tuple[int, ...]
    day: date
    at: time
    duration_minutes: int
    price: int | None = None
    color: str | None = None
    meeting_link: str | None = None
    is_recurring: bool = False
    weekdays: frozenset[int] = frozenset()
    until: date | None = None


def validate_draft(draft: LessonDraft) -> ValidatedDraft:
    """Reject a bad draft before any storage or network call is made."""

    student_ids = tuple(dict.fromkeys(draft.student_ids))
    if not student_ids:
        raise InvalidInput("at least one student is required")
    if not draft.lesson_date:
        raise InvalidInput("lesson date is required")
    if not draft.start_time:
        raise InvalidInput("lesson time is required")
    day = parse_date(draft.lesson_date)
    at = parse_time(draft.start_time)
    if draft.duration_minutes <= 0 or draft.duration_minutes > MAX_DURATION_MINUTES:
        raise InvalidInput(f"invalid duration: {draft.duration_minutes}")
    if draft.price is not None and draft.price < 0:
        raise InvalidInput("price must not be negative")

    weekdays: frozenset[int] = frozenset()
    until = None
    if draft.is_recurring:
        if not draft.weekdays:
            raise InvalidInput("recurring lessons need at least one weekday")
        if any(d < 0 or d > 6 for d in draft.weekdays):
            raise InvalidInput(f"invalid weekdays: {draft.weekdays}")
        weekdays = frozenset(draft.weekdays)
        if draft.repeat_until:
            until = parse_date(draft.repeat_until)
            if until < day:
                raise InvalidInput("repeat end date is before the lesson date")

    return ValidatedDraft(
        student_ids=student_ids,
        day=day,
        at=at,
        duration_minutes=draft.duration_minutes,
        price=draft.price,
        color=draft.color,
        meeting_link=draft.meeting_link,
        is_recurring=draft.is_recurring,
        weekdays=weekdays,
        until=until,
    )


class SeriesScope(str, Enum):
    """Caller's choice for an edit/delete touching a series occurrence."""

    SINGLE = "SINGLE"
    SERIES = "SERIES"
    ASK = "ASK"


class EditKind(str, Enum):
    PLAIN_UPDATE = "PLAIN_UPDATE"
    CONVERT_TO_SERIES = "CONVERT_TO_SERIES"
    APPLY_TO_SERIES = "APPLY_TO_SERIES"
    DETACH = "DETACH"


class DeleteKind(str, Enum):
    SINGLE = "SINGLE"
    SERIES = "SERIES"


class DecisionRequired(BaseModel):
    """Returned instead of acting when the caller still has to choose an option."""

    action: str
    lesson_id: int
    series_id: str | None = None
    student_id: int | None = None
    options: list[str] = Field(default_factory=lambda: [SeriesScope.SINGLE.value, SeriesScope.SERIES.value])


class UpdateResult(BaseModel):
    """Lessons written by a save plus what the caller must drop from caches."""

    lessons: list[LessonView] = Field(default_factory=list)
    removed_ids: list[int] = Field(default_factory=list)
    series_id: str | None = None
    start_from: datetime | None = None
    plan: EditKind | None = None


class DeleteResult(BaseModel):
    deleted_ids: list[int] = Field(default_factory=list)
    series_id: str | None = None
    start_from: datetime | None = None
    kind: DeleteKind = DeleteKind.SINGLE
