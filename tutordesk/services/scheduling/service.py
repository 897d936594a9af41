"""Lesson persistence and the series semantics every write must respect.

Edits to a series never touch occurrences that already happened: only
SCHEDULED occurrences at or after the edited one are superseded.
"""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from tutordesk.common.clock import Clock, as_utc
from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.logging import log_context, logger
from tutordesk.services.roster.models import Teacher
from tutordesk.services.scheduling.models import Lesson, LessonParticipant
from tutordesk.services.scheduling.recurrence import RecurrenceEngine
from tutordesk.services.scheduling.schemas import (
    DecisionRequired,
    DeleteKind,
    DeleteResult,
    EditKind,
    LessonDraft,
    LessonView,
    SeriesScope,
    UpdateResult,
    ValidatedDraft,
    validate_draft,
)


class SchedulingService:
    """Owns lesson rows; backs both the HTTP API and `LocalLessonStore`."""

    def __init__(
        self,
        session_factory,
        clock: Clock,
        recurrence: RecurrenceEngine,
        service_name: str = "scheduling",
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.recurrence = recurrence
        self.service_name = service_name

    def _teacher_zone(self, db, teacher_id: int) -> str | None:
        teacher = db.get(Teacher, teacher_id)
        if not teacher:
            raise NotFound(f"teacher {teacher_id} not found")
        return teacher.timezone

    def _load(self, db, teacher_id: int, lesson_id: int) -> Lesson:
        lesson = db.get(Lesson, lesson_id)
        if not lesson or lesson.teacher_id != teacher_id:
            raise NotFound(f"lesson {lesson_id} not found")
        return lesson

    def _views(self, db, lessons: list[Lesson]) -> list[LessonView]:
        if not lessons:
            return []
        rows = db.execute(
            select(LessonParticipant)
            .where(LessonParticipant.lesson_id.in_([lesson.id for lesson in lessons]))
            .order_by(LessonParticipant.student_id)
        ).scalars().all()
        by_lesson: dict[int, list[LessonParticipant]] = {}
        for row in rows:
            by_lesson.setdefault(row.lesson_id, []).append(row)
        return [LessonView.from_row(lesson, by_lesson.get(lesson.id, [])) for lesson in lessons]

    def _occupied(self, db, teacher_id: int, instants: list[datetime]) -> set[datetime]:
        """Start instants in `instants` already taken by a non-canceled lesson of the teacher."""

        if not instants:
            return set()
        rows = db.execute(
            select(Lesson.start_at).where(
                Lesson.teacher_id == teacher_id,
                Lesson.status != "CANCELED",
                Lesson.start_at >= min(instants),
                Lesson.start_at <= max(instants),
            )
        ).scalars().all()
        taken = {as_utc(start_at) for start_at in rows}
        return {instant for instant in instants if instant in taken}

    def _commit(self, db, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("lesson_write_failed action=%s error=%s", action, exc)
            raise MutationError(f"{action} failed") from exc

    def _add_lessons(
        self,
        db,
        teacher_id: int,
        draft: ValidatedDraft,
        instants: list[datetime],
        series_id: str | None = None,
        weekdays=None,
        until=None,
    ) -> list[Lesson]:
        lessons = []
        for instant in instants:
            lesson = Lesson(
                teacher_id=teacher_id,
                student_id=draft.student_ids[0],
                series_id=series_id,
                start_at=instant,
                duration_minutes=draft.duration_minutes,
                status="SCHEDULED",
                price=draft.price,
                is_paid=False,
                color=draft.color,
                meeting_link=draft.meeting_link,
                is_recurring=series_id is not None,
                recurrence_weekdays=sorted(weekdays) if series_id else None,
                recurrence_until=until if series_id else None,
            )
            db.add(lesson)
            lessons.append(lesson)
        db.flush()
        for lesson in lessons:
            for student_id in draft.student_ids:
                db.add(LessonParticipant(lesson_id=lesson.id, student_id=student_id, is_paid=False, price=draft.price))
        return lessons

    def _apply_fields(self, db, lesson: Lesson, draft: ValidatedDraft, start_at: datetime) -> None:
        """Copy draft fields onto an existing row, keeping payment state of staying participants."""

        lesson.start_at = start_at
        lesson.duration_minutes = draft.duration_minutes
        lesson.price = draft.price
        lesson.color = draft.color
        lesson.meeting_link = draft.meeting_link
        lesson.student_id = draft.student_ids[0]

        existing = {
            p.student_id: p
            for p in db.execute(select(LessonParticipant).where(LessonParticipant.lesson_id == lesson.id)).scalars()
        }
        for student_id, participant in existing.items():
            if student_id not in draft.student_ids:
                db.delete(participant)
            elif not participant.is_paid:
                participant.price = draft.price
        for student_id in draft.student_ids:
            if student_id not in existing:
                db.add(LessonParticipant(lesson_id=lesson.id, student_id=student_id, is_paid=False, price=draft.price))
        db.flush()
        paid = [p.is_paid for p in db.execute(
            select(LessonParticipant).where(LessonParticipant.lesson_id == lesson.id)
        ).scalars()]
        lesson.is_paid = bool(paid) and all(paid)

    def _drop(self, db, lesson_ids: list[int]) -> None:
        if not lesson_ids:
            return
        db.execute(delete(LessonParticipant).where(LessonParticipant.lesson_id.in_(lesson_ids)))
        db.execute(delete(Lesson).where(Lesson.id.in_(lesson_ids)))

    def _following_scheduled(self, db, series_id: str, cutoff: datetime, exclude_id: int | None = None) -> list[int]:
        ids = db.execute(
            select(Lesson.id).where(
                Lesson.series_id == series_id,
                Lesson.status == "SCHEDULED",
                Lesson.start_at >= cutoff,
            )
        ).scalars().all()
        return [lesson_id for lesson_id in ids if lesson_id != exclude_id]

    # reads

    def list_lessons(self, teacher_id: int, start: datetime, end: datetime) -> list[LessonView]:
        """Lessons of the teacher with `start <= start_at <= end`, ordered by start."""

        with self.session_factory() as db:
            lessons = db.execute(
                select(Lesson)
                .where(
                    Lesson.teacher_id == teacher_id,
                    Lesson.start_at >= as_utc(start),
                    Lesson.start_at <= as_utc(end),
                )
                .order_by(Lesson.start_at, Lesson.id)
            ).scalars().all()
            return self._views(db, list(lessons))

    def get_lesson(self, teacher_id: int, lesson_id: int) -> LessonView:
        with self.session_factory() as db:
            return self._views(db, [self._load(db, teacher_id, lesson_id)])[0]

    # writes

    def create_lesson(self, teacher_id: int, draft: LessonDraft) -> LessonView:
        validated = validate_draft(draft)
        if validated.is_recurring:
            raise InvalidInput("recurring drafts are created with create_recurring_lessons")
        with self.session_factory() as db:
            zone = self._teacher_zone(db, teacher_id)
            start_at = self.clock.to_instant(validated.day, validated.at, zone)
            lessons = self._add_lessons(db, teacher_id, validated, [start_at])
            self._commit(db, "create_lesson")
            logger.info("lesson_created teacher_id=%s lesson_id=%s start_at=%s", teacher_id, lessons[0].id, start_at)
            return self._views(db, lessons)[0]

    def create_recurring_lessons(self, teacher_id: int, draft: LessonDraft) -> list[LessonView]:
        """Create one series, skipping slots the teacher already has a lesson in."""

        validated = validate_draft(draft)
        if not validated.is_recurring:
            raise InvalidInput("draft is not recurring")
        with self.session_factory() as db:
            zone = self._teacher_zone(db, teacher_id)
            start_at = self.clock.to_instant(validated.day, validated.at, zone)
            plan = self.recurrence.generate(start_at, validated.weekdays, validated.until, zone)
            occupied = self._occupied(db, teacher_id, plan.occurrences)
            free = [instant for instant in plan.occurrences if instant not in occupied]
            if not free:
                raise InvalidInput("every slot of the series is already taken")
            lessons = self._add_lessons(
                db, teacher_id, validated, free, series_id=plan.series_id, weekdays=plan.weekdays, until=plan.until
            )
            self._commit(db, "create_recurring_lessons")
            logger.info(
                "series_created teacher_id=%s series_id=%s created=%s skipped=%s",
                teacher_id,
                plan.series_id,
                len(lessons),
                len(occupied),
            )
            return self._views(db, lessons)

    def update_lesson(
        self,
        teacher_id: int,
        lesson_id: int,
        draft: LessonDraft,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> UpdateResult | DecisionRequired:
        validated = validate_draft(draft)
        with self.session_factory() as db:
            lesson = self._load(db, teacher_id, lesson_id)
            original = self._views(db, [lesson])[0]
            plan = self.recurrence.resolve_edit(original, validated, scope)
            if isinstance(plan, DecisionRequired):
                return plan

            with log_context(lesson_id=lesson_id):
                zone = self._teacher_zone(db, teacher_id)
                start_at = self.clock.to_instant(validated.day, validated.at, zone)
                self._apply_fields(db, lesson, validated, start_at)
                written = [lesson]
                removed: list[int] = []
                series_id = None

                if plan.kind in (EditKind.PLAIN_UPDATE, EditKind.DETACH):
                    lesson.series_id = None
                    lesson.is_recurring = False
                    lesson.recurrence_weekdays = None
                    lesson.recurrence_until = None
                elif plan.kind == EditKind.APPLY_TO_SERIES and not validated.is_recurring:
                    # recurrence switched off: the series ends here
                    series_id = plan.series_id
                    removed = self._following_scheduled(db, series_id, plan.start_from, exclude_id=lesson.id)
                    self._drop(db, removed)
                    lesson.series_id = None
                    lesson.is_recurring = False
                    lesson.recurrence_weekdays = None
                    lesson.recurrence_until = None
                else:
                    series_id = plan.series_id
                    if plan.kind == EditKind.APPLY_TO_SERIES:
                        removed = self._following_scheduled(db, series_id, plan.start_from, exclude_id=lesson.id)
                        self._drop(db, removed)
                    series = self.recurrence.generate(start_at, validated.weekdays, validated.until, zone, series_id)
                    lesson.series_id = series_id
                    lesson.is_recurring = True
                    lesson.recurrence_weekdays = series.weekdays
                    lesson.recurrence_until = series.until
                    db.flush()
                    occupied = self._occupied(db, teacher_id, series.occurrences)
                    fresh = [instant for instant in series.occurrences if instant not in occupied]
                    written += self._add_lessons(
                        db, teacher_id, validated, fresh, series_id=series_id, weekdays=series.weekdays, until=series.until
                    )

                self._commit(db, "update_lesson")
                logger.info(
                    "lesson_updated teacher_id=%s plan=%s written=%s removed=%s",
                    teacher_id,
                    plan.kind.value,
                    len(written),
                    len(removed),
                )
                return UpdateResult(
                    lessons=self._views(db, sorted(written, key=lambda row: as_utc(row.start_at))),
                    removed_ids=removed,
                    series_id=series_id,
                    start_from=plan.start_from,
                    plan=plan.kind,
                )

    def delete_lesson(
        self,
        teacher_id: int,
        lesson_id: int,
        scope: SeriesScope = SeriesScope.ASK,
    ) -> DeleteResult | DecisionRequired:
        """Delete one lesson, or the SCHEDULED rest of its series from this occurrence on."""

        with self.session_factory() as db:
            lesson = self._load(db, teacher_id, lesson_id)
            plan = self.recurrence.resolve_delete(self._views(db, [lesson])[0], scope)
            if isinstance(plan, DecisionRequired):
                return plan

            if plan.kind == DeleteKind.SINGLE:
                deleted = [lesson.id]
            else:
                deleted = self._following_scheduled(db, plan.series_id, plan.start_from)
            self._drop(db, deleted)
            self._commit(db, "delete_lesson")
            logger.info(
                "lesson_deleted teacher_id=%s lesson_id=%s kind=%s deleted=%s",
                teacher_id,
                lesson_id,
                plan.kind.value,
                len(deleted),
            )
            return DeleteResult(
                deleted_ids=deleted,
                series_id=plan.series_id,
                start_from=plan.start_from,
                kind=plan.kind,
            )
