from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from tutordesk.common.errors import InvalidInput, NotFound
from tutordesk.services.scheduling.models import Lesson, LessonParticipant
from tutordesk.services.scheduling.schemas import DecisionRequired, DeleteKind, EditKind, SeriesScope

TEACHER_ID = 1001


def utc(day: int, hour: int = 15) -> datetime:
    return datetime(2024, 1, day, hour, 0, tzinfo=timezone.utc)


def series_draft(make_draft, student_ids, **fields):
    values = dict(is_recurring=True, weekdays=[1, 3], repeat_until="2024-01-14")
    values.update(fields)
    return make_draft(student_ids, **values)


def test_create_lesson_resolves_teacher_wall_time(scheduling, student, other_student, make_draft):
    lesson = scheduling.create_lesson(TEACHER_ID, make_draft([student.id, other_student.id], price=1500))

    assert lesson.start_at == utc(1)
    assert lesson.student_id == student.id
    assert lesson.series_id is None
    assert [p.student_id for p in lesson.participants] == sorted([student.id, other_student.id])
    assert all(p.price == 1500 and not p.is_paid for p in lesson.participants)


@pytest.mark.parametrize(
    "fields",
    [
        {"student_ids": []},
        {"lesson_date": ""},
        {"start_time": "24:10"},
        {"duration_minutes": 0},
        {"duration_minutes": 1441},
        {"price": -1},
        {"is_recurring": True, "weekdays": []},
        {"is_recurring": True, "weekdays": [1], "repeat_until": "2023-12-31"},
    ],
)
def test_invalid_drafts_are_rejected_before_writing(scheduling, session_factory, student, make_draft, fields):
    draft = make_draft([student.id]).model_copy(update=fields)

    with pytest.raises(InvalidInput):
        if draft.is_recurring:
            scheduling.create_recurring_lessons(TEACHER_ID, draft)
        else:
            scheduling.create_lesson(TEACHER_ID, draft)

    with session_factory() as db:
        assert db.execute(select(Lesson)).scalars().all() == []


def test_unknown_teacher_and_foreign_lessons(scheduling, student, make_draft):
    with pytest.raises(NotFound):
        scheduling.create_lesson(42, make_draft([student.id]))
    lesson = scheduling.create_lesson(TEACHER_ID, make_draft([student.id]))
    with pytest.raises(NotFound):
        scheduling.get_lesson(42, lesson.id)


def test_recurring_create_skips_taken_slots(scheduling, student, make_draft):
    scheduling.create_lesson(TEACHER_ID, make_draft([student.id], lesson_date="2024-01-03"))

    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))

    assert [lesson.start_at for lesson in lessons] == [utc(1), utc(8), utc(10)]
    assert len({lesson.series_id for lesson in lessons}) == 1
    assert lessons[0].weekdays == [1, 3]
    assert lessons[0].until == date(2024, 1, 14)


def test_list_lessons_is_inclusive_and_ordered(scheduling, student, make_draft):
    scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))

    found = scheduling.list_lessons(TEACHER_ID, utc(3), utc(8))

    assert [lesson.start_at for lesson in found] == [utc(3), utc(8)]


def test_ambiguous_series_edit_asks_and_writes_nothing(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))

    result = scheduling.update_lesson(
        TEACHER_ID, lessons[1].id, series_draft(make_draft, [student.id], lesson_date="2024-01-03", start_time="19:00")
    )

    assert isinstance(result, DecisionRequired)
    assert scheduling.get_lesson(TEACHER_ID, lessons[1].id).start_at == utc(3)


def test_single_occurrence_edit_detaches_it(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))
    series_id = lessons[0].series_id

    result = scheduling.update_lesson(
        TEACHER_ID,
        lessons[1].id,
        series_draft(make_draft, [student.id], lesson_date="2024-01-03", start_time="19:00"),
        SeriesScope.SINGLE,
    )

    assert result.plan == EditKind.DETACH
    edited = result.lessons[0]
    assert edited.id == lessons[1].id
    assert edited.start_at == utc(3, 16)
    assert edited.series_id is None
    remaining = scheduling.list_lessons(TEACHER_ID, utc(1, 0), utc(14, 23))
    assert [lesson.series_id for lesson in remaining].count(series_id) == 3


def test_series_edit_regenerates_following_occurrences(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))
    series_id = lessons[0].series_id

    result = scheduling.update_lesson(
        TEACHER_ID,
        lessons[1].id,
        series_draft(make_draft, [student.id], lesson_date="2024-01-03", start_time="19:00"),
        SeriesScope.SERIES,
    )

    assert result.plan == EditKind.APPLY_TO_SERIES
    assert result.series_id == series_id
    assert result.start_from == utc(3)
    assert sorted(result.removed_ids) == sorted([lessons[2].id, lessons[3].id])
    assert [lesson.start_at for lesson in result.lessons] == [utc(3, 16), utc(8, 16), utc(10, 16)]
    assert result.lessons[0].id == lessons[1].id

    remaining = scheduling.list_lessons(TEACHER_ID, utc(1, 0), utc(14, 23))
    assert [lesson.start_at for lesson in remaining] == [utc(1), utc(3, 16), utc(8, 16), utc(10, 16)]
    assert {lesson.series_id for lesson in remaining} == {series_id}


def test_switching_recurrence_off_ends_the_series(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))

    result = scheduling.update_lesson(
        TEACHER_ID,
        lessons[1].id,
        make_draft([student.id], lesson_date="2024-01-03"),
        SeriesScope.SERIES,
    )

    assert sorted(result.removed_ids) == sorted([lessons[2].id, lessons[3].id])
    remaining = scheduling.list_lessons(TEACHER_ID, utc(1, 0), utc(14, 23))
    assert [lesson.id for lesson in remaining] == [lessons[0].id, lessons[1].id]
    assert remaining[1].series_id is None


def test_plain_lesson_can_become_a_series(scheduling, student, make_draft):
    lesson = scheduling.create_lesson(TEACHER_ID, make_draft([student.id]))

    result = scheduling.update_lesson(TEACHER_ID, lesson.id, series_draft(make_draft, [student.id]))

    assert result.plan == EditKind.CONVERT_TO_SERIES
    assert [row.start_at for row in result.lessons] == [utc(1), utc(3), utc(8), utc(10)]
    assert result.lessons[0].id == lesson.id
    assert {row.series_id for row in result.lessons} == {result.series_id}


def test_edit_keeps_payment_of_staying_participants(scheduling, session_factory, student, other_student, make_draft):
    lesson = scheduling.create_lesson(TEACHER_ID, make_draft([student.id, other_student.id]))
    with session_factory() as db:
        db.get(LessonParticipant, (lesson.id, student.id)).is_paid = True
        db.commit()

    result = scheduling.update_lesson(TEACHER_ID, lesson.id, make_draft([student.id], start_time="17:00"))

    edited = result.lessons[0]
    assert [(p.student_id, p.is_paid) for p in edited.participants] == [(student.id, True)]
    assert edited.is_paid is True


def test_series_delete_spares_finished_occurrences(scheduling, session_factory, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))
    with session_factory() as db:
        db.get(Lesson, lessons[2].id).status = "COMPLETED"
        db.commit()

    assert isinstance(scheduling.delete_lesson(TEACHER_ID, lessons[1].id), DecisionRequired)
    result = scheduling.delete_lesson(TEACHER_ID, lessons[1].id, SeriesScope.SERIES)

    assert result.kind == DeleteKind.SERIES
    assert sorted(result.deleted_ids) == sorted([lessons[1].id, lessons[3].id])
    remaining = scheduling.list_lessons(TEACHER_ID, utc(1, 0), utc(14, 23))
    assert [lesson.id for lesson in remaining] == [lessons[0].id, lessons[2].id]


def test_single_delete(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id]))

    result = scheduling.delete_lesson(TEACHER_ID, lessons[0].id, SeriesScope.SINGLE)

    assert result.deleted_ids == [lessons[0].id]
    assert len(scheduling.list_lessons(TEACHER_ID, utc(1, 0), utc(14, 23))) == 3


def test_open_ended_series_edit_still_asks(scheduling, student, make_draft):
    lessons = scheduling.create_recurring_lessons(TEACHER_ID, series_draft(make_draft, [student.id], repeat_until=None))
    assert lessons[0].until is None
    assert lessons[-1].start_at.date() <= date(2024, 12, 31)

    result = scheduling.update_lesson(
        TEACHER_ID,
        lessons[1].id,
        series_draft(make_draft, [student.id], lesson_date="2024-01-03", start_time="19:00", repeat_until=None),
        SeriesScope.ASK,
    )

    assert isinstance(result, DecisionRequired)
    assert scheduling.get_lesson(TEACHER_ID, lessons[1].id).start_at == utc(3)
