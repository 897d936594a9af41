from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from tutordesk.common.errors import InvalidInput, NotFound
from tutordesk.services.ledger.models import LedgerAccount, PaymentEvent
from tutordesk.services.ledger.schemas import CancelBehavior
from tutordesk.services.roster.models import Teacher
from tutordesk.services.scheduling.models import Lesson, LessonParticipant
from tutordesk.services.scheduling.schemas import DecisionRequired

TEACHER_ID = 1001


@pytest.fixture
def lesson(scheduling, student, make_draft):
    # 2024-01-01 09:00 UTC, three hours before the test clock
    return scheduling.create_lesson(TEACHER_ID, make_draft([student.id], start_time="12:00", price=1500))


def participant(session_factory, lesson_id, student_id) -> LessonParticipant:
    with session_factory() as db:
        return db.get(LessonParticipant, (lesson_id, student_id))


def test_adjust_types_and_sign_rules(ledger, student, account_row):
    ledger.adjust(TEACHER_ID, student.id, 5)
    ledger.adjust(TEACHER_ID, student.id, -2, "TOP_UP", comment="returned two")
    ledger.adjust(TEACHER_ID, student.id, 4, "SUBSCRIPTION", money_amount=6000)

    assert account_row(student.id).balance_lessons == 7
    types = sorted((e.type, e.lessons_delta) for e in ledger.list_events(TEACHER_ID, student.id))
    assert types == [("ADJUSTMENT", -2), ("SUBSCRIPTION", 4), ("TOP_UP", 5)]


@pytest.mark.parametrize("delta, kind", [(True, None), (1.5, None), (2, "AUTO_CHARGE"), (1, "MANUAL_PAID")])
def test_adjust_rejects_bad_input(ledger, student, delta, kind):
    with pytest.raises(InvalidInput):
        ledger.adjust(TEACHER_ID, student.id, delta, kind)


@pytest.mark.parametrize("kind", ["AUTO_CHARGE", "MANUAL_PAID", "TOP_UP", None])
def test_debit_is_recorded_as_adjustment_whatever_the_type(ledger, student, account_row, kind):
    ledger.adjust(TEACHER_ID, student.id, 3)

    ledger.adjust(TEACHER_ID, student.id, -1, kind)

    assert account_row(student.id).balance_lessons == 2
    debits = [(e.type, e.lessons_delta) for e in ledger.list_events(TEACHER_ID, student.id) if e.lessons_delta < 0]
    assert debits == [("ADJUSTMENT", -1)]


def test_zero_adjustment_records_nothing(ledger, student, set_balance):
    set_balance(student.id, 2)
    before = len(ledger.list_events(TEACHER_ID, student.id))

    account = ledger.adjust(TEACHER_ID, student.id, 0, "TOP_UP")

    assert account.balance_lessons == 2
    assert len(ledger.list_events(TEACHER_ID, student.id)) == before


def test_toggle_with_credit_asks_then_charges_and_refunds(ledger, session_factory, lesson, student, set_balance):
    set_balance(student.id, 2)

    decision = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id)
    assert isinstance(decision, DecisionRequired)
    assert decision.action == "consume_credit"
    assert not participant(session_factory, lesson.id, student.id).is_paid

    paid = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)
    assert (paid.is_paid, paid.lesson_is_paid, paid.balance_lessons, paid.event_type) == (True, True, 1, "AUTO_CHARGE")

    decision = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id)
    assert decision.action == "cancel_payment"
    assert decision.options == ["REFUND", "WRITE_OFF"]

    unpaid = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, cancel_behavior=CancelBehavior.REFUND)
    assert (unpaid.is_paid, unpaid.balance_lessons, unpaid.lessons_delta) == (False, 2, 1)
    assert ledger.replay_balance(TEACHER_ID, student.id).consistent


def test_toggle_without_credit_marks_manual_payment(ledger, lesson, student, account_row):
    result = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id)

    assert (result.is_paid, result.event_type, result.lessons_delta, result.balance_lessons) == (
        True,
        "MANUAL_PAID",
        0,
        0,
    )
    undone = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, cancel_behavior=CancelBehavior.WRITE_OFF)
    assert (undone.is_paid, undone.balance_lessons) == (False, 0)
    assert account_row(student.id).balance_lessons == 0


def test_keep_balance_choice_records_manual_payment(ledger, lesson, student, set_balance):
    set_balance(student.id, 1)

    result = ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=False)

    assert (result.event_type, result.balance_lessons) == ("MANUAL_PAID", 1)


def test_toggle_unknown_lesson_or_participant(ledger, lesson, student, other_student):
    with pytest.raises(NotFound):
        ledger.toggle_paid(TEACHER_ID, lesson.id + 100, student.id)
    with pytest.raises(NotFound):
        ledger.toggle_paid(TEACHER_ID, lesson.id, other_student.id)
    with pytest.raises(NotFound):
        ledger.toggle_paid(42, lesson.id, student.id)


def test_completion_charges_participants_with_credit(
    ledger, scheduling, session_factory, student, other_student, make_draft, set_balance
):
    group = scheduling.create_lesson(TEACHER_ID, make_draft([student.id, other_student.id], start_time="12:00", price=900))
    set_balance(student.id, 3)

    settled = ledger.complete_lesson(TEACHER_ID, group.id)

    assert settled.status == "COMPLETED"
    assert settled.charged_student_ids == [student.id]
    assert participant(session_factory, group.id, student.id).is_paid
    assert not participant(session_factory, group.id, other_student.id).is_paid
    debt = ledger.list_debt(TEACHER_ID, other_student.id)
    assert (debt.count, debt.total) == (1, 900)
    assert ledger.get_account(TEACHER_ID, other_student.id).balance_lessons == 0

    with pytest.raises(InvalidInput):
        ledger.complete_lesson(TEACHER_ID, group.id)


def test_cancel_returns_credit_taken_for_the_lesson(ledger, session_factory, lesson, student, set_balance, account_row):
    set_balance(student.id, 1)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)
    assert account_row(student.id).balance_lessons == 0

    result = ledger.cancel_lesson(TEACHER_ID, lesson.id)

    assert result.refunded_student_ids == [student.id]
    assert account_row(student.id).balance_lessons == 1
    assert not participant(session_factory, lesson.id, student.id).is_paid
    assert ledger.list_debt(TEACHER_ID, student.id).count == 0


def test_prepaid_lesson_is_not_charged_again_on_completion(ledger, session_factory, lesson, student, set_balance, account_row):
    set_balance(student.id, 2)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)

    ledger.complete_lesson(TEACHER_ID, lesson.id)

    assert account_row(student.id).balance_lessons == 1
    charges = ledger.list_events(TEACHER_ID, student.id, "charges")
    assert [e.type for e in charges] == ["AUTO_CHARGE"]


def test_written_off_lesson_is_not_marked_paid_on_completion(
    ledger, session_factory, lesson, student, set_balance, account_row
):
    set_balance(student.id, 2)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, cancel_behavior=CancelBehavior.WRITE_OFF)

    settled = ledger.complete_lesson(TEACHER_ID, lesson.id)

    assert settled.charged_student_ids == []
    assert not participant(session_factory, lesson.id, student.id).is_paid
    assert account_row(student.id).balance_lessons == 1
    assert ledger.list_debt(TEACHER_ID, student.id).count == 1


def test_cancel_does_not_refund_written_off_credit(ledger, session_factory, lesson, student, set_balance, account_row):
    set_balance(student.id, 1)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, cancel_behavior=CancelBehavior.WRITE_OFF)

    result = ledger.cancel_lesson(TEACHER_ID, lesson.id)

    assert result.refunded_student_ids == []
    assert account_row(student.id).balance_lessons == 0
    assert ledger.replay_balance(TEACHER_ID, student.id).consistent


def test_auto_confirm_completes_only_finished_lessons(ledger, scheduling, session_factory, clock, student, make_draft):
    finished = scheduling.create_lesson(TEACHER_ID, make_draft([student.id], start_time="12:00"))
    running = scheduling.create_lesson(TEACHER_ID, make_draft([student.id], start_time="14:30"))
    later = scheduling.create_lesson(TEACHER_ID, make_draft([student.id], start_time="20:00"))

    completed = ledger.auto_confirm_due_lessons()

    assert completed == [finished.id]
    with session_factory() as db:
        statuses = {row.id: row.status for row in db.execute(select(Lesson)).scalars()}
    assert statuses == {finished.id: "COMPLETED", running.id: "SCHEDULED", later.id: "SCHEDULED"}


def test_auto_confirm_respects_teacher_setting(ledger, session_factory, lesson):
    with session_factory() as db:
        db.get(Teacher, TEACHER_ID).auto_confirm_lessons = False
        db.commit()

    assert ledger.auto_confirm_due_lessons() == []


def test_unpaid_lists_started_lessons_only(ledger, scheduling, lesson, student, make_draft):
    scheduling.create_lesson(TEACHER_ID, make_draft([student.id], lesson_date="2024-01-05"))

    unpaid = ledger.list_unpaid(TEACHER_ID)

    assert [(item.lesson_id, item.amount, item.student_name) for item in unpaid] == [(lesson.id, 1500, "Anna")]


def test_event_filters(ledger, lesson, student, set_balance):
    set_balance(student.id, 3)
    ledger.adjust(TEACHER_ID, student.id, -1)
    ledger.toggle_paid(TEACHER_ID, lesson.id, student.id, consume_credit=True)

    assert sorted(e.type for e in ledger.list_events(TEACHER_ID, student.id, "topup")) == ["TOP_UP"]
    assert sorted(e.lessons_delta for e in ledger.list_events(TEACHER_ID, student.id, "charges")) == [-1, -1]
    assert len(ledger.list_events(TEACHER_ID, student.id, "manual")) == 2
    with pytest.raises(InvalidInput):
        ledger.list_events(TEACHER_ID, student.id, "everything")


def test_reconcile_detects_tampered_balance(ledger, session_factory, student, other_student, set_balance):
    set_balance(student.id, 2)
    set_balance(other_student.id, 1)
    assert ledger.reconcile()["mismatched_count"] == 0

    with session_factory() as db:
        account = db.execute(select(LedgerAccount).where(LedgerAccount.student_id == other_student.id)).scalar_one()
        account.balance_lessons = 5
        db.commit()

    report = ledger.reconcile()
    assert report["accounts_checked"] == 2
    assert report["mismatched_count"] == 1
    assert report["mismatched_accounts"][0]["replayed_balance"] == 1
    replay = ledger.replay_balance(TEACHER_ID, other_student.id)
    assert not replay.consistent
    assert replay.events == 1


def test_backdated_adjustment_keeps_its_timestamp(ledger, session_factory, student):
    when = datetime(2023, 12, 20, 10, 0, tzinfo=timezone.utc)

    ledger.adjust(TEACHER_ID, student.id, 2, created_at=when)

    with session_factory() as db:
        event = db.execute(select(PaymentEvent)).scalar_one()
    assert event.created_at.replace(tzinfo=timezone.utc) == when
