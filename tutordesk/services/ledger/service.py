"""Lesson-credit ledger coupled to the lesson lifecycle.

Every balance change is one `PaymentEvent` plus the matching change to
`balance_lessons`, written in the same transaction with the account row
locked. Nothing else writes `balance_lessons`.
"""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from tutordesk.common.clock import Clock, as_utc
from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.logging import log_context, logger
from tutordesk.common.metrics import ledger_events_total, lessons_auto_completed_total
from tutordesk.common.state_machine import validate_transition
from tutordesk.services.ledger.models import LedgerAccount, PaymentEvent
from tutordesk.services.ledger.schemas import (
    BalanceReplay,
    CancelBehavior,
    DebtItem,
    DebtSummary,
    PaymentToggleResult,
    SettlementResult,
)
from tutordesk.services.roster.models import Student, Teacher
from tutordesk.services.scheduling.models import Lesson, LessonParticipant
from tutordesk.services.scheduling.schemas import DecisionRequired

ADJUSTABLE_TYPES = {"TOP_UP", "SUBSCRIPTION", "OTHER", "ADJUSTMENT"}
TOPUP_TYPES = {"TOP_UP", "SUBSCRIPTION", "OTHER"}
EVENT_FILTERS = ("all", "topup", "manual", "charges")

REASON_BALANCE_ADJUSTMENT = "BALANCE_ADJUSTMENT"
REASON_LESSON_PAYMENT = "LESSON_PAYMENT"
REASON_LESSON_COMPLETED = "LESSON_COMPLETED"
REASON_LESSON_CANCELED = "LESSON_CANCELED"
REASON_REVERT_REFUND = "PAYMENT_REVERT_REFUND"
REASON_REVERT_WRITE_OFF = "PAYMENT_REVERT_WRITE_OFF"
CREDIT_CHARGED = "CHARGED"
CREDIT_WRITTEN_OFF = "WRITTEN_OFF"


def _matches_filter(event: PaymentEvent, kind: str) -> bool:
    if kind == "topup":
        return event.type in TOPUP_TYPES or (event.type == "ADJUSTMENT" and event.lessons_delta > 0)
    if kind == "manual":
        return event.type == "MANUAL_PAID" or event.reason == REASON_BALANCE_ADJUSTMENT
    if kind == "charges":
        return event.type == "AUTO_CHARGE" or (event.type == "ADJUSTMENT" and event.lessons_delta < 0)
    return True


class LedgerService:
    """Balance/payment state machine per (teacher, student) pair."""

    def __init__(self, session_factory, clock: Clock | None = None, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.clock = clock or Clock()
        self.service_name = service_name

    # helpers

    def _commit(self, db, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("ledger_write_failed action=%s error=%s", action, exc)
            raise MutationError(f"{action} failed") from exc

    def _account(self, db, teacher_id: int, student_id: int, price_per_lesson: int = 0) -> LedgerAccount:
        """Locked account row for the pair, created on first use."""

        account = db.execute(
            select(LedgerAccount)
            .where(LedgerAccount.teacher_id == teacher_id, LedgerAccount.student_id == student_id)
            .with_for_update()
        ).scalar_one_or_none()
        if account is None:
            account = LedgerAccount(
                teacher_id=teacher_id,
                student_id=student_id,
                balance_lessons=0,
                price_per_lesson=price_per_lesson,
            )
            db.add(account)
            db.flush()
            logger.info("ledger_account_created teacher_id=%s student_id=%s", teacher_id, student_id)
        return account

    def _append(
        self,
        db,
        account: LedgerAccount,
        event_type: str,
        delta: int,
        lesson_id: int | None = None,
        reason: str | None = None,
        comment: str | None = None,
        price_snapshot: int | None = None,
        money_amount: int | None = None,
        created_at: datetime | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            teacher_id=account.teacher_id,
            student_id=account.student_id,
            lesson_id=lesson_id,
            type=event_type,
            lessons_delta=delta,
            price_snapshot=price_snapshot,
            money_amount=money_amount,
            reason=reason,
            comment=comment,
            created_by=account.teacher_id,
            created_at=as_utc(created_at) if created_at else self.clock.now(),
        )
        db.add(event)
        account.balance_lessons += delta
        ledger_events_total.labels(service=self.service_name, type=event_type).inc()
        return event

    def _lesson(self, db, teacher_id: int, lesson_id: int) -> Lesson:
        lesson = db.get(Lesson, lesson_id)
        if not lesson or lesson.teacher_id != teacher_id:
            raise NotFound(f"lesson {lesson_id} not found")
        return lesson

    def _participants(self, db, lesson_id: int) -> list[LessonParticipant]:
        return list(
            db.execute(
                select(LessonParticipant)
                .where(LessonParticipant.lesson_id == lesson_id)
                .order_by(LessonParticipant.student_id)
                .with_for_update()
            ).scalars()
        )

    def _refresh_paid(self, lesson: Lesson, participants: list[LessonParticipant]) -> None:
        paid = bool(participants) and all(p.is_paid for p in participants)
        if paid and not lesson.is_paid:
            lesson.paid_at = self.clock.now()
        elif not paid:
            lesson.paid_at = None
        lesson.is_paid = paid

    # accounts

    def ensure_account(self, teacher_id: int, student_id: int, price_per_lesson: int = 0) -> LedgerAccount:
        with self.session_factory() as db:
            account = self._account(db, teacher_id, student_id, price_per_lesson)
            self._commit(db, "ensure_account")
            return account

    def get_account(self, teacher_id: int, student_id: int) -> LedgerAccount:
        with self.session_factory() as db:
            account = db.execute(
                select(LedgerAccount).where(
                    LedgerAccount.teacher_id == teacher_id,
                    LedgerAccount.student_id == student_id,
                )
            ).scalar_one_or_none()
            if not account:
                raise NotFound(f"no ledger account for student {student_id}")
            return account

    def adjust(
        self,
        teacher_id: int,
        student_id: int,
        delta: int,
        type: str | None = None,
        comment: str | None = None,
        created_at: datetime | None = None,
        money_amount: int | None = None,
    ) -> LedgerAccount:
        """Apply a manual balance change as one event.

        Debits are always recorded as ADJUSTMENT whatever type was asked for.
        A zero delta records nothing and returns the account as it stands.
        """

        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidInput(f"delta must be an integer, got {delta!r}")
        if delta < 0:
            event_type = "ADJUSTMENT"
        else:
            event_type = type or "TOP_UP"
        if event_type not in ADJUSTABLE_TYPES:
            raise InvalidInput(f"event type {event_type} cannot be used for a balance adjustment")
        if money_amount is not None and money_amount < 0:
            raise InvalidInput("money amount must not be negative")

        with self.session_factory() as db:
            account = self._account(db, teacher_id, student_id)
            if delta == 0:
                # nothing to record
                self._commit(db, "adjust")
                return account
            self._append(
                db,
                account,
                event_type,
                delta,
                reason=REASON_BALANCE_ADJUSTMENT,
                comment=comment,
                money_amount=money_amount,
                created_at=created_at,
            )
            self._commit(db, "adjust")
            logger.info(
                "balance_adjusted teacher_id=%s student_id=%s delta=%s type=%s balance=%s",
                teacher_id,
                student_id,
                delta,
                event_type,
                account.balance_lessons,
            )
            return account

    # payment state

    def toggle_paid(
        self,
        teacher_id: int,
        lesson_id: int,
        student_id: int,
        consume_credit: bool | None = None,
        cancel_behavior: CancelBehavior | None = None,
    ) -> PaymentToggleResult | DecisionRequired:
        """Flip one participant's paid flag.

        Marking paid with a positive balance needs `consume_credit`; marking
        unpaid needs `cancel_behavior`. Without them a `DecisionRequired` is
        returned and nothing is written.
        """

        with self.session_factory() as db:
            lesson = self._lesson(db, teacher_id, lesson_id)
            participants = self._participants(db, lesson_id)
            participant = next((p for p in participants if p.student_id == student_id), None)
            if participant is None:
                raise NotFound(f"student {student_id} is not on lesson {lesson_id}")
            account = self._account(db, teacher_id, student_id)

            if not participant.is_paid:
                if account.balance_lessons > 0 and consume_credit is None:
                    return DecisionRequired(
                        action="consume_credit",
                        lesson_id=lesson_id,
                        series_id=lesson.series_id,
                        student_id=student_id,
                        options=["consume_credit", "keep_balance"],
                    )
                price = participant.price if participant.price is not None else lesson.price
                if price is None:
                    price = account.price_per_lesson
                if consume_credit and account.balance_lessons > 0:
                    event = self._append(
                        db, account, "AUTO_CHARGE", -1, lesson_id, REASON_LESSON_PAYMENT, price_snapshot=price
                    )
                    participant.credit_status = CREDIT_CHARGED
                else:
                    event = self._append(
                        db, account, "MANUAL_PAID", 0, lesson_id, REASON_LESSON_PAYMENT, price_snapshot=price
                    )
                participant.is_paid = True
            else:
                if cancel_behavior is None:
                    return DecisionRequired(
                        action="cancel_payment",
                        lesson_id=lesson_id,
                        series_id=lesson.series_id,
                        student_id=student_id,
                        options=[CancelBehavior.REFUND.value, CancelBehavior.WRITE_OFF.value],
                    )
                if CancelBehavior(cancel_behavior) == CancelBehavior.REFUND:
                    event = self._append(db, account, "ADJUSTMENT", 1, lesson_id, REASON_REVERT_REFUND)
                    if participant.credit_status == CREDIT_CHARGED:
                        participant.credit_status = None
                else:
                    event = self._append(db, account, "ADJUSTMENT", 0, lesson_id, REASON_REVERT_WRITE_OFF)
                    if participant.credit_status == CREDIT_CHARGED:
                        participant.credit_status = CREDIT_WRITTEN_OFF
                participant.is_paid = False

            self._refresh_paid(lesson, participants)
            self._commit(db, "toggle_paid")
            logger.info(
                "payment_toggled teacher_id=%s lesson_id=%s student_id=%s paid=%s event=%s balance=%s",
                teacher_id,
                lesson_id,
                student_id,
                participant.is_paid,
                event.type,
                account.balance_lessons,
            )
            return PaymentToggleResult(
                lesson_id=lesson_id,
                student_id=student_id,
                is_paid=participant.is_paid,
                lesson_is_paid=lesson.is_paid,
                balance_lessons=account.balance_lessons,
                event_type=event.type,
                lessons_delta=event.lessons_delta,
            )

    # lifecycle

    def _complete(self, db, lesson: Lesson) -> list[int]:
        """SCHEDULED -> COMPLETED, then charge one credit from every unpaid participant who has one."""

        validate_transition(lesson.status, "COMPLETED")
        lesson.status = "COMPLETED"
        lesson.completed_at = self.clock.now()
        participants = self._participants(db, lesson.id)
        charged = []
        for participant in participants:
            # a written-off credit was already spent on this lesson; it is not charged twice
            if participant.is_paid or participant.credit_status == CREDIT_WRITTEN_OFF:
                continue
            account = self._account(db, lesson.teacher_id, participant.student_id)
            if account.balance_lessons <= 0:
                continue
            self._append(
                db,
                account,
                "AUTO_CHARGE",
                -1,
                lesson.id,
                REASON_LESSON_COMPLETED,
                price_snapshot=account.price_per_lesson,
            )
            participant.is_paid = True
            participant.credit_status = CREDIT_CHARGED
            charged.append(participant.student_id)
        self._refresh_paid(lesson, participants)
        return charged

    def complete_lesson(self, teacher_id: int, lesson_id: int) -> SettlementResult:
        with self.session_factory() as db:
            lesson = self._lesson(db, teacher_id, lesson_id)
            charged = self._complete(db, lesson)
            self._commit(db, "complete_lesson")
            logger.info("lesson_completed teacher_id=%s lesson_id=%s charged=%s", teacher_id, lesson_id, charged)
            return SettlementResult(lesson_id=lesson_id, status=lesson.status, charged_student_ids=charged)

    def cancel_lesson(self, teacher_id: int, lesson_id: int) -> SettlementResult:
        """SCHEDULED -> CANCELED; a credit still held by an AUTO_CHARGE goes back, a written-off one does not."""

        with self.session_factory() as db:
            lesson = self._lesson(db, teacher_id, lesson_id)
            validate_transition(lesson.status, "CANCELED")
            lesson.status = "CANCELED"
            participants = self._participants(db, lesson_id)
            refunded = []
            for participant in participants:
                if participant.credit_status != CREDIT_CHARGED:
                    continue
                account = self._account(db, teacher_id, participant.student_id)
                self._append(db, account, "ADJUSTMENT", 1, lesson_id, REASON_LESSON_CANCELED)
                participant.credit_status = None
                participant.is_paid = False
                refunded.append(participant.student_id)
            self._refresh_paid(lesson, participants)
            self._commit(db, "cancel_lesson")
            logger.info("lesson_canceled teacher_id=%s lesson_id=%s refunded=%s", teacher_id, lesson_id, refunded)
            return SettlementResult(lesson_id=lesson_id, status=lesson.status, refunded_student_ids=refunded)

    def auto_confirm_due_lessons(self, now: datetime | None = None) -> list[int]:
        """Complete SCHEDULED lessons of auto-confirm teachers once end + grace has passed."""

        now = as_utc(now) if now else self.clock.now()
        grace = timedelta(minutes=settings.auto_confirm_grace_minutes)
        with self.session_factory() as db:
            rows = db.execute(
                select(Lesson.id, Lesson.start_at, Lesson.duration_minutes)
                .join(Teacher, Teacher.chat_id == Lesson.teacher_id)
                .where(
                    Teacher.auto_confirm_lessons.is_(True),
                    Lesson.status == "SCHEDULED",
                    Lesson.start_at <= now,
                )
                .order_by(Lesson.start_at)
            ).all()
        due = [
            row.id
            for row in rows
            if as_utc(row.start_at) + timedelta(minutes=row.duration_minutes) + grace <= now
        ]

        completed = []
        for lesson_id in due:
            with log_context(lesson_id=lesson_id), self.session_factory() as db:
                lesson = db.get(Lesson, lesson_id)
                if lesson is None or lesson.status != "SCHEDULED":
                    continue
                try:
                    self._complete(db, lesson)
                    self._commit(db, "auto_confirm")
                except MutationError as exc:
                    logger.error("auto_confirm_failed lesson_id=%s error=%s", lesson_id, exc)
                    continue
            completed.append(lesson_id)
            lessons_auto_completed_total.labels(service=self.service_name).inc()
        if completed:
            logger.info("auto_confirm_sweep completed=%s", len(completed))
        return completed

    async def auto_confirm_loop(self, interval_seconds: float | None = None) -> None:
        """Run the auto-confirm sweep forever."""

        while True:
            try:
                self.auto_confirm_due_lessons()
            except SQLAlchemyError as exc:
                logger.exception("auto_confirm_sweep_failed: %s", exc)
            await asyncio.sleep(interval_seconds or settings.auto_confirm_interval_seconds)

    # projections

    def _debt_items(self, db, teacher_id: int, conditions) -> list[DebtItem]:
        rows = db.execute(
            select(Lesson, LessonParticipant, LedgerAccount, Student.name)
            .join(LessonParticipant, LessonParticipant.lesson_id == Lesson.id)
            .outerjoin(
                LedgerAccount,
                (LedgerAccount.teacher_id == Lesson.teacher_id)
                & (LedgerAccount.student_id == LessonParticipant.student_id),
            )
            .outerjoin(Student, Student.id == LessonParticipant.student_id)
            .where(
                Lesson.teacher_id == teacher_id,
                LessonParticipant.is_paid.is_(False),
                Lesson.status != "CANCELED",
                *conditions,
            )
            .order_by(Lesson.start_at, Lesson.id, LessonParticipant.student_id)
        ).all()
        items = []
        for lesson, participant, account, student_name in rows:
            amount = participant.price if participant.price is not None else lesson.price
            if amount is None:
                amount = account.price_per_lesson if account else 0
            items.append(
                DebtItem(
                    lesson_id=lesson.id,
                    student_id=participant.student_id,
                    student_name=(account.custom_name if account and account.custom_name else student_name),
                    start_at=as_utc(lesson.start_at),
                    duration_minutes=lesson.duration_minutes,
                    status=lesson.status,
                    amount=amount,
                )
            )
        return items

    def list_debt(self, teacher_id: int, student_id: int) -> DebtSummary:
        """Unpaid, non-canceled lessons of one student, oldest first."""

        with self.session_factory() as db:
            items = self._debt_items(db, teacher_id, [LessonParticipant.student_id == student_id])
        return DebtSummary(items=items, count=len(items), total=sum(item.amount for item in items))

    def list_unpaid(self, teacher_id: int, now: datetime | None = None) -> list[DebtItem]:
        """Teacher-wide unpaid items for lessons that are completed or already started."""

        now = as_utc(now) if now else self.clock.now()
        with self.session_factory() as db:
            return self._debt_items(
                db,
                teacher_id,
                [(Lesson.status == "COMPLETED") | (Lesson.start_at <= now)],
            )

    def list_events(self, teacher_id: int, student_id: int, filter: str = "all") -> list[PaymentEvent]:
        if filter not in EVENT_FILTERS:
            raise InvalidInput(f"unknown event filter: {filter}")
        with self.session_factory() as db:
            events = db.execute(
                select(PaymentEvent)
                .where(PaymentEvent.teacher_id == teacher_id, PaymentEvent.student_id == student_id)
                .order_by(PaymentEvent.created_at.desc())
            ).scalars().all()
        return [event for event in events if _matches_filter(event, filter)]

    # integrity

    def replay_balance(self, teacher_id: int, student_id: int) -> BalanceReplay:
        """Re-sum the account's events in creation order and compare with the stored balance."""

        with self.session_factory() as db:
            account = db.execute(
                select(LedgerAccount).where(
                    LedgerAccount.teacher_id == teacher_id,
                    LedgerAccount.student_id == student_id,
                )
            ).scalar_one_or_none()
            if not account:
                raise NotFound(f"no ledger account for student {student_id}")
            deltas = db.execute(
                select(PaymentEvent.lessons_delta)
                .where(PaymentEvent.teacher_id == teacher_id, PaymentEvent.student_id == student_id)
                .order_by(PaymentEvent.created_at)
            ).scalars().all()
            running = 0
            for delta in deltas:
                running += delta
            return BalanceReplay(
                teacher_id=teacher_id,
                student_id=student_id,
                balance_lessons=account.balance_lessons,
                replayed_balance=running,
                events=len(deltas),
            )

    def reconcile(self, limit: int = 1000) -> dict:
        """Return global reconciliation summary over ledger accounts."""

        with self.session_factory() as db:
            sums = (
                select(
                    PaymentEvent.teacher_id,
                    PaymentEvent.student_id,
                    func.sum(PaymentEvent.lessons_delta).label("replayed"),
                    func.count(PaymentEvent.id).label("event_count"),
                )
                .group_by(PaymentEvent.teacher_id, PaymentEvent.student_id)
                .subquery()
            )
            rows = db.execute(
                select(
                    LedgerAccount.teacher_id,
                    LedgerAccount.student_id,
                    LedgerAccount.balance_lessons,
                    sums.c.replayed,
                    sums.c.event_count,
                )
                .outerjoin(
                    sums,
                    (sums.c.teacher_id == LedgerAccount.teacher_id) & (sums.c.student_id == LedgerAccount.student_id),
                )
                .order_by(LedgerAccount.teacher_id, LedgerAccount.student_id)
                .limit(limit)
            ).all()
            mismatched = [
                {
                    "teacher_id": row.teacher_id,
                    "student_id": row.student_id,
                    "balance_lessons": row.balance_lessons,
                    "replayed_balance": int(row.replayed or 0),
                    "event_count": int(row.event_count or 0),
                }
                for row in rows
                if int(row.replayed or 0) != row.balance_lessons
            ]
            if mismatched:
                logger.warning("ledger_reconcile_mismatch count=%s", len(mismatched))
            return {
                "accounts_checked": len(rows),
                "mismatched_count": len(mismatched),
                "mismatched_accounts": mismatched,
            }
