"""Idempotent reminder dispatch.

Every dispatch goes through the same steps: preference check, recipient
resolution, `create_log` (the dedupe guard), message composition, gateway
send, and finalization of the log row. A duplicate key or a disabled
preference is a quiet skip; a failed send is recorded on the log row and
never raised.
"""

from datetime import date, datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tutordesk.common.clock import Clock, as_utc, parse_time
from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput, NotFound
from tutordesk.common.events import DISPATCH_TOPIC, EventEnvelope, consume_forever
from tutordesk.common.logging import log_context, logger
from tutordesk.common.metrics import (
    duplicate_notifications_skipped_total,
    notifications_total,
    recipients_deactivated_total,
)
from tutordesk.common.state_machine import NOTIFICATION_TRANSITIONS, validate_transition
from tutordesk.services.ledger.models import LedgerAccount
from tutordesk.services.ledger.service import LedgerService
from tutordesk.services.notification.gateway import MessagingGateway
from tutordesk.services.notification.identity import ChatDirectory, DbChatDirectory, resolve_student_chat_id
from tutordesk.services.notification.models import NotificationLog
from tutordesk.services.notification.templates import (
    LESSON_TEMPLATE_VARIABLES,
    PAYMENT_TEMPLATE_VARIABLES,
    SummaryDebt,
    SummaryLesson,
    auto_payment_reminder_text,
    daily_summary_text,
    lesson_reminder_text,
    lesson_template_values,
    manual_payment_reminder_text,
    render_template,
    teacher_payment_notice_text,
)
from tutordesk.services.roster.models import Student, Teacher
from tutordesk.services.scheduling.models import Lesson, LessonParticipant

TEACHER_LESSON_REMINDER = "TEACHER_LESSON_REMINDER"
STUDENT_LESSON_REMINDER = "STUDENT_LESSON_REMINDER"
TEACHER_DAILY_SUMMARY = "TEACHER_DAILY_SUMMARY"
TEACHER_TOMORROW_SUMMARY = "TEACHER_TOMORROW_SUMMARY"
STUDENT_PAYMENT_REMINDER = "STUDENT_PAYMENT_REMINDER"
TEACHER_PAYMENT_REMINDER = "TEACHER_PAYMENT_REMINDER"

UNREACHABLE_MARKERS = ("chat not found", "blocked by the user", "user is deactivated")


def is_unreachable_error(error: str | None) -> bool:
    """Errors after which retrying the same chat id is pointless."""

    normalized = (error or "").lower()
    return any(marker in normalized for marker in UNREACHABLE_MARKERS)


def default_dedupe_key(
    notification_type: str,
    lesson_id: int | None = None,
    student_id: int | None = None,
    scheduled_for: datetime | None = None,
) -> str:
    stamp = as_utc(scheduled_for).isoformat() if scheduled_for else "-"
    return f"{notification_type}:{lesson_id or '-'}:{student_id or '-'}:{stamp}"


class DispatchResult(BaseModel):
    """Outcome of one dispatch: sent, skipped, failed or recently_sent."""

    status: str
    reason: str | None = None
    error: str | None = None
    log_id: int | None = None
    last_sent_at: datetime | None = None


class DispatchRequest(BaseModel):
    """Payload of a `notifications.dispatch` event from the reminder trigger."""

    teacher_id: int | None = None
    lesson_id: int | None = None
    student_id: int | None = None
    scheduled_for: datetime | None = None
    minutes_before: int | None = None
    summary_date: date | None = None
    dedupe_key: str | None = None


def _skipped(reason: str, notification_type: str, service_name: str) -> DispatchResult:
    notifications_total.labels(service=service_name, type=notification_type, status="skipped").inc()
    return DispatchResult(status="skipped", reason=reason)


class NotificationDispatcher:
    """Deduplicated delivery of lesson, summary and payment reminders."""

    def __init__(
        self,
        session_factory,
        gateway: MessagingGateway,
        directory: ChatDirectory | None = None,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
        cooldown_minutes: int | None = None,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.directory = directory or DbChatDirectory()
        self.clock = clock or Clock()
        self.ledger = ledger or LedgerService(session_factory, self.clock)
        self.cooldown = timedelta(
            minutes=cooldown_minutes if cooldown_minutes is not None else settings.payment_reminder_cooldown_minutes
        )
        self.service_name = service_name

    # log rows

    def create_log(
        self,
        teacher_id: int,
        notification_type: str,
        dedupe_key: str | None,
        student_id: int | None = None,
        lesson_id: int | None = None,
        scheduled_for: datetime | None = None,
        source: str | None = None,
    ) -> NotificationLog | None:
        """Insert a PENDING log row; None means "already scheduled" (or unknown teacher)."""

        with self.session_factory() as db:
            if not db.get(Teacher, teacher_id):
                return None
            log = NotificationLog(
                teacher_id=teacher_id,
                student_id=student_id,
                lesson_id=lesson_id,
                type=notification_type,
                source=source,
                channel="TELEGRAM",
                status="PENDING",
                dedupe_key=dedupe_key,
                scheduled_for=as_utc(scheduled_for) if scheduled_for else None,
                created_at=self.clock.now(),
            )
            db.add(log)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                duplicate_notifications_skipped_total.labels(service=self.service_name, type=notification_type).inc()
                logger.info("duplicate notification skipped type=%s dedupe_key=%s", notification_type, dedupe_key)
                return None
            return log

    def finalize_log(self, log_id: int, status: str, error_text: str | None = None) -> NotificationLog:
        """PENDING -> SENT/FAILED; a finalized row cannot change again."""

        with self.session_factory() as db:
            log = db.get(NotificationLog, log_id)
            if not log:
                raise NotFound(f"notification log {log_id} not found")
            validate_transition(log.status, status, NOTIFICATION_TRANSITIONS)
            log.status = status
            log.sent_at = self.clock.now() if status == "SENT" else None
            log.error_text = error_text
            db.commit()
            return log

    def _deactivate_student(self, student_id: int, error: str) -> None:
        with self.session_factory() as db:
            student = db.get(Student, student_id)
            if student and student.is_activated:
                student.is_activated = False
                db.commit()
                recipients_deactivated_total.labels(service=self.service_name).inc()
                logger.warning("student_deactivated student_id=%s error=%s", student_id, error)

    async def _deliver(
        self,
        log: NotificationLog,
        chat_id: int,
        text: str,
        student_id: int | None = None,
    ) -> DispatchResult:
        result = await self.gateway.send(chat_id, text)
        if result.ok:
            sent = self.finalize_log(log.id, "SENT")
            notifications_total.labels(service=self.service_name, type=log.type, status="sent").inc()
            logger.info("notification_sent type=%s log_id=%s", log.type, log.id)
            return DispatchResult(status="sent", log_id=log.id, last_sent_at=sent.sent_at)

        self.finalize_log(log.id, "FAILED", result.error)
        notifications_total.labels(service=self.service_name, type=log.type, status="failed").inc()
        logger.warning("notification_failed type=%s log_id=%s error=%s", log.type, log.id, result.error)
        if student_id is not None and is_unreachable_error(result.error):
            self._deactivate_student(student_id, result.error or "")
        return DispatchResult(status="failed", error=result.error, log_id=log.id)

    # lookups

    def _account(self, db, teacher_id: int, student_id: int) -> LedgerAccount | None:
        return db.execute(
            select(LedgerAccount).where(
                LedgerAccount.teacher_id == teacher_id,
                LedgerAccount.student_id == student_id,
            )
        ).scalar_one_or_none()

    def _student_name(self, db, teacher_id: int, student_id: int) -> str:
        account = self._account(db, teacher_id, student_id)
        if account and account.custom_name and account.custom_name.strip():
            return account.custom_name.strip()
        student = db.get(Student, student_id)
        if student:
            return (student.name or "").strip() or (student.username or "").strip() or "student"
        return "student"

    # lesson reminders

    async def send_teacher_lesson_reminder(
        self,
        teacher_id: int,
        lesson_id: int,
        scheduled_for: datetime | None = None,
        minutes_before: int | None = None,
        dedupe_key: str | None = None,
    ) -> DispatchResult:
        kind = TEACHER_LESSON_REMINDER
        with self.session_factory() as db:
            teacher = db.get(Teacher, teacher_id)
            if not teacher or not teacher.lesson_reminder_enabled:
                return _skipped("disabled", kind, self.service_name)
            lesson = db.get(Lesson, lesson_id)
            if not lesson or lesson.teacher_id != teacher_id or lesson.status != "SCHEDULED":
                return _skipped("lesson_unavailable", kind, self.service_name)
            zone = teacher.timezone
            start_at = as_utc(lesson.start_at)
            duration = lesson.duration_minutes
            student_name = self._student_name(db, teacher_id, lesson.student_id)

        log = self.create_log(
            teacher_id,
            kind,
            dedupe_key or default_dedupe_key(kind, lesson_id, None, scheduled_for),
            lesson_id=lesson_id,
            scheduled_for=scheduled_for,
            source="AUTO",
        )
        if log is None:
            return _skipped("duplicate", kind, self.service_name)
        text = lesson_reminder_text("teacher", start_at, duration, zone, self.clock, student_name, minutes_before)
        return await self._deliver(log, teacher_id, text)

    async def send_student_lesson_reminder(
        self,
        lesson_id: int,
        student_id: int,
        scheduled_for: datetime | None = None,
        minutes_before: int | None = None,
        dedupe_key: str | None = None,
    ) -> DispatchResult:
        kind = STUDENT_LESSON_REMINDER
        with self.session_factory() as db:
            lesson = db.get(Lesson, lesson_id)
            if not lesson or lesson.status != "SCHEDULED":
                return _skipped("lesson_unavailable", kind, self.service_name)
            if not db.get(LessonParticipant, (lesson_id, student_id)):
                return _skipped("not_a_participant", kind, self.service_name)
            teacher = db.get(Teacher, lesson.teacher_id)
            account = self._account(db, lesson.teacher_id, student_id)
            if not teacher or not teacher.student_notifications_enabled:
                return _skipped("disabled", kind, self.service_name)
            if account and not account.lesson_reminders_enabled:
                return _skipped("disabled", kind, self.service_name)
            student = db.get(Student, student_id)
            if not student:
                return _skipped("unknown_student", kind, self.service_name)
            chat_id = resolve_student_chat_id(db, student, self.directory, self.clock)
            db.commit()
            if chat_id is None:
                return _skipped("student_not_activated", kind, self.service_name)

            teacher_id = teacher.chat_id
            zone = teacher.timezone
            template = teacher.student_lesson_template
            start_at = as_utc(lesson.start_at)
            duration = lesson.duration_minutes
            meeting_link = lesson.meeting_link
            student_name = self._student_name(db, teacher_id, student_id)

        log = self.create_log(
            teacher_id,
            kind,
            dedupe_key or default_dedupe_key(kind, lesson_id, student_id, scheduled_for),
            student_id=student_id,
            lesson_id=lesson_id,
            scheduled_for=scheduled_for,
            source="AUTO",
        )
        if log is None:
            return _skipped("duplicate", kind, self.service_name)
        if template:
            values = lesson_template_values(start_at, zone, self.clock, student_name, meeting_link)
            text = render_template(template, values, LESSON_TEMPLATE_VARIABLES).text
        else:
            text = lesson_reminder_text("student", start_at, duration, zone, self.clock, minutes_before=minutes_before)
        return await self._deliver(log, chat_id, text, student_id=student_id)

    async def send_teacher_daily_summary(
        self,
        teacher_id: int,
        scope: str = "today",
        summary_date: date | None = None,
        scheduled_for: datetime | None = None,
        dedupe_key: str | None = None,
    ) -> DispatchResult:
        """Today's (with unpaid digest) or tomorrow's lesson list for the teacher."""

        if scope not in ("today", "tomorrow"):
            raise InvalidInput(f"unknown summary scope: {scope}")
        kind = TEACHER_DAILY_SUMMARY if scope == "today" else TEACHER_TOMORROW_SUMMARY
        with self.session_factory() as db:
            teacher = db.get(Teacher, teacher_id)
            if not teacher:
                return _skipped("unknown_teacher", kind, self.service_name)
            enabled = teacher.daily_summary_enabled if scope == "today" else teacher.tomorrow_summary_enabled
            if not enabled:
                return _skipped("disabled", kind, self.service_name)
            zone = teacher.timezone
            day = summary_date or self.clock.today(zone) + timedelta(days=0 if scope == "today" else 1)
            start, end = self.clock.day_bounds(day, zone)
            lessons = db.execute(
                select(Lesson)
                .where(
                    Lesson.teacher_id == teacher_id,
                    Lesson.status != "CANCELED",
                    Lesson.start_at >= start,
                    Lesson.start_at <= end,
                )
                .order_by(Lesson.start_at)
            ).scalars().all()
            summary = []
            for lesson in lessons:
                student_ids = db.execute(
                    select(LessonParticipant.student_id)
                    .where(LessonParticipant.lesson_id == lesson.id)
                    .order_by(LessonParticipant.student_id)
                ).scalars().all()
                summary.append(
                    SummaryLesson(
                        start_at=as_utc(lesson.start_at),
                        duration_minutes=lesson.duration_minutes,
                        student_names=[self._student_name(db, teacher_id, sid) for sid in student_ids],
                    )
                )

        unpaid = None
        if scope == "today":
            unpaid = [
                SummaryDebt(start_at=item.start_at, student_name=item.student_name or "student", amount=item.amount)
                for item in self.ledger.list_unpaid(teacher_id)
            ]

        log = self.create_log(
            teacher_id,
            kind,
            dedupe_key or f"{kind}:{teacher_id}:{day.isoformat()}",
            scheduled_for=scheduled_for,
            source="AUTO",
        )
        if log is None:
            return _skipped("duplicate", kind, self.service_name)
        text = daily_summary_text(scope, day, summary, zone, self.clock, unpaid)
        return await self._deliver(log, teacher_id, text)

    # payment reminders

    async def send_student_payment_reminder(
        self,
        lesson_id: int,
        student_id: int,
        source: str = "AUTO",
        dedupe_key: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> DispatchResult:
        kind = STUDENT_PAYMENT_REMINDER
        with self.session_factory() as db:
            lesson = db.get(Lesson, lesson_id)
            if not lesson:
                return _skipped("lesson_unavailable", kind, self.service_name)
            participant = db.get(LessonParticipant, (lesson_id, student_id))
            if not participant or participant.is_paid:
                return _skipped("nothing_to_pay", kind, self.service_name)
            teacher = db.get(Teacher, lesson.teacher_id)
            student = db.get(Student, student_id)
            if not teacher or not student:
                return _skipped("unknown_recipient", kind, self.service_name)
            account = self._account(db, teacher.chat_id, student_id)
            if source == "AUTO" and not (
                teacher.global_payment_reminders_enabled
                and teacher.student_notifications_enabled
                and (account is None or account.payment_reminders_enabled)
            ):
                return _skipped("disabled", kind, self.service_name)
            chat_id = resolve_student_chat_id(db, student, self.directory, self.clock)
            db.commit()
            if chat_id is None:
                return _skipped("student_not_activated", kind, self.service_name)

            teacher_id = teacher.chat_id
            zone = teacher.timezone
            template = teacher.student_payment_template
            teacher_name = (teacher.name or "").strip() or (teacher.username or "").strip() or "your teacher"
            start_at = as_utc(lesson.start_at)
            meeting_link = lesson.meeting_link
            amount = participant.price if participant.price is not None else lesson.price
            if amount is None and account is not None:
                amount = account.price_per_lesson
            student_name = self._student_name(db, teacher_id, student_id)

        log = self.create_log(
            teacher_id,
            kind,
            dedupe_key,
            student_id=student_id,
            lesson_id=lesson_id,
            scheduled_for=scheduled_for,
            source=source,
        )
        if log is None:
            return _skipped("duplicate", kind, self.service_name)
        if template:
            values = lesson_template_values(start_at, zone, self.clock, student_name, meeting_link, amount)
            text = render_template(template, values, PAYMENT_TEMPLATE_VARIABLES).text
        elif source == "MANUAL":
            text = manual_payment_reminder_text(start_at, zone, self.clock)
        else:
            text = auto_payment_reminder_text(teacher_name, start_at, zone, self.clock, amount)
        return await self._deliver(log, chat_id, text, student_id=student_id)

    async def send_teacher_payment_reminder_notice(
        self,
        teacher_id: int,
        lesson_id: int,
        student_id: int,
        source: str,
        dedupe_key: str | None = None,
    ) -> DispatchResult:
        """Tell the teacher a payment reminder went out."""

        kind = TEACHER_PAYMENT_REMINDER
        with self.session_factory() as db:
            teacher = db.get(Teacher, teacher_id)
            lesson = db.get(Lesson, lesson_id)
            if not teacher or not lesson:
                return _skipped("unknown_recipient", kind, self.service_name)
            enabled = (
                teacher.notify_teacher_on_manual_payment_reminder
                if source == "MANUAL"
                else teacher.notify_teacher_on_auto_payment_reminder
            )
            if not enabled:
                return _skipped("disabled", kind, self.service_name)
            zone = teacher.timezone
            start_at = as_utc(lesson.start_at)
            student_name = self._student_name(db, teacher_id, student_id)

        now = self.clock.now()
        log = self.create_log(
            teacher_id,
            kind,
            dedupe_key or default_dedupe_key(f"{kind}:{source}", lesson_id, student_id, now),
            student_id=student_id,
            lesson_id=lesson_id,
            scheduled_for=now,
            source=source,
        )
        if log is None:
            return _skipped("duplicate", kind, self.service_name)
        text = teacher_payment_notice_text(source, student_name, start_at, zone, self.clock)
        return await self._deliver(log, teacher_id, text)

    def _record_reminder(self, lesson_id: int, source: str, sent_at: datetime) -> None:
        with self.session_factory() as db:
            lesson = db.get(Lesson, lesson_id)
            lesson.payment_reminder_count = (lesson.payment_reminder_count or 0) + 1
            lesson.last_payment_reminder_at = sent_at
            lesson.last_payment_reminder_source = source
            db.commit()

    async def remind_lesson_payment(
        self,
        teacher_id: int,
        lesson_id: int,
        student_id: int | None = None,
        force: bool = False,
    ) -> DispatchResult:
        """Teacher-initiated payment reminder with a resend cooldown.

        A lesson that has already started but is still SCHEDULED is completed
        first. Within the cooldown the result is `recently_sent` carrying the
        previous send time, unless `force` is set.
        """

        now = self.clock.now()
        with log_context(lesson_id=lesson_id):
            with self.session_factory() as db:
                lesson = db.get(Lesson, lesson_id)
                if not lesson or lesson.teacher_id != teacher_id:
                    raise NotFound(f"lesson {lesson_id} not found")
                status = lesson.status
                started = as_utc(lesson.start_at) <= now

            if status == "SCHEDULED" and started:
                self.ledger.complete_lesson(teacher_id, lesson_id)
            elif status != "COMPLETED":
                raise InvalidInput("lesson_not_completed")

            with self.session_factory() as db:
                lesson = db.get(Lesson, lesson_id)
                student_id = student_id or lesson.student_id
                participant = db.get(LessonParticipant, (lesson_id, student_id))
                if not participant:
                    raise NotFound(f"student {student_id} is not on lesson {lesson_id}")
                if participant.is_paid:
                    raise InvalidInput("lesson_already_paid")
                last_sent = as_utc(lesson.last_payment_reminder_at) if lesson.last_payment_reminder_at else None

            if last_sent is not None and not force and now - last_sent < self.cooldown:
                logger.info("payment_reminder_recently_sent lesson_id=%s last_sent_at=%s", lesson_id, last_sent)
                return DispatchResult(status="recently_sent", last_sent_at=last_sent)

            result = await self.send_student_payment_reminder(lesson_id, student_id, source="MANUAL")
            if result.status != "sent":
                return result
            self._record_reminder(lesson_id, "MANUAL", result.last_sent_at or now)
            await self.send_teacher_payment_reminder_notice(teacher_id, lesson_id, student_id, "MANUAL")
            return result

    def _in_quiet_hours(self, zone: str | None, now: datetime) -> bool:
        local = self.clock.to_local(now, zone).time().replace(tzinfo=None)
        resume = parse_time(settings.quiet_hours_resume)
        return local.hour >= settings.quiet_hours_start or local < resume

    async def run_payment_reminder_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Automatic reminders for completed, unpaid lessons.

        First reminder after `payment_reminder_delay_hours`, then every
        `payment_reminder_repeat_hours` up to `payment_reminder_max_count`;
        nothing goes out during the teacher's quiet hours.
        """

        now = as_utc(now) if now else self.clock.now()
        counts = {"checked": 0, "sent": 0, "skipped": 0, "failed": 0}
        with self.session_factory() as db:
            teachers = db.execute(
                select(Teacher).where(
                    Teacher.global_payment_reminders_enabled.is_(True),
                    Teacher.student_notifications_enabled.is_(True),
                )
            ).scalars().all()
            due: list[tuple[int, int, int, list[int]]] = []
            for teacher in teachers:
                if self._in_quiet_hours(teacher.timezone, now):
                    continue
                lessons = db.execute(
                    select(Lesson).where(
                        Lesson.teacher_id == teacher.chat_id,
                        Lesson.status == "COMPLETED",
                        Lesson.is_paid.is_(False),
                        Lesson.payment_reminder_count < teacher.payment_reminder_max_count,
                    )
                ).scalars().all()
                for lesson in lessons:
                    finished = as_utc(lesson.completed_at or lesson.start_at)
                    if now - finished < timedelta(hours=teacher.payment_reminder_delay_hours):
                        continue
                    last = lesson.last_payment_reminder_at
                    if last and now - as_utc(last) < timedelta(hours=teacher.payment_reminder_repeat_hours):
                        continue
                    unpaid = db.execute(
                        select(LessonParticipant.student_id).where(
                            LessonParticipant.lesson_id == lesson.id,
                            LessonParticipant.is_paid.is_(False),
                        )
                    ).scalars().all()
                    due.append((teacher.chat_id, lesson.id, lesson.payment_reminder_count or 0, list(unpaid)))

        for teacher_id, lesson_id, sent_count, student_ids in due:
            delivered = False
            for student_id in student_ids:
                counts["checked"] += 1
                result = await self.send_student_payment_reminder(
                    lesson_id,
                    student_id,
                    source="AUTO",
                    dedupe_key=f"payment-reminder:auto:{lesson_id}:{student_id}:{sent_count + 1}",
                    scheduled_for=now,
                )
                counts[result.status if result.status in counts else "skipped"] += 1
                if result.status == "sent":
                    delivered = True
                    await self.send_teacher_payment_reminder_notice(teacher_id, lesson_id, student_id, "AUTO")
            if delivered:
                self._record_reminder(lesson_id, "AUTO", now)
        logger.info("payment_reminder_sweep %s", " ".join(f"{k}={v}" for k, v in counts.items()))
        return counts

    # bus entry point

    async def handle_dispatch_request(self, event: EventEnvelope) -> DispatchResult | dict | None:
        """Route one trigger event to the matching dispatch method."""

        req = DispatchRequest(**event.payload)
        if event.event_type == "lesson_reminder.teacher":
            return await self.send_teacher_lesson_reminder(
                req.teacher_id, req.lesson_id, req.scheduled_for, req.minutes_before, req.dedupe_key
            )
        if event.event_type == "lesson_reminder.student":
            return await self.send_student_lesson_reminder(
                req.lesson_id, req.student_id, req.scheduled_for, req.minutes_before, req.dedupe_key
            )
        if event.event_type in ("summary.today", "summary.tomorrow"):
            return await self.send_teacher_daily_summary(
                req.teacher_id,
                event.event_type.split(".", 1)[1],
                req.summary_date,
                req.scheduled_for,
                req.dedupe_key,
            )
        if event.event_type == "payment_reminder.sweep":
            return await self.run_payment_reminder_sweep(req.scheduled_for)
        logger.warning("unknown dispatch event_type=%s event_id=%s", event.event_type, event.event_id)
        return None

    async def start_consumers(self) -> None:
        """Start Kafka consumer for reminder dispatch requests."""

        await consume_forever(DISPATCH_TOPIC, "notification-dispatch", self.handle_dispatch_request)
