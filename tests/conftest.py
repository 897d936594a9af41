"""Shared fixtures: in-memory SQLite schema, a settable clock, a fake gateway."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tutordesk.common.clock import Clock
from tutordesk.common.db import Base, make_engine, make_session_factory
from tutordesk.services.ledger.models import LedgerAccount
from tutordesk.services.ledger.service import LedgerService
from tutordesk.services.notification.gateway import GatewayResult
from tutordesk.services.notification.models import NotificationLog  # noqa: F401
from tutordesk.services.notification.service import NotificationDispatcher
from tutordesk.services.roster.models import ChatUser, Student, Teacher
from tutordesk.services.scheduling.recurrence import RecurrenceEngine
from tutordesk.services.scheduling.schemas import LessonDraft
from tutordesk.services.scheduling.service import SchedulingService

TEACHER_ID = 1001
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class SettableClock(Clock):
    def __init__(self, now: datetime) -> None:
        super().__init__(now=lambda: self.current, default_timezone="UTC")
        self.current = now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeGateway:
    """Records every send; pops queued results, else succeeds."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []
        self.results: list[GatewayResult] = []

    async def send(self, chat_id: int, text: str) -> GatewayResult:
        self.sent.append((chat_id, text))
        if self.results:
            return self.results.pop(0)
        return GatewayResult(ok=True, result={"message_id": len(self.sent)})


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return SettableClock(START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def teacher(session_factory):
    with session_factory() as db:
        row = Teacher(chat_id=TEACHER_ID, name="Maria", username="maria_t", timezone="Europe/Moscow")
        db.add(row)
        db.commit()
        return row


@pytest.fixture
def student(session_factory, teacher):
    """Anna has opened the bot, so her handle resolves."""

    with session_factory() as db:
        row = Student(name="Anna", username="@Anna_K")
        db.add(row)
        db.add(ChatUser(telegram_user_id=5005, username="anna_k"))
        db.commit()
        return row


@pytest.fixture
def other_student(session_factory, teacher):
    with session_factory() as db:
        row = Student(name="Boris", username="boris")
        db.add(row)
        db.commit()
        return row


@pytest.fixture
def scheduling(session_factory, clock):
    return SchedulingService(session_factory, clock, RecurrenceEngine(clock, horizon_days=365, max_occurrences=500))


@pytest.fixture
def ledger(session_factory, clock):
    return LedgerService(session_factory, clock)


@pytest.fixture
def dispatcher(session_factory, gateway, clock, ledger):
    return NotificationDispatcher(session_factory, gateway, clock=clock, ledger=ledger, cooldown_minutes=120)


@pytest.fixture
def make_draft():
    def build(student_ids, lesson_date="2024-01-01", start_time="18:00", **fields) -> LessonDraft:
        return LessonDraft(student_ids=list(student_ids), lesson_date=lesson_date, start_time=start_time, **fields)

    return build


@pytest.fixture
def set_balance(ledger):
    def apply(student_id: int, balance: int) -> None:
        ledger.ensure_account(TEACHER_ID, student_id)
        if balance:
            ledger.adjust(TEACHER_ID, student_id, balance)

    return apply


@pytest.fixture
def account_row(session_factory):
    def load(student_id: int) -> LedgerAccount:
        with session_factory() as db:
            return db.execute(
                select(LedgerAccount).where(LedgerAccount.teacher_id == TEACHER_ID, LedgerAccount.student_id == student_id)
            ).scalar_one()

    return load
