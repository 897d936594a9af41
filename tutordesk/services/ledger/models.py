"""Ledger database models: one credit account per teacher/student pair plus
its append-only event history."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from tutordesk.common.db import Base


class LedgerAccount(Base):
    """Lesson-credit balance; negative means the student owes lessons."""

    __tablename__ = "ledger_accounts"
    __table_args__ = (UniqueConstraint("teacher_id", "student_id", name="uq_ledger_account_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    teacher_id: Mapped[int] = mapped_column(BigInteger, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    custom_name: Mapped[str | None] = mapped_column(String, nullable=True)
    balance_lessons: Mapped[int] = mapped_column(Integer, default=0)
    price_per_lesson: Mapped[int] = mapped_column(Integer, default=0)
    lesson_reminders_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    payment_reminders_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentEvent(Base):
    """Immutable balance movement; the account balance is the sum of `lessons_delta`."""

    __tablename__ = "payment_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    teacher_id: Mapped[int] = mapped_column(BigInteger, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    lesson_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, index=True)
    lessons_delta: Mapped[int] = mapped_column(Integer, default=0)
    price_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    money_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    comment: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
