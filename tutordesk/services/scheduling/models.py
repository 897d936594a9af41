"""Scheduling database models.

A lesson row carries its recurrence metadata directly; occurrences of one
series share `series_id`. Payment state lives per participant so group
lessons can be settled student by student.
"""

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from tutordesk.common.db import Base


class Lesson(Base):
    """One lesson occurrence; `student_id` is the primary participant."""

    __tablename__ = "lessons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    teacher_id: Mapped[int] = mapped_column(BigInteger, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    series_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="SCHEDULED", index=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(String, nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_weekdays: Mapped[list | None] = mapped_column(JSON, nullable=True)
    recurrence_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_reminder_count: Mapped[int] = mapped_column(Integer, default=0)
    last_payment_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_reminder_source: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LessonParticipant(Base):
    """Per-student payment state and price snapshot for one lesson."""

    __tablename__ = "lesson_participants"

    lesson_id: Mapped[int] = mapped_column(ForeignKey("lessons.id", ondelete="CASCADE"), primary_key=True)
    student_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # CHARGED while an AUTO_CHARGE holds one credit for this lesson; WRITTEN_OFF once un-paid without refund
    credit_status: Mapped[str | None] = mapped_column(String, nullable=True)
