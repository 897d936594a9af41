"""Notification persistence: one log row per dispatch attempt.

The UNIQUE constraint on `dedupe_key` is what makes delivery at-most-once per
key; a second insert with the same key fails and the attempt is skipped.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from tutordesk.common.db import Base


class NotificationLog(Base):
    """Stored record of one message attempt; immutable once SENT or FAILED."""

    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    teacher_id: Mapped[int] = mapped_column(BigInteger, index=True)
    student_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    lesson_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, index=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str] = mapped_column(String, default="TELEGRAM")
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
