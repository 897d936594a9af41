"""Teacher/student records plus the registered chat identities of bot users.

Profile CRUD lives outside this package; these tables only carry what the
scheduler, ledger and notifier read (timezone, preference flags, chat ids).
"""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from tutordesk.common.db import Base


class Teacher(Base):
    """Tutor account keyed by its Telegram chat id."""

    __tablename__ = "teachers"

    chat_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, default="")
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    default_lesson_duration: Mapped[int] = mapped_column(Integer, default=60)

    lesson_reminder_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    lesson_reminder_minutes: Mapped[int] = mapped_column(Integer, default=30)
    student_notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    daily_summary_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    tomorrow_summary_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_confirm_lessons: Mapped[bool] = mapped_column(Boolean, default=True)

    global_payment_reminders_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    payment_reminder_delay_hours: Mapped[int] = mapped_column(Integer, default=24)
    payment_reminder_repeat_hours: Mapped[int] = mapped_column(Integer, default=48)
    payment_reminder_max_count: Mapped[int] = mapped_column(Integer, default=3)
    notify_teacher_on_manual_payment_reminder: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_teacher_on_auto_payment_reminder: Mapped[bool] = mapped_column(Boolean, default=True)

    student_lesson_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    student_payment_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Student(Base):
    """Student profile; `telegram_id` is cached after the first handle match."""

    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, default="")
    username: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    telegram_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    is_activated: Mapped[bool] = mapped_column(Boolean, default=False)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChatUser(Base):
    """Anyone who has opened the bot; searched by normalized handle."""

    __tablename__ = "chat_users"

    telegram_user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
