"""initial tutordesk schema

Revision ID: 0001_tutordesk
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_tutordesk"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "teachers",
        sa.Column("chat_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("default_lesson_duration", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("lesson_reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("lesson_reminder_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("student_notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("daily_summary_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tomorrow_summary_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_confirm_lessons", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("global_payment_reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payment_reminder_delay_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("payment_reminder_repeat_hours", sa.Integer(), nullable=False, server_default="48"),
        sa.Column("payment_reminder_max_count", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("notify_teacher_on_manual_payment_reminder", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_teacher_on_auto_payment_reminder", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("student_lesson_template", sa.Text(), nullable=True),
        sa.Column("student_payment_template", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("chat_id"),
    )

    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("telegram_id", sa.BigInteger(), nullable=True),
        sa.Column("is_activated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_students_username", "students", ["username"])
    op.create_index("ix_students_telegram_id", "students", ["telegram_id"])

    op.create_table(
        "chat_users",
        sa.Column("telegram_user_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("telegram_user_id"),
    )
    op.create_index("ix_chat_users_username", "chat_users", ["username"])

    op.create_table(
        "lessons",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("teacher_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("series_id", sa.String(), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="SCHEDULED"),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("color", sa.String(), nullable=True),
        sa.Column("meeting_link", sa.String(), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurrence_weekdays", sa.JSON(), nullable=True),
        sa.Column("recurrence_until", sa.Date(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_payment_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_reminder_source", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lessons_teacher_id", "lessons", ["teacher_id"])
    op.create_index("ix_lessons_student_id", "lessons", ["student_id"])
    op.create_index("ix_lessons_series_id", "lessons", ["series_id"])
    op.create_index("ix_lessons_start_at", "lessons", ["start_at"])
    op.create_index("ix_lessons_status", "lessons", ["status"])

    op.create_table(
        "lesson_participants",
        sa.Column("lesson_id", sa.Integer(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("credit_status", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["lesson_id"], ["lessons.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("lesson_id", "student_id"),
    )

    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("teacher_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("custom_name", sa.String(), nullable=True),
        sa.Column("balance_lessons", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_per_lesson", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lesson_reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payment_reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("teacher_id", "student_id", name="uq_ledger_account_pair"),
    )
    op.create_index("ix_ledger_accounts_teacher_id", "ledger_accounts", ["teacher_id"])
    op.create_index("ix_ledger_accounts_student_id", "ledger_accounts", ["student_id"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("teacher_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("lesson_id", sa.Integer(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("lessons_delta", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_snapshot", sa.Integer(), nullable=True),
        sa.Column("money_amount", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("comment", sa.String(), nullable=True),
        sa.Column("created_by", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_events_teacher_id", "payment_events", ["teacher_id"])
    op.create_index("ix_payment_events_student_id", "payment_events", ["student_id"])
    op.create_index("ix_payment_events_lesson_id", "payment_events", ["lesson_id"])
    op.create_index("ix_payment_events_type", "payment_events", ["type"])
    op.create_index("ix_payment_events_created_at", "payment_events", ["created_at"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("teacher_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=True),
        sa.Column("lesson_id", sa.Integer(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False, server_default="TELEGRAM"),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key"),
    )
    op.create_index("ix_notification_logs_teacher_id", "notification_logs", ["teacher_id"])
    op.create_index("ix_notification_logs_student_id", "notification_logs", ["student_id"])
    op.create_index("ix_notification_logs_lesson_id", "notification_logs", ["lesson_id"])
    op.create_index("ix_notification_logs_type", "notification_logs", ["type"])
    op.create_index("ix_notification_logs_status", "notification_logs", ["status"])


def downgrade() -> None:
    op.drop_table("notification_logs")
    op.drop_table("payment_events")
    op.drop_table("ledger_accounts")
    op.drop_table("lesson_participants")
    op.drop_table("lessons")
    op.drop_table("chat_users")
    op.drop_table("students")
    op.drop_table("teachers")
