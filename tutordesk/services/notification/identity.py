"""Resolve a student's chat id, matching their handle against bot users."""

from typing import Protocol

from sqlalchemy import func, select

from tutordesk.common.clock import Clock
from tutordesk.common.logging import logger
from tutordesk.services.roster.models import ChatUser, Student


def normalize_handle(value: str | None) -> str | None:
    """`" @Anna_K "` -> `"anna_k"`; blank handles normalize to None."""

    if value is None:
        return None
    handle = value.strip().lstrip("@").strip().lower()
    return handle or None


class ChatDirectory(Protocol):
    def find_chat_id(self, db, handle: str) -> int | None: ...


class DbChatDirectory:
    """Looks handles up in `chat_users`, the people who have opened the bot."""

    def find_chat_id(self, db, handle: str) -> int | None:
        return db.execute(
            select(ChatUser.telegram_user_id)
            .where(func.lower(ChatUser.username) == handle)
            .order_by(ChatUser.telegram_user_id)
            .limit(1)
        ).scalar_one_or_none()


def resolve_student_chat_id(db, student: Student, directory: ChatDirectory, clock: Clock) -> int | None:
    """Cached id of an activated student, else a fresh handle lookup.

    A successful lookup caches the id and marks the student activated; the
    caller commits.
    """

    if student.telegram_id and student.is_activated:
        return student.telegram_id

    handle = normalize_handle(student.username)
    if not handle:
        return None
    chat_id = directory.find_chat_id(db, handle)
    if chat_id is None:
        return None

    student.telegram_id = chat_id
    student.is_activated = True
    student.activated_at = clock.now()
    logger.info("student_activated student_id=%s", student.id)
    return chat_id
