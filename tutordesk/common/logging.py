"""JSON logs on stdout, tagged with the teacher/lesson/trace being worked on."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from tutordesk.common.config import settings

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
teacher_id_ctx: ContextVar[str] = ContextVar("teacher_id", default="")
lesson_id_ctx: ContextVar[str] = ContextVar("lesson_id", default="")

_CONTEXT = {"trace_id": trace_id_ctx, "teacher_id": teacher_id_ctx, "lesson_id": lesson_id_ctx}
# client libraries log every request/poll at INFO
_CHATTY = ("aiokafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True


@contextmanager
def log_context(**ids) -> Iterator[None]:
    """Bind correlation ids for the duration of a block; `None` values are left alone."""

    tokens = [(_CONTEXT[name], _CONTEXT[name].set(str(value))) for name, value in ids.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Install the JSON handler on the root logger; safe to call more than once."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(teacher_id)s %(lesson_id)s %(message)s",
            rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    for name in _CHATTY:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("tutordesk")
