"""Notification service API + lifecycle.

Consumes dispatch requests from Kafka, runs the automatic payment reminder
sweep, and exposes the teacher-initiated payment reminder.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from tutordesk.common.clock import Clock
from tutordesk.common.config import settings
from tutordesk.common.db import SessionLocal
from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.http import bind_request, http_error, install_metrics_middleware
from tutordesk.common.logging import configure_logging, logger
from tutordesk.common.metrics import metrics_response
from tutordesk.common.startup import log_startup_config
from tutordesk.common.tracing import instrument_app, setup_tracing
from tutordesk.services.notification.gateway import TelegramGateway
from tutordesk.services.notification.service import DispatchResult, NotificationDispatcher

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "telegram_bot_token",
        "payment_reminder_cooldown_minutes",
        "quiet_hours_start",
        "quiet_hours_resume",
    ],
)
dispatcher = NotificationDispatcher(SessionLocal, TelegramGateway(), clock=Clock())


class PaymentReminderRequest(BaseModel):
    student_id: int | None = None
    force: bool = False


async def payment_reminder_loop() -> None:
    while True:
        try:
            await dispatcher.run_payment_reminder_sweep()
        except SQLAlchemyError as exc:
            logger.exception("payment_reminder_sweep_failed: %s", exc)
        await asyncio.sleep(settings.payment_reminder_interval_seconds)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Start and stop background workers with the application lifecycle."""

    consumer_task = asyncio.create_task(dispatcher.start_consumers())
    sweep_task = asyncio.create_task(payment_reminder_loop())
    yield
    consumer_task.cancel()
    sweep_task.cancel()


app = FastAPI(title="TutorDesk Notification Service", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app)


@app.post("/lessons/{lesson_id}/payment-reminder", response_model=DispatchResult)
async def remind_lesson_payment(
    lesson_id: int,
    req: PaymentReminderRequest,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Send a payment reminder now; `recently_sent` inside the cooldown unless forced."""

    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        return await dispatcher.remind_lesson_payment(teacher_id, lesson_id, req.student_id, req.force)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
