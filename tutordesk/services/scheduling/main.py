"""HTTP surface for lesson scheduling.

Only translates HTTP into `SchedulingService` calls; series decisions that
still need a human choice come back as 409 with a `DecisionRequired` body.
"""

from datetime import datetime

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse

from tutordesk.common.clock import Clock
from tutordesk.common.config import settings
from tutordesk.common.db import SessionLocal
from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.http import bind_request, http_error, install_metrics_middleware
from tutordesk.common.logging import configure_logging
from tutordesk.common.metrics import metrics_response
from tutordesk.common.startup import log_startup_config
from tutordesk.common.tracing import instrument_app, setup_tracing
from tutordesk.services.scheduling.recurrence import RecurrenceEngine
from tutordesk.services.scheduling.schemas import (
    DecisionRequired,
    DeleteResult,
    LessonDraft,
    LessonView,
    SeriesScope,
    UpdateResult,
)
from tutordesk.services.scheduling.service import SchedulingService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["postgres_dsn", "default_timezone", "recurrence_horizon_days", "lesson_fetch_timeout_seconds"],
)
clock = Clock()
service = SchedulingService(SessionLocal, clock, RecurrenceEngine(clock))

app = FastAPI(title="TutorDesk Scheduling Service")
instrument_app(app)
install_metrics_middleware(app)


def _decision(decision: DecisionRequired) -> JSONResponse:
    return JSONResponse(status_code=409, content=decision.model_dump(mode="json"))


@app.get("/lessons", response_model=list[LessonView])
def list_lessons(
    start: datetime,
    end: datetime,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Lessons of the teacher starting inside `[start, end]`."""

    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    return service.list_lessons(teacher_id, start, end)


@app.get("/lessons/{lesson_id}", response_model=LessonView)
def get_lesson(
    lesson_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        return service.get_lesson(teacher_id, lesson_id)
    except NotFound as exc:
        raise http_error(exc) from exc


@app.post("/lessons", response_model=LessonView)
def create_lesson(
    draft: LessonDraft,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        return service.create_lesson(teacher_id, draft)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc


@app.post("/lessons/recurring", response_model=list[LessonView])
def create_recurring_lessons(
    draft: LessonDraft,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Create one weekly series; slots the teacher already has are skipped."""

    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        return service.create_recurring_lessons(teacher_id, draft)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc


@app.put("/lessons/{lesson_id}", response_model=UpdateResult)
def update_lesson(
    lesson_id: int,
    draft: LessonDraft,
    scope: SeriesScope = SeriesScope.ASK,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        result = service.update_lesson(teacher_id, lesson_id, draft, scope)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc
    if isinstance(result, DecisionRequired):
        return _decision(result)
    return result


@app.delete("/lessons/{lesson_id}", response_model=DeleteResult)
def delete_lesson(
    lesson_id: int,
    scope: SeriesScope = SeriesScope.ASK,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Delete one lesson, or this and following SCHEDULED occurrences of its series."""

    teacher_id = bind_request(x_api_key, x_teacher_id, x_trace_id)
    try:
        result = service.delete_lesson(teacher_id, lesson_id, scope)
    except (NotFound, MutationError) as exc:
        raise http_error(exc) from exc
    if isinstance(result, DecisionRequired):
        return _decision(result)
    return result


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
