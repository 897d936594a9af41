"""Ledger service API + lifecycle.

Runs the auto-confirm sweep in the background and exposes balance, payment
toggle, lesson lifecycle and reconciliation endpoints.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse

from tutordesk.common.clock import Clock
from tutordesk.common.config import settings
from tutordesk.common.db import SessionLocal
from tutordesk.common.errors import InvalidInput, MutationError, NotFound
from tutordesk.common.http import bind_request, enforce_api_key, http_error, install_metrics_middleware
from tutordesk.common.logging import configure_logging
from tutordesk.common.metrics import metrics_response
from tutordesk.common.startup import log_startup_config
from tutordesk.common.tracing import instrument_app, setup_tracing
from tutordesk.services.ledger.schemas import (
    AccountView,
    AdjustRequest,
    DebtItem,
    DebtSummary,
    EventView,
    PaymentToggleResult,
    SettlementResult,
    TogglePaidRequest,
)
from tutordesk.services.ledger.service import LedgerService
from tutordesk.services.scheduling.schemas import DecisionRequired

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["postgres_dsn", "auto_confirm_grace_minutes"],
)
service = LedgerService(SessionLocal, Clock())


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the auto-confirm sweep with the application lifecycle."""

    sweep_task = asyncio.create_task(service.auto_confirm_loop())
    yield
    sweep_task.cancel()


app = FastAPI(title="TutorDesk Ledger Service", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app)


@app.get("/accounts/{student_id}", response_model=AccountView)
def get_account(
    student_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        return AccountView.from_row(service.get_account(teacher_id, student_id))
    except NotFound as exc:
        raise http_error(exc) from exc


@app.post("/accounts/{student_id}/adjust", response_model=AccountView)
def adjust_balance(
    student_id: int,
    req: AdjustRequest,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    """Apply a manual top-up or debit to the student's balance."""

    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        account = service.adjust(
            teacher_id,
            student_id,
            req.delta,
            req.type,
            comment=req.comment,
            created_at=req.created_at,
            money_amount=req.money_amount,
        )
    except (InvalidInput, MutationError) as exc:
        raise http_error(exc) from exc
    return AccountView.from_row(account)


@app.get("/accounts/{student_id}/events", response_model=list[EventView])
def list_events(
    student_id: int,
    filter: str = "all",
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        events = service.list_events(teacher_id, student_id, filter)
    except InvalidInput as exc:
        raise http_error(exc) from exc
    return [EventView.model_validate(event, from_attributes=True) for event in events]


@app.get("/accounts/{student_id}/debt", response_model=DebtSummary)
def list_debt(
    student_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    return service.list_debt(teacher_id, student_id)


@app.get("/unpaid", response_model=list[DebtItem])
def list_unpaid(
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    return service.list_unpaid(teacher_id)


@app.post("/lessons/{lesson_id}/toggle-paid", response_model=PaymentToggleResult)
def toggle_paid(
    lesson_id: int,
    req: TogglePaidRequest,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    """Flip a participant's paid flag; 409 when the teacher still has to choose."""

    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        result = service.toggle_paid(teacher_id, lesson_id, req.student_id, req.consume_credit, req.cancel_behavior)
    except (NotFound, MutationError) as exc:
        raise http_error(exc) from exc
    if isinstance(result, DecisionRequired):
        return JSONResponse(status_code=409, content=result.model_dump(mode="json"))
    return result


@app.post("/lessons/{lesson_id}/complete", response_model=SettlementResult)
def complete_lesson(
    lesson_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        return service.complete_lesson(teacher_id, lesson_id)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc


@app.post("/lessons/{lesson_id}/cancel", response_model=SettlementResult)
def cancel_lesson(
    lesson_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        return service.cancel_lesson(teacher_id, lesson_id)
    except (InvalidInput, NotFound, MutationError) as exc:
        raise http_error(exc) from exc


@app.get("/reconciliation/{student_id}")
def reconciliation(
    student_id: int,
    x_api_key: str | None = Header(default=None),
    x_teacher_id: int | None = Header(default=None),
):
    """Replay one account's events and compare with its stored balance."""

    teacher_id = bind_request(x_api_key, x_teacher_id)
    try:
        replay = service.replay_balance(teacher_id, student_id)
    except NotFound as exc:
        raise http_error(exc) from exc
    return {**replay.model_dump(), "consistent": replay.consistent}


@app.get("/reconciliation")
def reconciliation_report(limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Return global reconciliation summary over ledger accounts."""

    enforce_api_key(x_api_key)
    return service.reconcile(limit)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
