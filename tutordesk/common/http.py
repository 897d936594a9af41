"""Shared FastAPI plumbing: API-key guard, request context, error mapping."""

from time import perf_counter

from fastapi import FastAPI, HTTPException, Request

from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput, NotFound
from tutordesk.common.logging import teacher_id_ctx, trace_id_ctx
from tutordesk.common.metrics import http_request_duration_seconds, http_requests_total


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def bind_request(x_api_key: str | None, x_teacher_id: int | None, x_trace_id: str | None = None) -> int:
    """Check the key, bind log context and return the calling teacher's id."""

    enforce_api_key(x_api_key)
    if x_teacher_id is None:
        raise HTTPException(status_code=400, detail="missing X-Teacher-Id header")
    teacher_id_ctx.set(str(x_teacher_id))
    if x_trace_id:
        trace_id_ctx.set(x_trace_id)
    return x_teacher_id


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def install_metrics_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()
