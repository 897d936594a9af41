"""Lesson store used by `RangeCache` and `LessonActions`.

`LocalLessonStore` calls `SchedulingService` in-process; `HttpLessonStore`
calls the scheduling HTTP API. Both are bound to one teacher.
"""

from datetime import datetime
from typing import Protocol

import httpx

from tutordesk.common.config import settings
from tutordesk.common.errors import InvalidInput, NotFound
from tutordesk.common.logging import logger, trace_id_ctx
from tutordesk.services.scheduling.schemas import (
    DecisionRequired,
    DeleteResult,
    LessonDraft,
    LessonView,
    SeriesScope,
    UpdateResult,
)
from tutordesk.services.scheduling.service import SchedulingService


class LessonStore(Protocol):
    async def list_lessons(self, start: datetime, end: datetime) -> list[LessonView]: ...

    async def create_lesson(self, draft: LessonDraft) -> LessonView: ...

    async def create_recurring_lessons(self, draft: LessonDraft) -> list[LessonView]: ...

    async def update_lesson(
        self, lesson_id: int, draft: LessonDraft, scope: SeriesScope
    ) -> UpdateResult | DecisionRequired: ...

    async def delete_lesson(self, lesson_id: int, scope: SeriesScope) -> DeleteResult | DecisionRequired: ...


class LocalLessonStore:
    """In-process store backed directly by `SchedulingService`."""

    def __init__(self, service: SchedulingService, teacher_id: int) -> None:
        self.service = service
        self.teacher_id = teacher_id

    async def list_lessons(self, start: datetime, end: datetime) -> list[LessonView]:
        return self.service.list_lessons(self.teacher_id, start, end)

    async def create_lesson(self, draft: LessonDraft) -> LessonView:
        return self.service.create_lesson(self.teacher_id, draft)

    async def create_recurring_lessons(self, draft: LessonDraft) -> list[LessonView]:
        return self.service.create_recurring_lessons(self.teacher_id, draft)

    async def update_lesson(self, lesson_id: int, draft: LessonDraft, scope: SeriesScope) -> UpdateResult | DecisionRequired:
        return self.service.update_lesson(self.teacher_id, lesson_id, draft, scope)

    async def delete_lesson(self, lesson_id: int, scope: SeriesScope) -> DeleteResult | DecisionRequired:
        return self.service.delete_lesson(self.teacher_id, lesson_id, scope)


class HttpLessonStore:
    """Store calling the scheduling service over HTTP with a per-call timeout."""

    def __init__(
        self,
        teacher_id: int,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.teacher_id = teacher_id
        self.base_url = (base_url or settings.scheduling_url).rstrip("/")
        self.api_key = api_key or settings.api_key
        self.timeout = timeout or settings.lesson_fetch_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"x-api-key": self.api_key, "x-teacher-id": str(self.teacher_id)}
        trace_id = trace_id_ctx.get()
        if trace_id:
            headers["x-trace-id"] = trace_id
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        if resp.status_code == 400:
            raise InvalidInput(resp.json().get("detail", resp.text))
        if resp.status_code == 404:
            raise NotFound(resp.json().get("detail", resp.text))
        if resp.status_code >= 400 and resp.status_code != 409:
            logger.error("scheduling_request_failed method=%s path=%s status=%s", method, path, resp.status_code)
            resp.raise_for_status()
        return resp

    async def list_lessons(self, start: datetime, end: datetime) -> list[LessonView]:
        resp = await self._request("GET", "/lessons", params={"start": start.isoformat(), "end": end.isoformat()})
        return [LessonView.model_validate(item) for item in resp.json()]

    async def create_lesson(self, draft: LessonDraft) -> LessonView:
        resp = await self._request("POST", "/lessons", json=draft.model_dump())
        return LessonView.model_validate(resp.json())

    async def create_recurring_lessons(self, draft: LessonDraft) -> list[LessonView]:
        resp = await self._request("POST", "/lessons/recurring", json=draft.model_dump())
        return [LessonView.model_validate(item) for item in resp.json()]

    async def update_lesson(self, lesson_id: int, draft: LessonDraft, scope: SeriesScope) -> UpdateResult | DecisionRequired:
        resp = await self._request(
            "PUT", f"/lessons/{lesson_id}", params={"scope": scope.value}, json=draft.model_dump()
        )
        if resp.status_code == 409:
            return DecisionRequired.model_validate(resp.json())
        return UpdateResult.model_validate(resp.json())

    async def delete_lesson(self, lesson_id: int, scope: SeriesScope) -> DeleteResult | DecisionRequired:
        resp = await self._request("DELETE", f"/lessons/{lesson_id}", params={"scope": scope.value})
        if resp.status_code == 409:
            return DecisionRequired.model_validate(resp.json())
        return DeleteResult.model_validate(resp.json())
