"""Outbound messaging gateway.

`send` never raises for delivery problems: HTTP errors, API-level refusals,
transport failures and timeouts all come back as `GatewayResult(ok=False)`.
"""

import time
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from tutordesk.common.config import settings
from tutordesk.common.logging import logger
from tutordesk.common.metrics import gateway_send_seconds
from tutordesk.common.tracing import traced


class GatewayResult(BaseModel):
    ok: bool
    result: Any = None
    error: str | None = None


class MessagingGateway(Protocol):
    async def send(self, chat_id: int, text: str) -> GatewayResult: ...


class TelegramGateway:
    """Bot API `sendMessage` over httpx with a per-call timeout."""

    def __init__(
        self,
        token: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        webapp_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "notification",
    ) -> None:
        self.token = token if token is not None else settings.telegram_bot_token
        self.api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.webapp_url = webapp_url if webapp_url is not None else settings.telegram_webapp_url
        self.transport = transport
        self.service_name = service_name

    def _payload(self, chat_id: int, text: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if self.webapp_url:
            payload["reply_markup"] = {
                "inline_keyboard": [[{"text": "Open app", "web_app": {"url": self.webapp_url}}]],
            }
        return payload

    async def send(self, chat_id: int, text: str) -> GatewayResult:
        if not self.token:
            return GatewayResult(ok=False, error="telegram bot token is not configured")

        url = f"{self.api_base}/bot{self.token}/sendMessage"
        started = time.perf_counter()
        try:
            with traced("telegram.send_message", chat_id=chat_id):
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    resp = await client.post(url, json=self._payload(chat_id, text))
        except httpx.TimeoutException:
            logger.warning("gateway_timeout chat_id=%s timeout=%s", chat_id, self.timeout)
            return GatewayResult(ok=False, error=f"timeout after {self.timeout}s")
        except httpx.HTTPError as exc:
            logger.warning("gateway_transport_error chat_id=%s error=%r", chat_id, exc)
            return GatewayResult(ok=False, error=str(exc) or exc.__class__.__name__)
        finally:
            gateway_send_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)

        try:
            data = resp.json()
        except ValueError:
            return GatewayResult(ok=False, error=f"HTTP {resp.status_code}: {resp.text[:200]}")
        if not data.get("ok"):
            return GatewayResult(ok=False, error=data.get("description") or f"HTTP {resp.status_code}")
        return GatewayResult(ok=True, result=data.get("result"))
