import asyncio
import json

import httpx

from tutordesk.services.notification.gateway import TelegramGateway


def gateway(handler, **kwargs) -> TelegramGateway:
    return TelegramGateway(
        token=kwargs.pop("token", "123:abc"),
        api_base="https://telegram.test",
        timeout=1.0,
        webapp_url=kwargs.pop("webapp_url", ""),
        transport=httpx.MockTransport(handler),
    )


def test_successful_send_posts_chat_and_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

    result = asyncio.run(gateway(handler, webapp_url="https://app.test").send(5005, "hello"))

    assert result.ok
    assert result.result == {"message_id": 77}
    assert seen["url"] == "https://telegram.test/bot123:abc/sendMessage"
    assert seen["body"]["chat_id"] == 5005
    assert seen["body"]["text"] == "hello"
    assert seen["body"]["reply_markup"]["inline_keyboard"][0][0]["web_app"] == {"url": "https://app.test"}


def test_api_refusal_is_returned_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})

    result = asyncio.run(gateway(handler).send(5005, "hello"))

    assert not result.ok
    assert result.error == "Forbidden: bot was blocked by the user"


def test_transport_errors_and_bad_bodies():
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    timed_out = asyncio.run(gateway(timeout).send(1, "x"))
    assert not timed_out.ok
    assert timed_out.error.startswith("timeout")

    garbage = asyncio.run(gateway(broken).send(1, "x"))
    assert not garbage.ok
    assert garbage.error.startswith("HTTP 502")


def test_missing_token_never_calls_the_api():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"ok": True})

    result = asyncio.run(gateway(handler, token="").send(1, "x"))

    assert not result.ok
    assert calls == []
