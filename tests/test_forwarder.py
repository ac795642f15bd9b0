from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

import httpx
import pytest
from starlette.requests import Request

from ai_proxy.gateway.forwarder import TIMEOUT_RESPONSE_BODY, ForwardingEngine


def _request(
    method: str = "GET",
    path: str = "/groq/v1/models",
    headers: list[tuple[bytes, bytes]] | None = None,
    body_chunks: list[bytes] | None = None,
) -> Request:
    chunks = list(body_chunks or [])

    async def receive() -> dict[str, Any]:
        if chunks:
            chunk = chunks.pop(0)
            return {"type": "http.request", "body": chunk, "more_body": bool(chunks)}
        return {"type": "http.request", "body": b"", "more_body": False}

    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": headers or [],
        "scheme": "http",
        "server": ("testserver", 80),
    }
    return Request(scope, receive)


def _engine(handler: Callable[[httpx.Request], Any], timeout: float = 5.0) -> ForwardingEngine:
    return ForwardingEngine(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        timeout_seconds=timeout,
    )


async def _read_body(response: Any) -> bytes:
    chunks: list[bytes] = []
    async for chunk in response.body_iterator:
        chunks.append(chunk)
    return b"".join(chunks)


def test_forward_times_out_with_504_and_single_attempt() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        await asyncio.sleep(5)
        return httpx.Response(200)

    async def _run() -> Any:
        engine = _engine(handler, timeout=0.05)
        try:
            return await engine.forward(
                _request(), target_url="https://api.groq.com/v1/models", headers={}
            )
        finally:
            await engine.close()

    response = asyncio.run(_run())

    assert response.status_code == 504
    assert response.body == TIMEOUT_RESPONSE_BODY.encode()
    assert calls == ["https://api.groq.com/v1/models"]


def test_forward_maps_transport_timeout_to_504() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    async def _run() -> Any:
        engine = _engine(handler)
        try:
            return await engine.forward(_request(), target_url="https://api.groq.com/v1/models", headers={})
        finally:
            await engine.close()

    assert asyncio.run(_run()).status_code == 504


def test_forward_propagates_network_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> Any:
        engine = _engine(handler)
        try:
            return await engine.forward(_request(), target_url="https://api.groq.com/v1/models", headers={})
        finally:
            await engine.close()

    with pytest.raises(httpx.ConnectError):
        asyncio.run(_run())


def test_forward_streams_body_and_relays_response() -> None:
    seen: dict[str, Any] = {}

    async def upstream_chunks() -> AsyncIterator[bytes]:
        yield b"data: one\n\n"
        yield b"data: two\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content
        seen["headers"] = dict(request.headers)
        return httpx.Response(
            201,
            headers={"content-type": "text/event-stream", "x-upstream": "yes"},
            content=upstream_chunks(),
        )

    request = _request(
        method="POST",
        headers=[(b"content-length", b"10"), (b"content-type", b"application/json")],
        body_chunks=[b'{"a":', b"true}"],
    )

    async def _run() -> tuple[Any, bytes]:
        engine = _engine(handler)
        try:
            response = await engine.forward(
                request,
                target_url="https://api.groq.com/v1/chat",
                headers={"content-type": "application/json", "content-length": "10"},
            )
            return response, await _read_body(response)
        finally:
            await engine.close()

    response, body = asyncio.run(_run())

    assert seen["method"] == "POST"
    assert seen["body"] == b'{"a":true}'
    assert response.status_code == 201
    assert body == b"data: one\n\ndata: two\n\n"
    assert response.headers["content-type"] == "text/event-stream"
    assert response.headers["x-upstream"] == "yes"


def test_forward_without_body_headers_sends_no_body() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = dict(request.headers)
        seen["body"] = request.content
        return httpx.Response(200, json={"ok": True})

    async def _run() -> Any:
        engine = _engine(handler)
        try:
            response = await engine.forward(_request(), target_url="https://api.groq.com/v1/models", headers={})
            await _read_body(response)
            return response
        finally:
            await engine.close()

    response = asyncio.run(_run())

    assert response.status_code == 200
    assert seen["body"] == b""
    assert "transfer-encoding" not in seen["headers"]


def test_relay_sends_inbound_headers_without_host() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = dict(request.headers)
        return httpx.Response(418, text="teapot")

    request = _request(
        method="POST",
        headers=[
            (b"host", b"proxy.example.com"),
            (b"x-forwarded-for", b"1.2.3.4"),
            (b"authorization", b"Bearer user-key"),
        ],
    )

    async def _run() -> tuple[Any, bytes]:
        engine = _engine(handler)
        try:
            response = await engine.relay(request, target_url="https://models.example.com/v1/chat")
            return response, await _read_body(response)
        finally:
            await engine.close()

    response, body = asyncio.run(_run())

    assert response.status_code == 418
    assert body == b"teapot"
    assert seen["headers"]["host"] == "models.example.com"
    assert seen["headers"]["x-forwarded-for"] == "1.2.3.4"
    assert seen["headers"]["authorization"] == "Bearer user-key"


def test_forward_relays_preloaded_upstream_body() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"ok": true}', headers={"x-upstream": "yes"})

    async def _run() -> tuple[Any, bytes]:
        engine = _engine(handler)
        try:
            response = await engine.forward(
                _request(), target_url="https://api.groq.com/v1/models", headers={}
            )
            return response, await _read_body(response)
        finally:
            await engine.close()

    response, body = asyncio.run(_run())

    assert response.status_code == 200
    assert body == b'{"ok": true}'
    assert response.headers["x-upstream"] == "yes"


def test_forward_returns_499_when_client_disconnects_during_upload() -> None:
    calls: list[str] = []
    messages: list[dict[str, Any]] = [
        {"type": "http.request", "body": b'{"a":', "more_body": True},
        {"type": "http.disconnect"},
    ]

    async def receive() -> dict[str, Any]:
        return messages.pop(0) if messages else {"type": "http.disconnect"}

    request = Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/groq/v1/chat",
            "raw_path": b"/groq/v1/chat",
            "query_string": b"",
            "headers": [(b"content-length", b"10")],
            "scheme": "http",
            "server": ("testserver", 80),
        },
        receive,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200)

    async def _run() -> Any:
        engine = _engine(handler)
        try:
            return await engine.forward(
                request,
                target_url="https://api.groq.com/v1/chat",
                headers={"content-length": "10"},
            )
        finally:
            await engine.close()

    response = asyncio.run(_run())

    assert response.status_code == 499
    assert calls == []
