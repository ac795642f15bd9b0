from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator

import httpx
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request

from ai_proxy.gateway.headers import filter_response_headers, relay_request_headers

TIMEOUT_RESPONSE_BODY = "Request timeout"
CLIENT_CLOSED_REQUEST = 499

logger = logging.getLogger("uvicorn.error")


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True


def build_http_client(*, connect_timeout_seconds: float = 10.0) -> httpx.AsyncClient:
    # Reads stay unbounded: streamed completions can idle for a long time
    # between chunks. The forward deadline only covers time to headers.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(connect_timeout_seconds)),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        http2=_can_enable_http2(),
        follow_redirects=False,
    )


def _log_target(target_url: str) -> str:
    # Query strings can carry provider keys.
    return target_url.split("?", 1)[0]


def _request_body(request: Request) -> AsyncIterator[bytes] | None:
    if "content-length" not in request.headers and "transfer-encoding" not in request.headers:
        return None
    return request.stream()


class ForwardingEngine:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.client = client
        self.timeout_seconds = max(0.001, float(timeout_seconds))

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        request: Request,
        *,
        target_url: str,
        headers: dict[str, str],
    ) -> Response:
        """Forward with sanitized headers under the per-call deadline."""
        return await self._send(
            request,
            target_url=target_url,
            headers=headers,
            timeout_seconds=self.timeout_seconds,
        )

    async def relay(self, request: Request, *, target_url: str) -> Response:
        """Forward to an explicit URL with the inbound headers and no deadline."""
        return await self._send(
            request,
            target_url=target_url,
            headers=relay_request_headers(request.headers.items()),
            timeout_seconds=None,
        )

    async def _send(
        self,
        request: Request,
        *,
        target_url: str,
        headers: dict[str, str],
        timeout_seconds: float | None,
    ) -> Response:
        started = time.perf_counter()
        outbound = self.client.build_request(
            method=request.method,
            url=target_url,
            headers=headers,
            content=_request_body(request),
        )
        logger.info(
            "proxy_forward method=%s target=%s timeout=%s",
            request.method,
            _log_target(target_url),
            timeout_seconds,
        )
        try:
            if timeout_seconds is None:
                upstream = await self.client.send(outbound, stream=True)
            else:
                upstream = await asyncio.wait_for(
                    self.client.send(outbound, stream=True),
                    timeout=timeout_seconds,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            if timeout_seconds is None:
                raise
            logger.warning(
                "proxy_timeout method=%s target=%s elapsed_ms=%.2f error_type=%s",
                request.method,
                _log_target(target_url),
                (time.perf_counter() - started) * 1000.0,
                exc.__class__.__name__,
            )
            return PlainTextResponse(TIMEOUT_RESPONSE_BODY, status_code=504)
        except ClientDisconnect:
            logger.info(
                "proxy_client_disconnect method=%s target=%s",
                request.method,
                _log_target(target_url),
            )
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except httpx.RequestError as exc:
            logger.warning(
                "proxy_request_error method=%s target=%s error_type=%s error=%s",
                request.method,
                _log_target(target_url),
                exc.__class__.__name__,
                str(exc).strip() or repr(exc),
            )
            raise

        logger.info(
            "proxy_upstream_connected target=%s status=%d connect_ms=%.2f",
            _log_target(target_url),
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return self._relay_response(upstream)

    @staticmethod
    def _relay_response(upstream: httpx.Response) -> StreamingResponse:
        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                if upstream.is_stream_consumed:
                    if upstream.content:
                        yield upstream.content
                else:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=stream_generator(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = filter_response_headers(upstream.headers)
        return response
