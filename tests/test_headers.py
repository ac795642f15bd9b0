from __future__ import annotations

import httpx
from starlette.datastructures import Headers

from ai_proxy.gateway.headers import (
    filter_response_headers,
    relay_request_headers,
    sanitize_forward_headers,
)


def test_sanitize_drops_infrastructure_headers() -> None:
    incoming = Headers(
        {
            "CF-Connecting-IP": "203.0.113.7",
            "cf-ray": "8a1b",
            "X-Forwarded-For": "203.0.113.7",
            "x-forwarded-proto": "https",
            "CDN-Loop": "cloudflare",
            "X-Real-IP": "203.0.113.7",
            "Host": "proxy.example.com",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Idempotency-Key": "Key-ABC",
            "x-api-key": "sk-test",
        }
    )

    headers = sanitize_forward_headers(incoming.items())

    assert headers == {
        "content-type": "application/json",
        "accept": "text/event-stream",
        "idempotency-key": "Key-ABC",
        "x-api-key": "sk-test",
    }


def test_sanitize_keeps_headers_that_only_resemble_prefixes() -> None:
    headers = sanitize_forward_headers(
        [("x-cf-token", "1"), ("x-forwarded", "2"), ("cdn", "3"), ("x-real-ip-hint", "4")]
    )
    assert headers == {"x-cf-token": "1", "x-forwarded": "2", "cdn": "3", "x-real-ip-hint": "4"}


def test_sanitize_does_not_duplicate_names_with_different_case() -> None:
    headers = sanitize_forward_headers([("Accept", "a"), ("accept", "b")])
    assert headers == {"accept": "b"}


def test_sanitize_sets_target_host() -> None:
    headers = sanitize_forward_headers(
        {"host": "proxy.example.com", "accept": "*/*"}, host="api.groq.com"
    )
    assert headers == {"host": "api.groq.com", "accept": "*/*"}


def test_relay_headers_only_drop_host() -> None:
    headers = relay_request_headers(
        [("Host", "proxy.example.com"), ("X-Forwarded-For", "1.2.3.4"), ("Accept", "*/*")]
    )
    assert headers == {"x-forwarded-for": "1.2.3.4", "accept": "*/*"}


def test_filter_response_headers_drops_hop_by_hop_and_keeps_repeats() -> None:
    upstream = httpx.Headers(
        [
            ("Content-Type", "text/event-stream"),
            ("Content-Length", "10"),
            ("Transfer-Encoding", "chunked"),
            ("Connection", "keep-alive"),
            ("Set-Cookie", "a=1"),
            ("Set-Cookie", "b=2"),
            ("Request-Id", "req_1"),
        ]
    )

    assert filter_response_headers(upstream) == [
        (b"content-type", b"text/event-stream"),
        (b"set-cookie", b"a=1"),
        (b"set-cookie", b"b=2"),
        (b"request-id", b"req_1"),
    ]
