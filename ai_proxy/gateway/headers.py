from __future__ import annotations

from typing import Iterable, Mapping

import httpx

STRIPPED_HEADER_PREFIXES = ("cf-", "x-forwarded-", "cdn-")
STRIPPED_HEADER_NAMES = {"x-real-ip", "host"}

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}


def _header_items(headers: Mapping[str, str] | Iterable[tuple[str, str]]) -> Iterable[tuple[str, str]]:
    if isinstance(headers, Mapping):
        return headers.items()
    return headers


def is_infrastructure_header(name: str) -> bool:
    lower = name.lower()
    return lower.startswith(STRIPPED_HEADER_PREFIXES) or lower in STRIPPED_HEADER_NAMES


def sanitize_forward_headers(
    incoming: Mapping[str, str] | Iterable[tuple[str, str]],
    *,
    host: str | None = None,
) -> dict[str, str]:
    """Drop CDN and proxy metadata from an inbound header set.

    Names come back lower-cased so a header can only appear once; values are
    untouched. ``host`` sets the Host header the upstream should see.
    """
    headers: dict[str, str] = {}
    if host:
        headers["host"] = host
    for name, value in _header_items(incoming):
        if is_infrastructure_header(name):
            continue
        headers[name.lower()] = value
    return headers


def relay_request_headers(
    incoming: Mapping[str, str] | Iterable[tuple[str, str]],
) -> dict[str, str]:
    # httpx derives Host from the target URL.
    return {
        name.lower(): value
        for name, value in _header_items(incoming)
        if name.lower() != "host"
    }


def filter_response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    raw: list[tuple[bytes, bytes]] = []
    for name, value in headers.multi_items():
        lower = name.lower()
        if lower in HOP_BY_HOP_RESPONSE_HEADERS:
            continue
        raw.append((lower.encode("latin-1"), value.encode("latin-1")))
    return raw
