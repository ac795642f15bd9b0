from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from ai_proxy.main import app
from ai_proxy.settings import get_settings

Handler = Callable[[httpx.Request], Any]


@pytest.fixture
def credentials_path(tmp_path: Path) -> Path:
    return tmp_path / "claude-code-tokens.json"


@pytest.fixture
def build_client(
    monkeypatch: pytest.MonkeyPatch, credentials_path: Path
) -> Iterator[Callable[..., TestClient]]:
    """Build a TestClient whose outbound HTTP calls go to ``handler``."""

    def _build(handler: Handler | None = None, **env: Any) -> TestClient:
        monkeypatch.setenv("CREDENTIALS_PATH", str(credentials_path))
        monkeypatch.delenv("ROUTES_CONFIG_PATH", raising=False)
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        get_settings.cache_clear()

        def _unexpected(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected upstream call: {request.url}")

        transport = httpx.MockTransport(handler or _unexpected)
        monkeypatch.setattr(
            "ai_proxy.main.build_http_client",
            lambda **_kwargs: httpx.AsyncClient(transport=transport),
        )
        return TestClient(app, raise_server_exceptions=False)

    yield _build
    get_settings.cache_clear()
