from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ai_proxy.errors import RoutingConfigError
from ai_proxy.utils.persistence import YamlFileStore

RESERVED_PATH_SEGMENTS = ("claude-code", "custom-model-proxy")


class RouteEntry(BaseModel):
    path_segment: str
    target_base_url: str
    alternate_host: str | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("path_segment")
    @classmethod
    def _normalize_segment(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized:
            raise ValueError("path_segment must not be empty")
        return normalized

    @field_validator("target_base_url")
    @classmethod
    def _normalize_target(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        parsed = urlsplit(normalized)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("target_base_url must be an absolute http(s) URL")
        return normalized

    @field_validator("alternate_host")
    @classmethod
    def _normalize_host(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @property
    def target_host(self) -> str:
        return urlsplit(self.target_base_url).netloc


DEFAULT_ROUTES: tuple[RouteEntry, ...] = (
    RouteEntry(
        path_segment="generativelanguage",
        alternate_host="gooai.chatkit.app",
        target_base_url="https://generativelanguage.googleapis.com",
    ),
    RouteEntry(path_segment="groq", target_base_url="https://api.groq.com"),
    RouteEntry(path_segment="anthropic", target_base_url="https://api.anthropic.com"),
    RouteEntry(path_segment="pplx", target_base_url="https://api.perplexity.ai"),
    RouteEntry(path_segment="openai", target_base_url="https://api.openai.com"),
    RouteEntry(path_segment="mistral", target_base_url="https://api.mistral.ai"),
    RouteEntry(path_segment="openrouter/api", target_base_url="https://openrouter.ai/api"),
    RouteEntry(path_segment="openrouter", target_base_url="https://openrouter.ai/api"),
    RouteEntry(path_segment="xai", target_base_url="https://api.x.ai"),
    RouteEntry(path_segment="cerebras", target_base_url="https://api.cerebras.ai"),
    RouteEntry(
        path_segment="googleapis-cloudcode-pa",
        target_base_url="https://cloudcode-pa.googleapis.com",
    ),
)


def load_route_entries(path: str | Path | None) -> list[RouteEntry]:
    if path is None:
        return list(DEFAULT_ROUTES)

    store = YamlFileStore(path)
    if not store.exists():
        raise FileNotFoundError(f"Routes config not found: {path}")
    raw = store.load(default={})
    if not isinstance(raw, dict):
        raise RoutingConfigError(f"Expected YAML object in '{path}'.")
    routes: Any = raw.get("routes")
    if not isinstance(routes, list):
        raise RoutingConfigError(f"'{path}' must define a 'routes' list.")

    entries: list[RouteEntry] = []
    for index, item in enumerate(routes):
        if not isinstance(item, dict):
            raise RoutingConfigError(f"Route #{index} in '{path}' must be a mapping.")
        try:
            entries.append(RouteEntry(**item))
        except ValidationError as exc:
            raise RoutingConfigError(f"Route #{index} in '{path}' is invalid: {exc}") from exc
    return entries
