from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

CLAUDE_CODE_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
CLAUDE_CODE_AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
CLAUDE_CODE_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
CLAUDE_CODE_REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
CLAUDE_CODE_SCOPES = "org:create_api_key user:profile user:inference"
CLAUDE_CODE_BETA = (
    "oauth-2025-04-20,claude-code-20250219,"
    "interleaved-thinking-2025-05-14,fine-grained-tool-streaming-2025-05-14"
)


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    credentials_path: str = "claude-code-tokens.json"
    routes_config_path: str | None = None
    forward_timeout_seconds: float = 60.0
    upstream_connect_timeout_seconds: float = 10.0
    managed_upstream_base_url: str = "https://api.anthropic.com"
    managed_upstream_beta: str = CLAUDE_CODE_BETA
    oauth_client_id: str = CLAUDE_CODE_CLIENT_ID
    oauth_authorize_url: str = CLAUDE_CODE_AUTHORIZE_URL
    oauth_token_url: str = CLAUDE_CODE_TOKEN_URL
    oauth_redirect_uri: str = CLAUDE_CODE_REDIRECT_URI
    oauth_scopes: str = CLAUDE_CODE_SCOPES
    oauth_refresh_skew_seconds: int = 0
    oauth_token_timeout_seconds: float = 30.0
    cors_allow_origins: str = "*"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allow_origins) or ["*"]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
