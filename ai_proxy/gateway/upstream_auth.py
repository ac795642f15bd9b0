from __future__ import annotations

import asyncio
import logging

from fastapi.responses import Response
from starlette.requests import Request

from ai_proxy.errors import OAuthRefreshError, UnauthenticatedError
from ai_proxy.gateway.credentials import CredentialStore
from ai_proxy.gateway.forwarder import ForwardingEngine
from ai_proxy.gateway.headers import sanitize_forward_headers
from ai_proxy.gateway.oauth import OAuthFlowManager

MANAGED_ROUTE_PREFIX = "/claude-code/proxy"

MISSING_CREDENTIAL_MESSAGE = "No authentication found. Please authorize first."
REFRESH_FAILED_MESSAGE = "Failed to refresh token. Please re-authorize."

logger = logging.getLogger("uvicorn.error")


class AuthenticatedUpstreamGate:
    """Forwards to the one upstream that is authorized with the stored OAuth token."""

    def __init__(
        self,
        *,
        store: CredentialStore,
        oauth: OAuthFlowManager,
        forwarder: ForwardingEngine,
        base_url: str,
        beta_header: str,
        route_prefix: str = MANAGED_ROUTE_PREFIX,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._forwarder = forwarder
        self.base_url = base_url.rstrip("/")
        self.beta_header = beta_header
        self.route_prefix = route_prefix.rstrip("/")

    async def resolve_access_token(self) -> str:
        record = await asyncio.to_thread(self._store.load)
        if record is None:
            raise UnauthenticatedError(MISSING_CREDENTIAL_MESSAGE)

        if not record.is_expired(skew_ms=self._oauth.refresh_skew_ms):
            return record.access_token

        logger.info("managed_upstream_token_expired expires_at_ms=%d", record.expires_at_ms)
        try:
            refreshed = await self._oauth.refresh(record)
        except OAuthRefreshError as exc:
            raise UnauthenticatedError(REFRESH_FAILED_MESSAGE) from exc
        return refreshed.access_token

    def build_target_url(self, path: str, query: str = "") -> str:
        if path.startswith(self.route_prefix):
            path = path[len(self.route_prefix):]
        suffix = f"?{query}" if query else ""
        return f"{self.base_url}{path}{suffix}"

    def build_headers(self, incoming: Request, access_token: str) -> dict[str, str]:
        headers = sanitize_forward_headers(incoming.headers.items())
        # The bearer token must win over any client-supplied key.
        headers.pop("x-api-key", None)
        headers["authorization"] = f"Bearer {access_token}"
        headers["anthropic-beta"] = self.beta_header
        return headers

    async def forward(self, request: Request, *, path: str) -> Response:
        access_token = await self.resolve_access_token()
        return await self._forwarder.forward(
            request,
            target_url=self.build_target_url(path, request.url.query),
            headers=self.build_headers(request, access_token),
        )
