from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from ai_proxy.errors import OAuthExchangeError, OAuthRefreshError
from ai_proxy.gateway.credentials import CredentialRecord, CredentialStore, now_ms
from ai_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class PKCESession:
    challenge: str
    verifier: str


@dataclass(frozen=True, slots=True)
class AuthorizationRequest:
    url: str
    verifier: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "verifier": self.verifier}


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def pkce_challenge(verifier: str) -> str:
    return _base64url(hashlib.sha256(verifier.encode("utf-8")).digest())


def generate_pkce() -> PKCESession:
    verifier = _base64url(secrets.token_bytes(32))
    return PKCESession(challenge=pkce_challenge(verifier), verifier=verifier)


def split_authorization_code(value: str) -> tuple[str, str]:
    """Split the ``<code>#<state>`` string shown on the provider callback page."""
    parts = value.strip().split("#")
    return parts[0], parts[1] if len(parts) > 1 else ""


class OAuthFlowManager:
    def __init__(
        self,
        *,
        store: CredentialStore,
        client_getter: Callable[[], httpx.AsyncClient],
        client_id: str,
        authorize_url: str,
        token_url: str,
        redirect_uri: str,
        scopes: str,
        token_timeout_seconds: float = 30.0,
        refresh_skew_seconds: int = 0,
    ) -> None:
        self._store = store
        self._client_getter = client_getter
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self._token_timeout = max(0.1, float(token_timeout_seconds))
        self.refresh_skew_ms = max(0, int(refresh_skew_seconds)) * 1000
        # One credential, so one lock serializes every refresh.
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: CredentialStore,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> OAuthFlowManager:
        return cls(
            store=store,
            client_getter=client_getter,
            client_id=settings.oauth_client_id,
            authorize_url=settings.oauth_authorize_url,
            token_url=settings.oauth_token_url,
            redirect_uri=settings.oauth_redirect_uri,
            scopes=settings.oauth_scopes,
            token_timeout_seconds=settings.oauth_token_timeout_seconds,
            refresh_skew_seconds=settings.oauth_refresh_skew_seconds,
        )

    def begin_authorization(self) -> AuthorizationRequest:
        pkce = generate_pkce()
        params = {
            "code": "true",
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            # The verifier doubles as state so nothing is kept server side.
            "state": pkce.verifier,
        }
        return AuthorizationRequest(
            url=f"{self.authorize_url}?{urlencode(params)}",
            verifier=pkce.verifier,
        )

    async def exchange_code(self, code: str, verifier: str) -> CredentialRecord:
        auth_code, state = split_authorization_code(code)
        payload = {
            "code": auth_code,
            "state": state,
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_verifier": verifier,
        }
        try:
            body = await self._post_token(payload)
        except _TokenEndpointError as exc:
            logger.warning(
                "oauth_exchange_error reason=%s status=%s", exc.reason, exc.status_code
            )
            raise OAuthExchangeError(
                f"Authorization code exchange failed ({exc.reason}).",
                status_code=exc.status_code,
            ) from exc

        record = _record_from_token_response(body, fallback_refresh=None)
        if record is None:
            logger.warning("oauth_exchange_error reason=incomplete_token_response")
            raise OAuthExchangeError("Token response is missing required fields.")

        await asyncio.to_thread(self._store.save, record)
        logger.info("oauth_exchange_success expires_at_ms=%d", record.expires_at_ms)
        return record

    async def refresh(self, existing: CredentialRecord) -> CredentialRecord:
        async with self._refresh_lock:
            current = await asyncio.to_thread(self._store.load)
            if (
                current is not None
                and current.access_token
                and current.access_token != existing.access_token
                and not current.is_expired(skew_ms=self.refresh_skew_ms)
            ):
                logger.info(
                    "oauth_refresh_shared expires_at_ms=%d", current.expires_at_ms
                )
                return current

            refresh_token = (
                current.refresh_token if current is not None else ""
            ) or existing.refresh_token
            logger.info("oauth_refresh_start token_url=%s", self.token_url)
            payload = {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            }
            try:
                body = await self._post_token(payload)
            except _TokenEndpointError as exc:
                logger.warning(
                    "oauth_refresh_error reason=%s status=%s",
                    exc.reason,
                    exc.status_code,
                )
                raise OAuthRefreshError(
                    f"Token refresh failed ({exc.reason}).",
                    status_code=exc.status_code,
                ) from exc

            record = _record_from_token_response(body, fallback_refresh=refresh_token)
            if record is None:
                logger.warning("oauth_refresh_error reason=incomplete_token_response")
                raise OAuthRefreshError("Token response is missing required fields.")

            await asyncio.to_thread(self._store.save, record)
            logger.info(
                "oauth_refresh_success expires_at_ms=%d", record.expires_at_ms
            )
            return record

    async def _post_token(self, payload: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client_getter().post(
                self.token_url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=self._token_timeout,
            )
        except httpx.RequestError as exc:
            raise _TokenEndpointError(exc.__class__.__name__) from exc

        if not response.is_success:
            raise _TokenEndpointError("http_status", status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise _TokenEndpointError(
                "invalid_json", status_code=response.status_code
            ) from exc
        if not isinstance(body, dict):
            raise _TokenEndpointError("invalid_json", status_code=response.status_code)
        return body


class _TokenEndpointError(Exception):
    def __init__(self, reason: str, *, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def _record_from_token_response(
    body: dict[str, Any],
    *,
    fallback_refresh: str | None,
) -> CredentialRecord | None:
    raw_access = body.get("access_token")
    access_token = str(raw_access).strip() if raw_access is not None else ""
    if not access_token:
        return None

    raw_refresh = body.get("refresh_token")
    refresh_token = (
        str(raw_refresh).strip() if raw_refresh is not None else ""
    ) or fallback_refresh
    if not refresh_token:
        return None

    raw_expires_in = body.get("expires_in")
    try:
        expires_in = float(raw_expires_in)
    except (TypeError, ValueError):
        return None

    return CredentialRecord(
        refresh_token=refresh_token,
        access_token=access_token,
        expires_at_ms=now_ms() + int(expires_in * 1000),
    )
