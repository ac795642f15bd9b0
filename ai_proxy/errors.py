from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors raised by the proxy core."""


class UnauthenticatedError(ProxyError):
    """No usable credential for the managed upstream; re-run authorization."""


class OAuthError(ProxyError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OAuthExchangeError(OAuthError):
    """Authorization code could not be exchanged for tokens."""


class OAuthRefreshError(OAuthError):
    """Refresh token was rejected or the token endpoint was unreachable."""


class CredentialStoreError(ProxyError):
    """Stored credential file exists but cannot be decoded."""


class RoutingConfigError(ValueError):
    """Routing table entries are invalid or shadow each other."""
