from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ai_proxy.errors import CredentialStoreError
from ai_proxy.utils.persistence import JsonFileStore


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class CredentialRecord:
    refresh_token: str
    access_token: str
    expires_at_ms: int
    updated_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc).replace(microsecond=0)
    )

    def is_expired(self, at_ms: int | None = None, *, skew_ms: int = 0) -> bool:
        if not self.access_token:
            return True
        reference = now_ms() if at_ms is None else at_ms
        return self.expires_at_ms <= reference + skew_ms

    def to_payload(self) -> dict[str, Any]:
        # Same keys as the token file written by the Claude Code login flow.
        return {
            "refresh": self.refresh_token,
            "access": self.access_token,
            "expires": self.expires_at_ms,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CredentialRecord:
        refresh = payload.get("refresh")
        if not isinstance(refresh, str) or not refresh:
            raise CredentialStoreError("Stored credential is missing a refresh token.")
        access = payload.get("access")
        try:
            expires = int(payload.get("expires") or 0)
        except (TypeError, ValueError) as exc:
            raise CredentialStoreError("Stored credential has an invalid expiry.") from exc

        raw_updated = payload.get("updated_at")
        updated_at = datetime.now(timezone.utc).replace(microsecond=0)
        if isinstance(raw_updated, str) and raw_updated:
            try:
                updated_at = datetime.fromisoformat(raw_updated)
            except ValueError:
                pass
        return cls(
            refresh_token=refresh,
            access_token=access if isinstance(access, str) else "",
            expires_at_ms=expires,
            updated_at=updated_at,
        )


class CredentialStore:
    """Holds the single OAuth credential for the managed upstream."""

    def __init__(self, path: str | Path):
        self._file = JsonFileStore(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._file.path

    def load(self) -> CredentialRecord | None:
        try:
            payload = self._file.load(default=None)
        except ValueError as exc:
            raise CredentialStoreError(
                f"Credential file '{self.path}' is not valid JSON."
            ) from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise CredentialStoreError(
                f"Credential file '{self.path}' must contain a JSON object."
            )
        return CredentialRecord.from_payload(payload)

    def save(self, record: CredentialRecord) -> None:
        with self._lock:
            self._file.write(record.to_payload())

    def clear(self) -> bool:
        with self._lock:
            return self._file.delete()
