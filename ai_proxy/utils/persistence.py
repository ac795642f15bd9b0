from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import IO, Any
from uuid import uuid4

import yaml


class AtomicFileStore:
    """File persistence that replaces the target in one rename.

    Readers either see the previous file or the new one, never a partial
    write.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = self._decode(handle)
        if payload is None:
            return default
        return payload

    def write(self, payload: Any, *, atomic: bool = True) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not atomic:
            with self.path.open("w", encoding="utf-8") as handle:
                self._encode(payload, handle)
            return

        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                self._encode(payload, handle)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def delete(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _decode(self, handle: IO[str]) -> Any:
        raise NotImplementedError

    def _encode(self, payload: Any, handle: IO[str]) -> None:
        raise NotImplementedError

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")


class YamlFileStore(AtomicFileStore):
    def _decode(self, handle: IO[str]) -> Any:
        return yaml.safe_load(handle)

    def _encode(self, payload: Any, handle: IO[str]) -> None:
        yaml.safe_dump(payload, handle, sort_keys=False)


class JsonFileStore(AtomicFileStore):
    def _decode(self, handle: IO[str]) -> Any:
        raw = handle.read()
        if not raw.strip():
            return None
        return json.loads(raw)

    def _encode(self, payload: Any, handle: IO[str]) -> None:
        json.dump(payload, handle, indent=2)
        handle.write("\n")
