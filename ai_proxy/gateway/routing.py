from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ai_proxy.config import RESERVED_PATH_SEGMENTS, RouteEntry, load_route_entries
from ai_proxy.errors import RoutingConfigError


def _segment_covers(general: str, specific: str) -> bool:
    return specific == general or specific.startswith(f"{general}/")


class RoutingTable:
    """Ordered prefix/host match rules; the first matching entry wins."""

    def __init__(self, entries: Iterable[RouteEntry]):
        self.entries: tuple[RouteEntry, ...] = tuple(entries)
        self._validate()

    def _validate(self) -> None:
        seen_hosts: set[str] = set()
        for index, entry in enumerate(self.entries):
            segment = entry.path_segment
            for reserved in RESERVED_PATH_SEGMENTS:
                if _segment_covers(reserved, segment) or _segment_covers(segment, reserved):
                    raise RoutingConfigError(
                        f"Route '{segment}' collides with reserved path '/{reserved}'."
                    )
            for earlier in self.entries[:index]:
                if _segment_covers(earlier.path_segment, segment):
                    raise RoutingConfigError(
                        f"Route '{segment}' is shadowed by earlier route "
                        f"'{earlier.path_segment}'; list more specific prefixes first."
                    )
            if entry.alternate_host:
                if entry.alternate_host in seen_hosts:
                    raise RoutingConfigError(
                        f"Alternate host '{entry.alternate_host}' is mapped twice."
                    )
                seen_hosts.add(entry.alternate_host)

    def __len__(self) -> int:
        return len(self.entries)

    def resolve(self, path: str, host: str | None = None) -> RouteEntry | None:
        normalized_host = host.lower() if host else None
        for entry in self.entries:
            if path.startswith(f"/{entry.path_segment}/"):
                return entry
            if normalized_host and entry.alternate_host == normalized_host:
                return entry
        return None

    @staticmethod
    def build_target_url(entry: RouteEntry, path: str, query: str = "") -> str:
        prefix = f"/{entry.path_segment}/"
        if path.startswith(prefix):
            path = "/" + path[len(prefix):]
        suffix = f"?{query}" if query else ""
        return f"{entry.target_base_url}{path}{suffix}"


def load_routing_table(path: str | Path | None = None) -> RoutingTable:
    return RoutingTable(load_route_entries(path))
