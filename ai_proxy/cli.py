from __future__ import annotations

import argparse
import asyncio
import sys
import webbrowser
from datetime import datetime, timezone
from typing import Any, Callable

from ai_proxy.errors import CredentialStoreError, OAuthError
from ai_proxy.gateway.credentials import CredentialRecord, CredentialStore, now_ms
from ai_proxy.gateway.forwarder import build_http_client
from ai_proxy.gateway.oauth import OAuthFlowManager, split_authorization_code
from ai_proxy.settings import Settings, get_settings

__all__ = ["main", "webbrowser"]


def _format_expiry(record: CredentialRecord) -> str:
    expires = datetime.fromtimestamp(record.expires_at_ms / 1000, tz=timezone.utc)
    remaining_seconds = (record.expires_at_ms - now_ms()) // 1000
    if remaining_seconds <= 0:
        return f"expired at {expires.isoformat()}"
    return f"expires at {expires.isoformat()} (in {remaining_seconds}s)"


async def _with_oauth_manager(
    settings: Settings,
    store: CredentialStore,
    action: Callable[[OAuthFlowManager], Any],
) -> Any:
    client = build_http_client(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds
    )
    try:
        manager = OAuthFlowManager.from_settings(
            settings, store=store, client_getter=lambda: client
        )
        return await action(manager)
    finally:
        await client.aclose()


def _run_login_flow(args: argparse.Namespace, settings: Settings, store: CredentialStore) -> str:
    async def _login(manager: OAuthFlowManager) -> CredentialRecord:
        authorization = manager.begin_authorization()
        print(
            "\nOpen this URL in your browser and complete sign-in:\n"
            f"{authorization.url}\n"
        )
        if not args.no_browser and not args.manual_code:
            try:
                browser_opened = bool(webbrowser.open(authorization.url))
            except Exception:
                browser_opened = False
            if not browser_opened:
                print("Could not open a browser; open the URL above manually.")

        raw_code = args.manual_code or input("Paste the authorization code: ").strip()
        if not raw_code:
            raise ValueError("Missing authorization code.")
        _code, state = split_authorization_code(raw_code)
        if state and state != authorization.verifier:
            raise ValueError("State mismatch in pasted authorization code.")
        return await manager.exchange_code(raw_code, authorization.verifier)

    record = asyncio.run(_with_oauth_manager(settings, store, _login))
    return f"Logged in; credential stored at {store.path}, {_format_expiry(record)}."


def cmd_login(args: argparse.Namespace, settings: Settings, store: CredentialStore) -> str:
    return _run_login_flow(args, settings, store)


def cmd_status(_: argparse.Namespace, __: Settings, store: CredentialStore) -> str:
    record = store.load()
    if record is None:
        return f"No credential stored at {store.path}."
    return (
        f"Credential at {store.path} {_format_expiry(record)}; "
        f"last updated {record.updated_at.isoformat()}."
    )


def cmd_refresh(_: argparse.Namespace, settings: Settings, store: CredentialStore) -> str:
    record = store.load()
    if record is None:
        raise OAuthError("No credential stored; run 'ai-proxy login' first.")

    async def _refresh(manager: OAuthFlowManager) -> CredentialRecord:
        return await manager.refresh(record)

    refreshed = asyncio.run(_with_oauth_manager(settings, store, _refresh))
    return f"Credential refreshed, {_format_expiry(refreshed)}."


def cmd_logout(_: argparse.Namespace, __: Settings, store: CredentialStore) -> str:
    if store.clear():
        return f"Removed credential at {store.path}."
    return f"No credential stored at {store.path}."


def cmd_serve(args: argparse.Namespace, _: Settings, __: CredentialStore) -> str:
    from ai_proxy.main import run

    run(host=args.host, port=args.port, reload=args.reload)
    return "Server stopped."


class ProxyCliParserBuilder:
    def __init__(self) -> None:
        self._parser = argparse.ArgumentParser(
            prog="ai-proxy",
            description="Run the AI proxy and manage its Claude Code credential.",
        )
        self._parser.add_argument(
            "--credentials-path",
            help="Override the credential file (defaults to CREDENTIALS_PATH).",
        )
        self._subparsers = self._parser.add_subparsers(dest="command", required=True)

    def build(self) -> argparse.ArgumentParser:
        self._build_serve()
        self._build_login()
        self._build_status()
        self._build_refresh()
        self._build_logout()
        return self._parser

    def _build_serve(self) -> None:
        parser = self._subparsers.add_parser("serve", help="Run the proxy server.")
        parser.add_argument("--host")
        parser.add_argument("--port", type=int)
        parser.add_argument("--reload", action="store_true")
        parser.set_defaults(handler=cmd_serve)

    def _build_login(self) -> None:
        parser = self._subparsers.add_parser(
            "login", help="Run the Claude Code OAuth login and store tokens."
        )
        parser.add_argument(
            "--manual-code",
            help="Authorization code in '<code>#<state>' form; skips the prompt.",
        )
        parser.add_argument("--no-browser", action="store_true")
        parser.set_defaults(handler=cmd_login)

    def _build_status(self) -> None:
        parser = self._subparsers.add_parser(
            "status", help="Show whether a credential is stored and when it expires."
        )
        parser.set_defaults(handler=cmd_status)

    def _build_refresh(self) -> None:
        parser = self._subparsers.add_parser(
            "refresh", help="Refresh the stored access token now."
        )
        parser.set_defaults(handler=cmd_refresh)

    def _build_logout(self) -> None:
        parser = self._subparsers.add_parser(
            "logout", help="Delete the stored credential."
        )
        parser.set_defaults(handler=cmd_logout)


def _build_parser() -> argparse.ArgumentParser:
    return ProxyCliParserBuilder().build()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    store = CredentialStore(args.credentials_path or settings.credentials_path)

    try:
        result = args.handler(args, settings, store)
    except (OAuthError, CredentialStoreError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
