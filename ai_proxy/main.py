from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import AnyHttpUrl, BaseModel

from ai_proxy import __version__
from ai_proxy.errors import (
    CredentialStoreError,
    OAuthExchangeError,
    UnauthenticatedError,
)
from ai_proxy.gateway.credentials import CredentialStore
from ai_proxy.gateway.forwarder import ForwardingEngine, build_http_client
from ai_proxy.gateway.headers import sanitize_forward_headers
from ai_proxy.gateway.oauth import OAuthFlowManager
from ai_proxy.gateway.routing import RoutingTable, load_routing_table
from ai_proxy.gateway.upstream_auth import AuthenticatedUpstreamGate
from ai_proxy.settings import get_settings

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app_obj: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    routing_table = load_routing_table(settings.routes_config_path)
    store = CredentialStore(settings.credentials_path)
    forwarder = ForwardingEngine(
        client=build_http_client(
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds
        ),
        timeout_seconds=settings.forward_timeout_seconds,
    )
    oauth = OAuthFlowManager.from_settings(
        settings,
        store=store,
        client_getter=lambda: forwarder.client,
    )
    app_obj.state.settings = settings
    app_obj.state.routing_table = routing_table
    app_obj.state.credential_store = store
    app_obj.state.forwarder = forwarder
    app_obj.state.oauth = oauth
    app_obj.state.managed_gate = AuthenticatedUpstreamGate(
        store=store,
        oauth=oauth,
        forwarder=forwarder,
        base_url=settings.managed_upstream_base_url,
        beta_header=settings.managed_upstream_beta,
    )
    logger.info(
        "startup complete routes=%d credentials_path=%s managed_upstream=%s "
        "forward_timeout_seconds=%.1f",
        len(routing_table),
        settings.credentials_path,
        settings.managed_upstream_base_url,
        settings.forward_timeout_seconds,
    )
    try:
        yield
    finally:
        await forwarder.close()
        logger.info("shutdown complete")


app = FastAPI(
    title="AI Proxy",
    description="Reverse proxy for hosted inference APIs with Claude Code OAuth support.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def disable_proxy_buffering(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    response = await call_next(request)
    response.headers["X-Accel-Buffering"] = "no"
    return response


class ExchangeRequest(BaseModel):
    code: str
    verifier: str


def _inbound_path(request: Request) -> str:
    # Keep percent-encoding intact for the upstream.
    raw_path = request.scope.get("raw_path")
    if isinstance(raw_path, bytes) and raw_path:
        return raw_path.decode("latin-1")
    return request.url.path


@app.get("/")
async def index() -> PlainTextResponse:
    return PlainTextResponse("A proxy for AI!")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/claude-code/authorize")
async def claude_code_authorize() -> dict[str, str]:
    oauth: OAuthFlowManager = app.state.oauth
    return oauth.begin_authorization().to_dict()


@app.post("/claude-code/exchange")
async def claude_code_exchange(body: ExchangeRequest) -> dict[str, str]:
    oauth: OAuthFlowManager = app.state.oauth
    try:
        await oauth.exchange_code(body.code, body.verifier)
    except OAuthExchangeError:
        return {"type": "failed"}
    return {"type": "success", "message": "Tokens stored successfully"}


@app.api_route("/claude-code/proxy", methods=PROXY_METHODS)
@app.api_route("/claude-code/proxy/{subpath:path}", methods=PROXY_METHODS)
async def claude_code_proxy(request: Request) -> Response:
    gate: AuthenticatedUpstreamGate = app.state.managed_gate
    return await gate.forward(request, path=_inbound_path(request))


@app.post("/custom-model-proxy")
async def custom_model_proxy(
    request: Request,
    url: Annotated[AnyHttpUrl, Query()],
) -> Response:
    forwarder: ForwardingEngine = app.state.forwarder
    # AnyHttpUrl only validates; the caller's URL is relayed as sent.
    return await forwarder.relay(request, target_url=request.query_params["url"])


@app.api_route("/{full_path:path}", methods=PROXY_METHODS)
async def routed_proxy(full_path: str, request: Request) -> Response:
    routing_table: RoutingTable = app.state.routing_table
    path = _inbound_path(request)
    entry = routing_table.resolve(path, request.url.hostname)
    if entry is None:
        raise HTTPException(status_code=404, detail="Not Found")

    forwarder: ForwardingEngine = app.state.forwarder
    return await forwarder.forward(
        request,
        target_url=routing_table.build_target_url(entry, path, request.url.query),
        headers=sanitize_forward_headers(
            request.headers.items(), host=entry.target_host
        ),
    )


@app.exception_handler(UnauthenticatedError)
async def unauthenticated_handler(_: Request, exc: UnauthenticatedError) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
        content={"error": str(exc)},
    )


@app.exception_handler(CredentialStoreError)
async def credential_store_handler(_: Request, exc: CredentialStoreError) -> JSONResponse:
    logger.error("credential_store_error error=%s", exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run(
    *,
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ai_proxy.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    run()
