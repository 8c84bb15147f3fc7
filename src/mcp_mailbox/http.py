"""HTTP transport helpers wrapping FastMCP with FastAPI."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, MutableMapping
from typing import Any, Protocol, cast

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import Receive, Scope, Send

from .app import build_mcp_server
from .config import Settings, get_settings
from .db import ping_database

_LOGGING_CONFIGURED = False
_COMPAT_BASES = ("/api", "/mcp")


class _FastMCPHttpApp(Protocol):
    def http_app(self, *args: Any, **kwargs: Any) -> FastAPI: ...


class _FastAPILifespan(Protocol):
    def lifespan(self, app: FastAPI) -> Any: ...


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # "Terminating session: None" is routine for stateless mode
    logging.getLogger("mcp.server.streamable_http").setLevel(logging.WARNING)
    logging.getLogger("mcp.server.lowlevel.server").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)

    logging.getLogger("fastmcp.tools.tool_manager").addFilter(ExpectedErrorFilter())
    _LOGGING_CONFIGURED = True


class ExpectedErrorFilter(logging.Filter):
    """Drop tracebacks for recoverable tool errors (unknown keys, bad arguments).

    FastMCP logs every tool failure with ``logger.exception``; a missing context key
    is a normal answer, not a server fault, so it is downgraded to INFO.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.exc_info or record.exc_info[1] is None:
            return True
        exc = record.exc_info[1]
        cause = exc.__cause__
        if getattr(exc, "recoverable", False) or getattr(cause, "recoverable", False):
            record.exc_info = None
            record.exc_text = None
            if record.levelno >= logging.ERROR:
                record.levelno = logging.INFO
                record.levelname = "INFO"
        return True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        structlog.get_logger("http").info(
            "request",
            method=request.method,
            path=request.url.path,
            status=getattr(response, "status_code", 0),
            duration_ms=int((time.perf_counter() - start) * 1000),
            client_ip=request.client.host if request.client else "-",
        )
        return response


class StatelessMCPASGIApp:
    """Run a fresh StreamableHTTP transport per request; no session state survives a request."""

    def __init__(self, mcp_server: Any) -> None:
        self._server = mcp_server

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            res = JSONResponse({"detail": "Not Found"}, status_code=404)
            await res(scope, receive, send)
            return

        # StreamableHTTP insists on both JSON and SSE in Accept; httpx sends neither by default.
        headers = [(k, v) for (k, v) in scope.get("headers") or [] if k.lower() != b"accept"]
        headers.append((b"accept", b"application/json, text/event-stream"))
        if scope.get("method") == "POST" and not any(k.lower() == b"content-type" for k, _ in headers):
            headers.append((b"content-type", b"application/json"))
        new_scope = dict(scope)
        new_scope["headers"] = headers

        http_transport = StreamableHTTPServerTransport(
            mcp_session_id=None,
            is_json_response_enabled=True,
            event_store=None,
            security_settings=None,
        )

        async with http_transport.connect() as streams:
            read_stream, write_stream = streams
            server_task = asyncio.create_task(
                self._server._mcp_server.run(
                    read_stream,
                    write_stream,
                    self._server._mcp_server.create_initialization_options(),
                    stateless=True,
                )
            )
            try:
                await http_transport.handle_request(new_scope, receive, send)
            finally:
                with contextlib.suppress(Exception):
                    await http_transport.terminate()
                if not server_task.done():
                    server_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await server_task


def _normalize_base(path: str) -> tuple[str, str]:
    base = path or "/mcp"
    if not base.startswith("/"):
        base = "/" + base
    no_slash = base.rstrip("/") or "/"
    with_slash = no_slash if no_slash == "/" else no_slash + "/"
    return no_slash, with_slash


def build_http_app(settings: Settings, server=None) -> FastAPI:
    _configure_logging(settings)
    if server is None:
        server = build_mcp_server()

    # The FastMCP sub-app is only used for its lifespan (which opens the store).
    mcp_http_app = cast(_FastMCPHttpApp, server).http_app(
        path="/",
        stateless_http=True,
        json_response=True,
    )

    @contextlib.asynccontextmanager
    async def lifespan_context(app: FastAPI) -> AsyncIterator[None]:
        async with cast(_FastAPILifespan, mcp_http_app).lifespan(mcp_http_app):
            yield

    fastapi_app = FastAPI(lifespan=lifespan_context)
    if settings.http.request_log_enabled:
        cast(Any, fastapi_app).add_middleware(RequestLoggingMiddleware)

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await ping_database()
        except Exception as exc:
            structlog.get_logger("health").error("readiness_error", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return JSONResponse({"status": "ready"})

    stateless_app = StatelessMCPASGIApp(server)

    # Mount the configured base with and without trailing slash, plus the compat aliases.
    pairs = [_normalize_base(settings.http.path)]
    for compat_base in _COMPAT_BASES:
        pair = _normalize_base(compat_base)
        if pair not in pairs:
            pairs.append(pair)
    mounted: list[str] = []
    for no_slash, with_slash in pairs:
        for mount_path in (no_slash, with_slash):
            if mount_path not in mounted:
                fastapi_app.mount(mount_path, stateless_app)
                mounted.append(mount_path)

    def _register_base_passthrough(base_path_no_slash: str, base_path_with_slash: str) -> None:
        # Starlette's mount redirects POST /mcp to /mcp/; answer it directly instead.
        @fastapi_app.post(base_path_no_slash)
        async def _base_passthrough(request: Request) -> JSONResponse:
            response_body: Any = {}
            status_code = 200
            headers: dict[str, str] = {}

            async def _send(message: MutableMapping[str, Any]) -> None:
                nonlocal response_body, status_code
                if message.get("type") == "http.response.start":
                    status_code = int(message.get("status", 200))
                    for k, v in message.get("headers") or []:
                        key = k.decode("latin1")
                        if key.lower() not in {"content-length", "content-type"}:
                            headers[key] = v.decode("latin1")
                elif message.get("type") == "http.response.body":
                    body = message.get("body") or b""
                    if body:
                        try:
                            response_body = json.loads(body.decode("utf-8"))
                        except ValueError:
                            response_body = {"detail": body.decode("utf-8", errors="replace")}

            await stateless_app({**request.scope, "path": base_path_with_slash}, request.receive, _send)
            return JSONResponse(response_body, status_code=status_code, headers=headers)

    for no_slash, with_slash in pairs:
        if no_slash != "/":
            _register_base_passthrough(no_slash, with_slash)

    return fastapi_app


def main() -> None:
    """Run the HTTP transport using settings-specified host/port."""
    parser = argparse.ArgumentParser(description="Run the mcp-mailbox HTTP transport")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    # Be tolerant of extraneous argv when invoked under test runners
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    app = build_http_app(settings)
    uvicorn.run(app, host=args.host or settings.http.host, port=args.port or settings.http.port, log_level=args.log_level, ws="none")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
