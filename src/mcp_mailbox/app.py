"""Application factory for the mailbox MCP server."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, nullcontext, suppress
from datetime import datetime, timezone
from functools import wraps
from typing import Any, AsyncContextManager, Callable, Optional

from fastmcp import Context, FastMCP

from . import rich_logger
from .config import Settings, get_settings
from .context import count_context_entries, delete_context, get_context, list_context_keys, set_context
from .db import (
    ensure_schema,
    get_db_health_status,
    get_engine,
    get_query_tracker,
    init_engine,
    ping_database,
    track_queries,
)
from .errors import InvalidArgumentError, NotFoundError, StorageFailureError
from .messages import delete_message, peek_messages, queue_depths, receive_messages, send_message
from .models import Message
from .requests import (
    ContextKeyRequest,
    ContextListRequest,
    ContextSetRequest,
    DeleteMessageRequest,
    FetchMessagesRequest,
    SendMessageRequest,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-mailbox"
SERVER_INSTRUCTIONS = (
    "Mailbox MCP server for agent-to-agent communication. "
    "Agents exchange messages through per-project queues (send_message, receive_messages, "
    "peek_messages, delete_message) and share key/value context globally or per project "
    "(context_set, context_get, context_delete, context_list). "
    "receive_messages consumes: each message is returned to exactly one caller."
)

CLUSTER_SETUP = "infrastructure"
CLUSTER_MESSAGING = "messaging"
CLUSTER_CONTEXT = "context"

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})
TOOL_CLUSTER_MAP: dict[str, str] = {}


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _to_tool_error(tool_name: str, exc: Exception) -> ToolExecutionError:
    """Map a core exception onto the structured error reported to clients."""
    if isinstance(exc, ToolExecutionError):
        return exc
    if isinstance(exc, NotFoundError):
        return ToolExecutionError("NOT_FOUND", str(exc), recoverable=True, data={"tool": tool_name})
    if isinstance(exc, InvalidArgumentError):
        return ToolExecutionError(
            "INVALID_ARGUMENT",
            f"Invalid argument value: {exc}",
            recoverable=True,
            data={"tool": tool_name, "field": exc.field},
        )
    if isinstance(exc, StorageFailureError):
        return ToolExecutionError(
            "STORAGE_FAILURE",
            f"Storage failure: {exc}",
            recoverable=False,
            data={"tool": tool_name, "error_detail": str(exc.__cause__ or exc)},
        )
    return ToolExecutionError(
        "UNHANDLED_EXCEPTION",
        f"Unexpected error ({type(exc).__name__}): {exc}",
        recoverable=False,
        data={"tool": tool_name, "original_error": type(exc).__name__},
    )


def _instrument_tool(
    tool_name: str,
    *,
    cluster: str,
    agent_arg: Optional[str] = None,
    project_arg: Optional[str] = None,
) -> Callable[[Any], Any]:
    TOOL_CLUSTER_MAP[tool_name] = cluster

    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = signature.bind_partial(*args, **kwargs)
            project_value = bound.arguments.get(project_arg) if project_arg else None
            agent_value = bound.arguments.get(agent_arg) if agent_arg else None

            settings = get_settings()
            log_ctx = None
            if settings.tools_log_enabled and settings.log_rich_enabled:
                try:
                    log_ctx = rich_logger.ToolCallContext(
                        tool_name=tool_name,
                        kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                        project=str(project_value) if project_value is not None else None,
                        agent=str(agent_value) if agent_value is not None else None,
                        start_time=start_time,
                    )
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    # Logging errors should not break tool execution
                    log_ctx = None

            tracking: Any = nullcontext(get_query_tracker())
            if get_query_tracker() is None and settings.instrumentation_enabled:
                tracking = track_queries(slow_ms=float(settings.instrumentation_slow_query_ms))

            result = None
            error: Optional[ToolExecutionError] = None
            with tracking as query_tracker:
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    metrics["errors"] += 1
                    _record_tool_error(tool_name, exc)
                    error = _to_tool_error(tool_name, exc)
                    if error is exc:
                        raise
                    raise error from exc
                finally:
                    query_stats = query_tracker.to_dict() if query_tracker is not None else None
                    if query_stats and settings.instrumentation_enabled:
                        logger.info(
                            "tool_query_stats",
                            extra={
                                "tool": tool_name,
                                "project": project_value,
                                "agent": agent_value,
                                "queries": query_stats.get("total", 0),
                                "query_time_ms": query_stats.get("total_time_ms", 0.0),
                                "per_table": query_stats.get("per_table", {}),
                            },
                        )
                    if log_ctx is not None:
                        try:
                            log_ctx.end_time = time.perf_counter()
                            log_ctx.result = result
                            log_ctx.error = error
                            log_ctx.success = error is None
                            log_ctx.query_stats = query_stats
                            rich_logger.log_tool_call_end(log_ctx)
                        except Exception:
                            # Logging errors should not suppress original exceptions
                            pass
            return result

        # Preserve annotations so FastMCP can infer output schema
        with suppress(Exception):
            wrapper.__annotations__ = getattr(func, "__annotations__", {})
        return wrapper

    return decorator


def tool_metrics_snapshot() -> list[dict[str, Any]]:
    return [
        {
            "name": name,
            "calls": data["calls"],
            "errors": data["errors"],
            "cluster": TOOL_CLUSTER_MAP.get(name, "unclassified"),
        }
        for name, data in sorted(TOOL_METRICS.items())
    ]


def _lifespan_factory(settings: Settings) -> Callable[[FastMCP], AsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        init_engine(settings)
        # A store that cannot be initialised is fatal to the server.
        await ensure_schema(settings)
        try:
            yield
        finally:
            cancelled: BaseException | None = None
            dispose_task: asyncio.Task[None] | None = None
            with suppress(Exception):
                dispose_task = asyncio.create_task(get_engine().dispose())
            if dispose_task is not None:
                try:
                    await asyncio.shield(dispose_task)
                except asyncio.CancelledError as exc:
                    cancelled = exc
                    with suppress(BaseException):
                        await dispose_task
                except Exception:
                    logger.warning("engine_dispose_failed", exc_info=True)
            if cancelled is not None:
                raise cancelled

    return lifespan


def _iso(dt: datetime) -> str:
    """Return ISO-8601 in UTC; naive datetimes (from SQLite) are assumed to be UTC already."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def message_payload(message: Message) -> dict[str, Any]:
    """Wire representation of a message."""
    return {
        "id": str(message.id),
        "reference_id": message.reference_id,
        "from_agent": message.from_agent,
        "content": message.content,
        "created_at": _iso(message.created_ts),
    }


async def store_stats() -> dict[str, int]:
    depths = await queue_depths()
    return {
        "messages": sum(depth.pending for depth in depths),
        "queues": len(depths),
        "context_entries": await count_context_entries(),
    }


def build_mcp_server() -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings: Settings = get_settings()
    lifespan = _lifespan_factory(settings)

    mcp = FastMCP(name=SERVER_NAME, instructions=SERVER_INSTRUCTIONS, lifespan=lifespan)

    async def _ctx_info_safe(ctx: Context, message: str) -> None:
        try:
            await ctx.info(message)
        except Exception:
            # Context may not be available outside of a request; ignore logging
            return

    @mcp.tool(name="health_check", description="Return basic readiness information for the mailbox server.")
    @_instrument_tool("health_check", cluster=CLUSTER_SETUP)
    async def health_check(ctx: Context) -> dict[str, Any]:
        """
        Quick readiness probe for agents and orchestrators.

        Runs a trivial query against the store, then reports the environment,
        HTTP binding, database URL, connection pool usage and queue statistics.

        Returns
        -------
        dict
            {"status": "ok", "environment": str, "http_host": str, "http_port": int,
             "database_url": str, "pool": {...}, "stats": {"messages", "queues", "context_entries"}}
        """
        await _ctx_info_safe(ctx, "Running health check.")
        await ping_database()
        current = get_settings()
        return {
            "status": "ok",
            "environment": current.environment,
            "http_host": current.http.host,
            "http_port": current.http.port,
            "database_url": current.database.url,
            "pool": get_db_health_status().get("pool", {}),
            "stats": await store_stats(),
        }

    @mcp.tool(name="context_set")
    @_instrument_tool("context_set", cluster=CLUSTER_CONTEXT, project_arg="project_id")
    async def context_set(
        ctx: Context,
        key: str,
        value: str,
        project_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Store a context value, overwriting any previous value for the same key.

        Parameters
        ----------
        key : str
            Context key. Compared literally.
        value : str
            Arbitrary text; stored unchanged.
        project_id : Optional[str]
            Project scope (for example ``"owner/repo"``). Omit for the global scope.
            Global and project scopes never share entries, even for equal keys.

        Returns
        -------
        dict
            {"ok": true}
        """
        request = ContextSetRequest.parse(key, value, project_id)
        await set_context(request.scope, request.key, request.value)
        await _ctx_info_safe(ctx, f"Context key '{request.key}' set.")
        return {"ok": True}

    @mcp.tool(name="context_get")
    @_instrument_tool("context_get", cluster=CLUSTER_CONTEXT, project_arg="project_id")
    async def context_get(ctx: Context, key: str, project_id: Optional[str] = None) -> dict[str, Any]:
        """
        Read a context value.

        Returns ``{"value": str}``. Fails with NOT_FOUND if the key is not set in
        the given scope (global when ``project_id`` is omitted).
        """
        request = ContextKeyRequest.parse(key, project_id)
        value = await get_context(request.scope, request.key)
        return {"value": value}

    @mcp.tool(name="context_delete")
    @_instrument_tool("context_delete", cluster=CLUSTER_CONTEXT, project_arg="project_id")
    async def context_delete(ctx: Context, key: str, project_id: Optional[str] = None) -> dict[str, Any]:
        """Delete a context key; NOT_FOUND if it was not set. Returns ``{"deleted": true}``."""
        request = ContextKeyRequest.parse(key, project_id)
        await delete_context(request.scope, request.key)
        await _ctx_info_safe(ctx, f"Context key '{request.key}' deleted.")
        return {"deleted": True}

    @mcp.tool(name="context_list")
    @_instrument_tool("context_list", cluster=CLUSTER_CONTEXT, project_arg="project_id")
    async def context_list(ctx: Context, project_id: Optional[str] = None) -> dict[str, Any]:
        """List the keys set in a scope (sorted). Values are not included."""
        request = ContextListRequest.parse(project_id)
        keys = await list_context_keys(request.scope)
        return {"keys": keys}

    @mcp.tool(name="send_message")
    @_instrument_tool("send_message", cluster=CLUSTER_MESSAGING, project_arg="project_id", agent_arg="to_agent")
    async def send_message_tool(
        ctx: Context,
        project_id: str,
        to_agent: str,
        content: str,
        from_agent: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Queue a message for another agent.

        When to use
        -----------
        - Hand work or a question to another agent in the same project.
        - Reply to a message: pass its id as ``reference_id`` so the requester can
          correlate the answer.

        Parameters
        ----------
        project_id : str
            Project scope (for example ``"owner/repo"``). Required, compared literally.
        to_agent : str
            Recipient agent id. Required, compared literally.
        content : str
            Message body; delivered byte-for-byte unchanged.
        from_agent : Optional[str]
            Sender id. Defaults to ``"anonymous"`` when omitted or blank.
        reference_id : Optional[str]
            Id of an earlier message this one answers. Not checked for existence.

        Returns
        -------
        dict
            {"message_id": "<id>"}

        Example
        -------
        ```json
        {"jsonrpc":"2.0","id":"1","method":"tools/call","params":{"name":"send_message","arguments":{
          "project_id":"a/b","to_agent":"X","from_agent":"Y","content":"hi"
        }}}
        ```
        """
        request = SendMessageRequest.parse(project_id, to_agent, content, from_agent, reference_id)
        message_id = await send_message(
            request.queue,
            request.content,
            from_agent=request.from_agent,
            reference_id=request.reference_id,
        )
        await _ctx_info_safe(ctx, f"Message {message_id} queued for '{request.queue.agent_id}'.")
        return {"message_id": str(message_id)}

    @mcp.tool(name="receive_messages")
    @_instrument_tool("receive_messages", cluster=CLUSTER_MESSAGING, project_arg="project_id", agent_arg="agent_id")
    async def receive_messages_tool(
        ctx: Context,
        project_id: str,
        agent_id: str,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Consume messages from an agent's queue, oldest first.

        Returned messages are removed from the queue in the same transaction that
        selects them: no other caller will ever receive them, and a later call
        will not return them again.

        Parameters
        ----------
        project_id : str
            Project scope.
        agent_id : str
            Whose queue to drain.
        limit : Optional[int]
            Maximum number of messages. Omit to take the whole queue; ``0`` returns
            nothing and leaves the queue untouched. Messages beyond the limit stay queued.

        Returns
        -------
        dict
            {"messages": [{"id", "reference_id", "from_agent", "content", "created_at"}, ...]}
        """
        request = FetchMessagesRequest.parse(project_id, agent_id, limit)
        items = await receive_messages(request.queue, request.limit)
        await _ctx_info_safe(ctx, f"Received {len(items)} messages for '{request.queue.agent_id}'.")
        return {"messages": [message_payload(item) for item in items]}

    @mcp.tool(name="peek_messages")
    @_instrument_tool("peek_messages", cluster=CLUSTER_MESSAGING, project_arg="project_id", agent_arg="agent_id")
    async def peek_messages_tool(
        ctx: Context,
        project_id: str,
        agent_id: str,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Look at an agent's queue without consuming anything.

        Same ordering and ``limit`` semantics as ``receive_messages``. Repeated
        peeks return the same messages until they are received or deleted.
        """
        request = FetchMessagesRequest.parse(project_id, agent_id, limit)
        items = await peek_messages(request.queue, request.limit)
        return {"messages": [message_payload(item) for item in items]}

    @mcp.tool(name="delete_message")
    @_instrument_tool("delete_message", cluster=CLUSTER_MESSAGING)
    async def delete_message_tool(ctx: Context, message_id: str) -> dict[str, Any]:
        """
        Delete a queued message by id, whichever queue it is in.

        Fails with NOT_FOUND when the id does not exist, including a second
        delete of the same id or a message that was already received.
        """
        request = DeleteMessageRequest.parse(message_id)
        await delete_message(request.message_id)
        await _ctx_info_safe(ctx, f"Message {request.message_id} deleted.")
        return {"deleted": True}

    return mcp
