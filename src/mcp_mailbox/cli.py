"""Command-line interface for running and inspecting the mailbox."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from . import rich_logger
from .addressing import describe_scope
from .app import build_mcp_server, message_payload, store_stats
from .config import clear_settings_cache, get_settings
from .context import delete_context, get_context, list_context_keys, set_context
from .db import ensure_schema, reset_database_state
from .errors import MailboxError, StorageFailureError
from .http import build_http_app
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

# aiosqlite uses background threads that can block interpreter shutdown if not cleaned up.
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose the engine afterwards.

    Each CLI command runs its own event loop; pooled aiosqlite connections are
    bound to it and must not outlive it.
    """
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


def _run_store(coro: Any) -> Any:
    """Like ``_run_async`` but turns mailbox errors into a red message and an exit code."""
    try:
        return _run_async(coro)
    except StorageFailureError as exc:
        console.print(f"[red]Storage failure:[/] {exc}")
        raise typer.Exit(code=2) from exc
    except MailboxError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc


def _emit_json(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


app = typer.Typer(help="Agent-to-agent mailbox MCP server.", invoke_without_command=True)
context_app = typer.Typer(help="Read and write the shared context store")
messages_app = typer.Typer(help="Send, inspect and consume queued messages")
app.add_typer(context_app, name="context")
app.add_typer(messages_app, name="messages")


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None, path=None)


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface for HTTP transport. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port for HTTP transport. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="HTTP path where the MCP endpoint is exposed."),
) -> None:
    """Run the MCP server over the Streamable HTTP transport."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    resolved_path = path or settings.http.path

    # Fail before binding if the store cannot be opened.
    stats = _run_store(store_stats())
    # _run_store cleared the settings cache along with the engine.
    settings = get_settings()
    if settings.log_rich_enabled:
        rich_logger.display_startup_banner(settings, resolved_host, resolved_port, resolved_path, stats)

    if path:
        settings = replace(settings, http=replace(settings.http, path=path))

    server = build_mcp_server()
    http_app = build_http_app(settings, server)
    uvicorn.run(http_app, host=resolved_host, port=resolved_port, log_level="info", ws="none")


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport.

    stdout carries the MCP protocol, so tool panels are disabled and all
    logging goes to stderr.
    """
    os.environ["TOOLS_LOG_ENABLED"] = "false"
    os.environ["LOG_RICH_ENABLED"] = "false"
    clear_settings_cache()

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    print("mcp-mailbox - starting stdio transport...", file=sys.stderr)

    server = build_mcp_server()
    server.run(transport="stdio")


@app.command("migrate")
def migrate() -> None:
    """Create the database schema (tables and indexes) if it does not exist."""
    settings = get_settings()
    with console.status("Creating database schema..."):
        _run_store(_ensure_schema_checked(settings))
    console.print(f"[green]Schema ready at[/] {settings.database.url}")


async def _ensure_schema_checked(settings: Any) -> None:
    try:
        await ensure_schema(settings)
    except Exception as exc:
        raise StorageFailureError(f"Could not initialise database: {exc}") from exc


@app.command("queues")
def list_queues(
    project: Optional[str] = typer.Option(None, "--project", help="Only show queues in this project."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List non-empty queues with their pending message counts."""
    depths = _run_store(queue_depths(project))
    if json_output:
        _emit_json([{"project_id": d.project_id, "agent_id": d.agent_id, "pending": d.pending} for d in depths])
        return
    if not depths:
        console.print("[dim]No pending messages.[/]")
        return
    table = Table(title="Queues")
    table.add_column("Project")
    table.add_column("Agent")
    table.add_column("Pending", justify="right")
    for depth in depths:
        table.add_row(depth.project_id, depth.agent_id, str(depth.pending))
    console.print(table)


@context_app.command("set")
def context_set_cmd(
    key: str,
    value: str,
    project: Optional[str] = typer.Option(None, "--project", help="Project scope; omit for global."),
) -> None:
    """Create or overwrite a context entry."""
    request = _parse(ContextSetRequest.parse, key, value, project)
    _run_store(set_context(request.scope, request.key, request.value))
    console.print(f"[green]Set[/] {request.key} ({describe_scope(request.scope)})")


@context_app.command("get")
def context_get_cmd(
    key: str,
    project: Optional[str] = typer.Option(None, "--project", help="Project scope; omit for global."),
) -> None:
    """Print a context value to stdout."""
    request = _parse(ContextKeyRequest.parse, key, project)
    value = _run_store(get_context(request.scope, request.key))
    sys.stdout.write(value + "\n")


@context_app.command("delete")
def context_delete_cmd(
    key: str,
    project: Optional[str] = typer.Option(None, "--project", help="Project scope; omit for global."),
) -> None:
    request = _parse(ContextKeyRequest.parse, key, project)
    _run_store(delete_context(request.scope, request.key))
    console.print(f"[green]Deleted[/] {request.key} ({describe_scope(request.scope)})")


@context_app.command("list")
def context_list_cmd(
    project: Optional[str] = typer.Option(None, "--project", help="Project scope; omit for global."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List keys set in a scope."""
    request = _parse(ContextListRequest.parse, project)
    keys = _run_store(list_context_keys(request.scope))
    if json_output:
        _emit_json(keys)
        return
    for key in keys:
        console.print(key, markup=False, highlight=False)


@messages_app.command("send")
def messages_send_cmd(
    project_id: str,
    to_agent: str,
    content: str,
    from_agent: Optional[str] = typer.Option(None, "--from", help="Sender id (default: anonymous)."),
    reference_id: Optional[str] = typer.Option(None, "--reference-id", help="Id of the message being answered."),
) -> None:
    """Queue a message and print its id."""
    request = _parse(SendMessageRequest.parse, project_id, to_agent, content, from_agent, reference_id)
    message_id = _run_store(
        send_message(request.queue, request.content, from_agent=request.from_agent, reference_id=request.reference_id)
    )
    sys.stdout.write(f"{message_id}\n")


def _print_messages(items: list[Message], *, title: str, json_output: bool) -> None:
    payloads = [message_payload(item) for item in items]
    if json_output:
        _emit_json(payloads)
        return
    if not payloads:
        console.print("[dim]Queue is empty.[/]")
        return
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("From")
    table.add_column("Ref")
    table.add_column("Created")
    table.add_column("Content", overflow="fold")
    for payload in payloads:
        table.add_row(
            payload["id"],
            payload["from_agent"],
            payload["reference_id"] or "",
            payload["created_at"],
            payload["content"],
        )
    console.print(table)


@messages_app.command("peek")
def messages_peek_cmd(
    project_id: str,
    agent_id: str,
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of messages."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Show queued messages without consuming them."""
    request = _parse(FetchMessagesRequest.parse, project_id, agent_id, limit)
    items = _run_store(peek_messages(request.queue, request.limit))
    _print_messages(items, title=f"{project_id} / {agent_id}", json_output=json_output)


@messages_app.command("receive")
def messages_receive_cmd(
    project_id: str,
    agent_id: str,
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of messages."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Consume queued messages; they are removed from the queue."""
    request = _parse(FetchMessagesRequest.parse, project_id, agent_id, limit)
    items = _run_store(receive_messages(request.queue, request.limit))
    _print_messages(items, title=f"{project_id} / {agent_id} (consumed)", json_output=json_output)


@messages_app.command("delete")
def messages_delete_cmd(message_id: str) -> None:
    request = _parse(DeleteMessageRequest.parse, message_id)
    _run_store(delete_message(request.message_id))
    console.print(f"[green]Deleted message[/] {request.message_id}")


def _parse(parser: Any, *args: Any) -> Any:
    try:
        return parser(*args)
    except MailboxError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
