"""Rich console rendering for mailbox tool calls and server startup.

Everything here prints to stderr so stdout stays free for the stdio transport.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

console = Console(stderr=True, soft_wrap=True)

_HIDDEN_PARAMS = frozenset({"ctx", "context"})


@dataclass
class ToolCallContext:
    """State collected for one tool invocation."""

    tool_name: str
    kwargs: dict[str, Any]
    project: Optional[str] = None
    agent: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[Exception] = None
    success: bool = True
    query_stats: Optional[dict[str, Any]] = None
    _created_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        return self._created_at.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _json_panel(title: str, data: Any, *, border_style: str, heavy: bool = False) -> Panel:
    syntax = Syntax(
        _safe_json_format(data),
        "json",
        theme="monokai",
        line_numbers=False,
        word_wrap=True,
        background_color="default",
    )
    return Panel(
        syntax,
        title=f"[bold]{title}[/bold]",
        border_style=border_style,
        box=box.HEAVY if heavy else box.ROUNDED,
        padding=(0, 1),
    )


def _duration_style(duration_ms: float) -> str:
    if duration_ms < 100:
        return "bold green"
    if duration_ms < 1000:
        return "bold yellow"
    return "bold red"


def _call_table(ctx: ToolCallContext) -> Table:
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold bright_yellow", width=12)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Tool", f"[bold bright_green]{ctx.tool_name}[/bold bright_green]")
    table.add_row("Started", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.project:
        table.add_row("Project", f"[bright_cyan]{escape(ctx.project)}[/bright_cyan]")
    if ctx.agent:
        table.add_row("Agent", f"[bright_magenta]{escape(ctx.agent)}[/bright_magenta]")
    if ctx.end_time:
        style = _duration_style(ctx.duration_ms)
        table.add_row("Duration", f"[{style}]{ctx.duration_ms:.2f}ms[/{style}]")
        if ctx.success:
            table.add_row("Status", "[bold bright_green]SUCCESS[/bold bright_green]")
        else:
            table.add_row("Status", "[bold bright_red]FAILED[/bold bright_red]")
    if ctx.query_stats:
        total = int(ctx.query_stats.get("total", 0))
        total_ms = float(ctx.query_stats.get("total_time_ms", 0.0) or 0.0)
        table.add_row("DB Queries", f"[bold]{total}[/bold] in [cyan]{total_ms:.1f}ms[/cyan]")
    return table


def _query_breakdown(stats: dict[str, Any]) -> Panel | None:
    per_table = stats.get("per_table") or {}
    slow_queries = stats.get("slow_queries") or []
    if not per_table and not slow_queries:
        return None

    table = Table(title="DB Query Breakdown", box=box.SIMPLE_HEAVY, header_style="bold bright_cyan")
    table.add_column("Table", style="white", overflow="fold")
    table.add_column("Count", style="bold bright_green", justify="right")
    for name, count in list(per_table.items())[:5]:
        table.add_row(str(name), str(count))

    if not slow_queries:
        return Panel(table, border_style="bright_cyan", box=box.ROUNDED)
    slow_text = Text(f"Slow queries (>= {stats.get('slow_query_ms')}ms)\n", style="bold yellow")
    for item in slow_queries[:5]:
        slow_text.append(f"- {item.get('table') or 'unknown'}: {item.get('duration_ms', 0.0)}ms\n")
    return Panel(Group(table, slow_text), border_style="bright_cyan", box=box.ROUNDED)


def _outcome_panel(ctx: ToolCallContext) -> Panel:
    if ctx.error is None:
        return _json_panel("Result", ctx.result, border_style="bright_green")
    details: dict[str, Any] = {
        "error_type": getattr(ctx.error, "error_type", type(ctx.error).__name__),
        "error_message": str(ctx.error),
    }
    data = getattr(ctx.error, "data", None)
    if data:
        details["error_data"] = data
    return _json_panel("Error Details", details, border_style="bright_red", heavy=True)


def log_tool_call_start(ctx: ToolCallContext) -> None:
    """Print the call header and its input parameters."""
    components: list[RenderableType] = [_call_table(ctx)]
    params = {k: v for k, v in ctx.kwargs.items() if k not in _HIDDEN_PARAMS}
    if params:
        components.append(_json_panel("Input Parameters", params, border_style="bright_blue"))
    console.print(
        Panel(
            Group(*components),
            title="[bold bright_white on bright_blue] TOOL CALL [/bold bright_white on bright_blue]",
            border_style="bright_blue",
            box=box.ROUNDED,
            padding=(0, 1),
        )
    )


def log_tool_call_end(ctx: ToolCallContext) -> None:
    """Print the call summary with its result or error."""
    if not ctx.end_time:
        ctx.end_time = time.perf_counter()
    components: list[RenderableType] = [_call_table(ctx)]
    if ctx.query_stats:
        breakdown = _query_breakdown(ctx.query_stats)
        if breakdown is not None:
            components.append(breakdown)
    components.append(_outcome_panel(ctx))
    if ctx.success:
        title = "[bold bright_white on bright_green] TOOL CALL COMPLETED [/bold bright_white on bright_green]"
        border_style = "bright_green"
    else:
        title = "[bold bright_white on bright_red] TOOL CALL FAILED [/bold bright_white on bright_red]"
        border_style = "bright_red"
    console.print(Panel(Group(*components), title=title, border_style=border_style, box=box.ROUNDED, padding=(0, 1)))


def log_info(message: str, **kwargs: Any) -> None:
    console.print(Text(message, style="bold bright_cyan"))
    if kwargs:
        console.print(_json_panel("Details", kwargs, border_style="bright_cyan"))


def log_error(message: str, error: Optional[Exception] = None, **kwargs: Any) -> None:
    """Print an error line, plus a details panel when there is anything to show."""
    console.print(Text(message, style="bold bright_red"))
    details = dict(kwargs)
    if error is not None:
        details["error_type"] = type(error).__name__
        details["error_message"] = str(error)
    if details:
        console.print(_json_panel("Error Details", details, border_style="bright_red", heavy=True))


def display_startup_banner(settings: Any, host: str, port: int, path: str, stats: dict[str, int]) -> None:
    """Show server configuration next to current mailbox statistics."""
    console.print()
    console.print(Rule("[bold bright_cyan]mcp-mailbox[/bold bright_cyan]", style="bright_blue"))
    console.print(Text("Agent-to-agent message queues and shared context", style="dim"), justify="center")
    console.print()

    server_table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]Server Configuration[/bold bright_yellow]",
        padding=(0, 1),
    )
    server_table.add_column("Setting", style="bold bright_cyan", width=16)
    server_table.add_column("Value", style="white", overflow="fold")
    server_table.add_row("Environment", f"[bold bright_green]{settings.environment}[/bold bright_green]")
    server_table.add_row("Endpoint", f"[bold bright_magenta]http://{host}:{port}{path}[/bold bright_magenta]")
    server_table.add_row("Database", f"[dim]{escape(settings.database.url)}[/dim]")
    server_table.add_row(
        "Tool Logging",
        "[bold bright_green]ENABLED[/bold bright_green]" if settings.tools_log_enabled else "[dim]disabled[/dim]",
    )

    stats_table = Table(
        box=box.ROUNDED,
        border_style="bright_magenta",
        header_style="bold bright_white on bright_magenta",
        title="[bold bright_yellow]Mailbox Statistics[/bold bright_yellow]",
        padding=(0, 1),
    )
    stats_table.add_column("Resource", style="bold bright_cyan", width=16)
    stats_table.add_column("Count", style="bright_yellow", justify="right")
    stats_table.add_row("Queued messages", str(stats.get("messages", 0)))
    stats_table.add_row("Active queues", str(stats.get("queues", 0)))
    stats_table.add_row("Context entries", str(stats.get("context_entries", 0)))

    console.print(Columns([server_table, stats_table], equal=True, expand=True))
    console.print(Rule(style="bright_blue"))
    console.print()
