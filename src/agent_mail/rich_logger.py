"""Rich console panels for engine operations (enabled with LOG_RICH_ENABLED)."""

from __future__ import annotations

import io
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

# stderr only: stdout carries operation results for shell consumers
console = Console(stderr=True, soft_wrap=True)


@dataclass
class OperationContext:
    """One engine operation as seen by the console logger."""

    operation: str
    arguments: dict[str, Any]
    project: Optional[str] = None
    agent: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[Exception] = None
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


def _json_panel(title: str, payload: Any, border_style: str) -> Panel:
    return Panel(
        Syntax(_safe_json_format(payload), "json", theme="monokai", line_numbers=False, word_wrap=True),
        title=f"[bold {border_style}]{title}[/bold {border_style}]",
        border_style=border_style,
        box=box.ROUNDED,
        padding=(0, 1),
    )


def _summary_table(ctx: OperationContext) -> Table:
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Field", style="bold bright_blue", no_wrap=True)
    table.add_column("Value")
    table.add_row("operation", ctx.operation)
    table.add_row("time", ctx.timestamp)
    if ctx.project:
        table.add_row("project", ctx.project)
    if ctx.agent:
        table.add_row("agent", ctx.agent)
    if ctx.end_time is not None:
        table.add_row("duration", f"{ctx.duration_ms:.1f} ms")
    return table


def build_operation_panel(ctx: OperationContext) -> Panel:
    """Completion panel: summary, arguments, then result or error."""
    components: list[RenderableType] = [_summary_table(ctx)]
    if ctx.arguments:
        components.append(_json_panel("Arguments", ctx.arguments, "cyan"))
    if ctx.error is not None:
        error_info: dict[str, Any] = {"error_type": type(ctx.error).__name__, "error_message": str(ctx.error)}
        if hasattr(ctx.error, "error_type"):
            error_info["code"] = ctx.error.error_type
        if getattr(ctx.error, "data", None):
            error_info["data"] = ctx.error.data
        components.append(_json_panel("Error", error_info, "bright_red"))
        status, style = "FAILED", "bright_red"
    else:
        components.append(_json_panel("Result", ctx.result, "bright_green"))
        status, style = "OK", "bright_green"
    return Panel(
        Group(*components),
        title=Text(f"{ctx.operation} {status}", style=f"bold {style}"),
        border_style=style,
        box=box.DOUBLE,
        padding=(0, 1),
    )


def log_operation_end(ctx: OperationContext) -> None:
    if ctx.end_time is None:
        ctx.end_time = time.perf_counter()
    console.print(build_operation_panel(ctx))


def render_operation_panel(ctx: OperationContext, width: int = 100) -> str:
    """Render the completion panel to plain text without printing it."""
    capture = Console(width=width, record=True, color_system=None, file=io.StringIO())
    capture.print(build_operation_panel(ctx))
    return capture.export_text()

