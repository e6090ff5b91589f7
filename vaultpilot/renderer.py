from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vaultpilot.models import AgentEvent, ModelOption

console = Console()

RESULT_PREVIEW_LINES = 12


def _summarize_arguments(arguments: dict[str, Any] | None, width: int = 80) -> str:
    if not arguments:
        return ""
    text = json.dumps(arguments, ensure_ascii=False)
    return text if len(text) <= width else text[: width - 3] + "..."


def _preview(content: str, max_lines: int = RESULT_PREVIEW_LINES) -> str:
    lines = content.splitlines()
    if len(lines) <= max_lines:
        return content
    return "\n".join(lines[:max_lines]) + f"\n... ({len(lines) - max_lines} more lines)"


class EventRenderer:
    """Prints agent events as they arrive.

    Text deltas are written raw so the reply appears incrementally; tool
    activity is shown between text blocks.
    """

    def __init__(self, out: Console | None = None, show_tool_input: bool = False) -> None:
        self.out = out or console
        self.show_tool_input = show_tool_input
        self._mid_line = False
        self.errors = 0

    def render(self, event: AgentEvent) -> None:
        handler = getattr(self, f"_on_{event.type.replace('-', '_')}")
        handler(event)

    def _break_line(self) -> None:
        if self._mid_line:
            self.out.print()
            self._mid_line = False

    def _on_text_delta(self, event: AgentEvent) -> None:
        text = event.text or ""
        self.out.print(Text(text), end="")
        self._mid_line = not text.endswith("\n")

    def _on_text_done(self, event: AgentEvent) -> None:
        self._break_line()

    def _on_tool_start(self, event: AgentEvent) -> None:
        self._break_line()
        args = _summarize_arguments(event.arguments)
        self.out.print(f"[dim]→ {escape(event.name or '?')} {escape(args)}[/dim]")

    def _on_tool_input_progress(self, event: AgentEvent) -> None:
        if not self.show_tool_input:
            return
        partial = event.partial_arguments or ""
        self.out.print(f"[dim]  … {escape(event.name or '?')}: {len(partial)} chars[/dim]")

    def _on_tool_result(self, event: AgentEvent) -> None:
        result = event.result
        if result is None:
            return
        style = "red" if result.is_error else "green"
        self.out.print(Panel(
            Text(_preview(result.content)),
            title=escape(event.name or "tool"),
            title_align="left",
            border_style=style,
            expand=False,
        ))

    def _on_error(self, event: AgentEvent) -> None:
        self.errors += 1
        self._break_line()
        self.out.print(f"[red]Error: {escape(event.text or 'unknown error')}[/red]")

    def _on_done(self, event: AgentEvent) -> None:
        self._break_line()


def render_models(models: list[ModelOption], current: str | None = None) -> None:
    table = Table(title="Available models")
    table.add_column("", width=1)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Provider", style="dim")
    for m in models:
        marker = "●" if m.id == current else ""
        table.add_row(marker, m.id, m.name, m.provider)
    console.print(table)


def render_help() -> None:
    table = Table(title="Commands", show_header=False, box=None)
    table.add_column(style="cyan")
    table.add_column()
    table.add_row("/models", "List available models")
    table.add_row("/model <id>", "Switch model")
    table.add_row("/clear", "Start a fresh conversation")
    table.add_row("/instructions <text>", "Set extra instructions for the assistant (empty clears)")
    table.add_row("/help", "Show this help")
    table.add_row("/exit", "Quit (or Ctrl+D)")
    table.add_row("Ctrl+C", "Cancel the current reply")
    console.print(table)
