from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console
from rich.markup import escape

from vaultpilot.auth import AuthError
from vaultpilot.connectors import LLMConnector
from vaultpilot.renderer import EventRenderer, render_help, render_models

console = Console()


def _make_toolbar(vault: Path, model: str) -> HTML:
    return HTML(
        f"<b>[vault: {vault.name}]</b>  <i>[{model}]</i>  "
        "<dim>Enter to send | Esc+Enter for newline | Ctrl+C cancels a reply | /help</dim>"
    )


async def stream_reply(connector: LLMConnector, prompt: str, renderer: EventRenderer) -> bool:
    """Render one reply; Ctrl+C cancels it. Returns False if it was cancelled."""
    cancelled = False

    def _on_interrupt() -> None:
        nonlocal cancelled
        cancelled = True
        connector.cancel()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        async for event in connector.query(prompt):
            renderer.render(event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if cancelled:
        console.print("\n[yellow]Cancelled.[/yellow]")
    return not cancelled


async def handle_command(command: str, connector: LLMConnector) -> bool:
    """Dispatch a / command. Returns False when the REPL should exit."""
    parts = command.strip().split(None, 1)
    cmd = parts[0].lstrip("/").lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if cmd in ("exit", "quit"):
        return False
    if cmd == "clear":
        connector.clear_history()
        console.print("[dim]Conversation cleared.[/dim]")
    elif cmd == "models":
        render_models(await connector.available_models(), connector.model)
    elif cmd == "model":
        if not arg:
            console.print(f"Current model: [cyan]{escape(connector.model)}[/cyan]")
        else:
            connector.set_model(arg)
            console.print(f"[green]Model set to {escape(arg)}[/green]")
    elif cmd == "instructions":
        connector.set_custom_instructions(arg)
        if arg:
            console.print("[green]Custom instructions set.[/green]")
        else:
            console.print("[dim]Custom instructions cleared.[/dim]")
    elif cmd == "help":
        render_help()
    else:
        console.print(f"[red]Unknown command: {escape(command)}[/red]")
    return True


async def run_repl(connector: LLMConnector, vault: Path, show_tool_input: bool = False) -> None:
    """
    Run the interactive prompt_toolkit REPL.
    Enter = submit, Esc+Enter = newline.
    """
    kb = KeyBindings()

    # Enter submits (eager so it overrides the multiline default)
    @kb.add("enter", eager=True)
    def _submit(event):
        event.current_buffer.validate_and_handle()

    @kb.add("escape", "enter")
    def _newline(event):
        event.current_buffer.insert_text("\n")

    prompt_session: PromptSession = PromptSession(
        multiline=True,
        key_bindings=kb,
        bottom_toolbar=lambda: _make_toolbar(vault, connector.model),
        prompt_continuation="  ",
    )
    renderer = EventRenderer(console, show_tool_input=show_tool_input)

    console.print(
        f"[bold cyan]vaultpilot[/bold cyan]  vault: [bold]{escape(str(vault))}[/bold]\n"
        "[dim]Enter to send, Esc+Enter for newline, /exit or Ctrl+D to quit[/dim]\n"
    )

    try:
        await connector.ensure_ready()
    except AuthError as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")

    while True:
        try:
            text = await prompt_session.prompt_async("> ")
        except KeyboardInterrupt:
            continue
        except EOFError:
            break

        text = text.strip()
        if not text:
            continue

        if text.startswith("/"):
            if not await handle_command(text, connector):
                break
            continue

        console.print()
        await stream_reply(connector, text, renderer)
        console.print()

    console.print("[bold cyan]Goodbye![/bold cyan]")
