from __future__ import annotations

import asyncio
import copy
import sys
from pathlib import Path
from typing import Any

import click
import questionary
from rich.console import Console
from rich.markup import escape

import vaultpilot.config as config_mod
from vaultpilot import auth
from vaultpilot.catalog import FALLBACK_MODELS
from vaultpilot.connectors import CONNECTOR_MAP, LLMConnector, get_connector
from vaultpilot.log import setup_logging
from vaultpilot.renderer import EventRenderer, render_models
from vaultpilot.repl import run_repl, stream_reply

console = Console()

MODEL_OVERRIDE = "vaultpilot.model_override"


def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


def _load_config(ctx: click.Context) -> dict[str, Any]:
    if ctx.obj is None:
        try:
            ctx.obj = config_mod.load()
        except (ValueError, OSError) as e:
            _fail(f"Invalid config {config_mod.CONFIG_FILE}: {e}")
    return ctx.obj


def _session_config(ctx: click.Context) -> dict[str, Any]:
    """Config for a chat session, with any --model override applied to a copy."""
    cfg = copy.deepcopy(_load_config(ctx))
    model = ctx.meta.get(MODEL_OVERRIDE)
    if model:
        cfg["llm"]["model"] = model
    return cfg


def _open_connector(cfg: dict[str, Any]) -> tuple[LLMConnector, Path]:
    vault = config_mod.vault_path(cfg)
    if not vault.is_dir():
        _fail(f"Vault not found at {vault}. Run 'vaultpilot config' to set it up.")
    try:
        connector = get_connector(cfg["llm"]["connector"], cfg, vault)
    except ValueError as e:
        _fail(str(e))
    return connector, vault


@click.group(invoke_without_command=True)
@click.option("--model", "-m", default=None, help="Model id (overrides config)")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, model: str | None, verbose: bool) -> None:
    """vaultpilot: chat with a tool-using assistant over your vault."""
    cfg = _load_config(ctx)
    setup_logging("DEBUG" if verbose else cfg["logging"]["level"])
    ctx.meta[MODEL_OVERRIDE] = model

    if ctx.invoked_subcommand is not None:
        return

    cfg = _session_config(ctx)
    connector, vault = _open_connector(cfg)
    asyncio.run(_chat(connector, vault, cfg["agent"]["show_tool_input"]))


async def _chat(connector: LLMConnector, vault: Path, show_tool_input: bool) -> None:
    try:
        await run_repl(connector, vault, show_tool_input)
    finally:
        await connector.aclose()


@main.command("ask")
@click.argument("prompt", nargs=-1, required=True)
@click.pass_context
def cmd_ask(ctx: click.Context, prompt: tuple[str, ...]) -> None:
    """Send one prompt and print the reply."""
    cfg = _session_config(ctx)
    connector, _ = _open_connector(cfg)
    ok = asyncio.run(_ask(connector, " ".join(prompt), cfg["agent"]["show_tool_input"]))
    if not ok:
        sys.exit(1)


async def _ask(connector: LLMConnector, prompt: str, show_tool_input: bool) -> bool:
    renderer = EventRenderer(console, show_tool_input=show_tool_input)
    try:
        completed = await stream_reply(connector, prompt, renderer)
    finally:
        await connector.aclose()
    return completed and not renderer.errors


@main.command("login")
def cmd_login() -> None:
    """Sign in to GitHub Copilot with the device-code flow."""
    try:
        token = asyncio.run(_login())
    except auth.AuthError as e:
        _fail(f"Login failed: {e}")
    except KeyboardInterrupt:
        console.print("\n[yellow]Login cancelled.[/yellow]")
        return
    auth.save_github_token(token)
    console.print(f"[green]Logged in. Token saved to {auth.AUTH_FILE}[/green]")


async def _login() -> str:
    code = await auth.fetch_device_code()
    console.print(
        f"Open [cyan]{escape(code.verification_uri)}[/cyan] and enter the code "
        f"[bold]{escape(code.user_code)}[/bold]"
    )
    with console.status("Waiting for authorization..."):
        github_token = await auth.poll_for_access_token(code.device_code, code.interval, code.expires_in)
    # confirm the account actually has Copilot access
    await auth.fetch_copilot_token(github_token)
    return github_token


@main.command("logout")
def cmd_logout() -> None:
    """Forget the stored GitHub token."""
    if auth.clear_github_token():
        console.print("[green]Logged out.[/green]")
    else:
        console.print("[yellow]No stored token.[/yellow]")


@main.command("models")
@click.pass_context
def cmd_models(ctx: click.Context) -> None:
    """List models offered by the configured endpoint."""
    cfg = _session_config(ctx)
    connector, _ = _open_connector(cfg)
    models = asyncio.run(_models(connector))
    render_models(models or FALLBACK_MODELS, cfg["llm"]["model"])


async def _models(connector: LLMConnector):
    try:
        return await connector.available_models()
    finally:
        await connector.aclose()


@main.command("config")
@click.pass_context
def cmd_config(ctx: click.Context) -> None:
    """Interactive configuration wizard."""
    cfg = _load_config(ctx)

    console.print("[bold cyan]vaultpilot configuration[/bold cyan]\n")

    connector = questionary.select(
        "LLM connector:",
        choices=list(CONNECTOR_MAP),
        default=cfg["llm"]["connector"],
    ).ask()

    model = questionary.text(
        "Model id:",
        default=cfg["llm"]["model"],
    ).ask()

    vault_path_str = questionary.text(
        "Vault path:",
        default=cfg["vault"]["path"],
    ).ask()

    max_rounds = questionary.text(
        "Max tool rounds per message:",
        default=str(cfg["agent"]["max_rounds"]),
        validate=lambda s: s.isdigit() and int(s) >= 1 or "Enter a positive integer",
    ).ask()

    if connector is None or model is None or vault_path_str is None or max_rounds is None:
        console.print("[yellow]Configuration cancelled.[/yellow]")
        return

    cfg["llm"]["connector"] = connector
    cfg["llm"]["model"] = model
    cfg["vault"]["path"] = vault_path_str
    cfg["agent"]["max_rounds"] = int(max_rounds)

    if connector == "openai":
        base_url = questionary.text("API base URL:", default=cfg["openai"]["base_url"]).ask()
        key_env = questionary.text("API key environment variable:", default=cfg["openai"]["api_key_env"]).ask()
        if base_url is None or key_env is None:
            console.print("[yellow]Configuration cancelled.[/yellow]")
            return
        cfg["openai"]["base_url"] = base_url
        cfg["openai"]["api_key_env"] = key_env

    config_mod.save(cfg)

    vault = Path(vault_path_str).expanduser()
    vault.mkdir(parents=True, exist_ok=True)

    console.print(f"\n[green]Config saved to {config_mod.CONFIG_FILE}[/green]")
    console.print(f"[green]Vault: {vault}[/green]")

    if connector == "copilot" and auth.load_github_token() is None:
        console.print("\n[dim]Sign in to GitHub Copilot with:[/dim]\n  vaultpilot login\n")
