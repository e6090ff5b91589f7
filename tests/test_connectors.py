from __future__ import annotations

import asyncio

import pytest

import vaultpilot.config as config_mod
from fakes import FakeClient, text_chunk
from vaultpilot.catalog import FALLBACK_MODELS, api_model_to_option
from vaultpilot.connectors import get_connector
from vaultpilot.connectors.copilot import NOT_AUTHENTICATED, CopilotConnector
from vaultpilot.connectors.openai import OpenAIConnector


def _config(tmp_path):
    return config_mod.load(tmp_path / "absent.toml")


def _copilot(tmp_vault, client, token="gho"):
    connector = CopilotConnector("gpt-4o", tmp_vault, token, client=client)

    async def fake_token():
        return "copilot-token"

    connector.tokens.get_token = fake_token
    return connector


def test_unknown_connector(tmp_path, tmp_vault):
    with pytest.raises(ValueError, match="Unknown connector"):
        get_connector("ollama", _config(tmp_path), tmp_vault)


def test_factory_builds_copilot(tmp_path, tmp_vault, monkeypatch):
    monkeypatch.setenv("GITHUB_COPILOT_TOKEN", "gho_env")
    cfg = _config(tmp_path)
    cfg["agent"]["max_rounds"] = 7
    connector = get_connector("copilot", cfg, tmp_vault)
    assert isinstance(connector, CopilotConnector)
    assert connector.tokens.has_secret
    assert connector.loop.max_rounds == 7


def test_factory_builds_openai(tmp_path, tmp_vault, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    connector = get_connector("openai", _config(tmp_path), tmp_vault)
    assert isinstance(connector, OpenAIConnector)
    assert connector.client.base_url == "https://api.openai.com/v1"


async def test_query_without_login_is_single_error(tmp_vault):
    connector = CopilotConnector("gpt-4o", tmp_vault, None, client=FakeClient())
    events = [e async for e in connector.query("hi")]
    assert [(e.type, e.text) for e in events] == [("error", NOT_AUTHENTICATED)]
    assert not connector.is_ready()


async def test_ensure_ready_switches_to_offered_model(tmp_vault):
    client = FakeClient(models=[{"id": "claude-sonnet-4", "owned_by": "anthropic"}])
    connector = _copilot(tmp_vault, client)
    await connector.ensure_ready()
    assert connector.is_ready()
    assert connector.model == "claude-sonnet-4"
    assert connector.loop.model == "claude-sonnet-4"


async def test_available_models_fall_back(tmp_vault):
    connector = _copilot(tmp_vault, FakeClient(models=[]))
    assert await connector.available_models() == FALLBACK_MODELS


async def test_query_streams_through_loop(tmp_vault):
    client = FakeClient(rounds=[[text_chunk("hey")]], models=[{"id": "gpt-4o"}])
    connector = _copilot(tmp_vault, client)
    events = [e async for e in connector.query("hi")]
    assert [e.type for e in events] == ["text-delta", "text-done", "done"]


async def test_update_github_token_resets_readiness(tmp_vault):
    connector = _copilot(tmp_vault, FakeClient(models=[{"id": "gpt-4o"}]))
    await connector.ensure_ready()
    connector.update_github_token("gho_new")
    assert not connector.is_ready()
    assert connector._models is None


def test_api_model_to_option():
    option = api_model_to_option({"id": "claude-sonnet-4", "owned_by": "anthropic"})
    assert (option.name, option.provider) == ("Claude Sonnet 4", "Anthropic")
    unknown = api_model_to_option({"id": "x-1", "vendor": "Acme"})
    assert (unknown.name, unknown.provider) == ("x-1", "Acme")


class SlowModelsClient(FakeClient):
    """Model list request that blocks until released."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fetching = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_models(self, token):
        self.fetching.set()
        await self.release.wait()
        return self.models


async def _collect(events):
    return [e async for e in events]


async def test_cancel_during_first_query_setup(tmp_vault):
    client = SlowModelsClient(rounds=[[text_chunk("full reply")]], models=[{"id": "gpt-4o"}])
    connector = _copilot(tmp_vault, client)

    task = asyncio.create_task(_collect(connector.query("hi")))
    await client.fetching.wait()
    connector.cancel()

    assert await task == []
    assert client.requests == []
    assert not connector.is_ready()
    assert not connector.loop.is_busy


async def test_query_after_cancelled_setup_still_works(tmp_vault):
    client = SlowModelsClient(rounds=[[text_chunk("hey")]], models=[{"id": "gpt-4o"}])
    connector = _copilot(tmp_vault, client)

    task = asyncio.create_task(_collect(connector.query("first")))
    await client.fetching.wait()
    connector.cancel()
    await task

    client.release.set()
    events = await _collect(connector.query("second"))
    assert [e.type for e in events] == ["text-delta", "text-done", "done"]
    assert connector.is_ready()


def test_custom_instructions_reach_system_prompt(tmp_vault):
    connector = _copilot(tmp_vault, FakeClient())
    connector.set_custom_instructions("Reply in haiku.")
    assert connector.loop.messages[0].content.endswith("Reply in haiku.")
