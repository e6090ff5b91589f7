from __future__ import annotations

import pytest

from fakes import FakeClient, FakeTokenProvider
from vaultpilot.agent import AgentLoop
from vaultpilot.tools import ToolExecutor


@pytest.fixture
def tmp_vault(tmp_path):
    vault = tmp_path / "vault"
    vault.mkdir()
    (vault / "notes").mkdir()
    (vault / "notes" / "todo.md").write_text("# Todo\n- buy milk\n- write report\n")
    (vault / "readme.txt").write_text("hello vault\n")
    return vault


@pytest.fixture
def executor(tmp_vault):
    return ToolExecutor(tmp_vault)


@pytest.fixture
def no_auth_env(monkeypatch):
    monkeypatch.delenv("GITHUB_COPILOT_TOKEN", raising=False)


@pytest.fixture
def make_loop(executor):
    """Build an AgentLoop over a scripted client; returns (loop, client)."""

    def _make(rounds=(), replies=(), executor_override=None, tokens=None, **kwargs):
        client = FakeClient(rounds, replies)
        loop = AgentLoop(
            client,
            tokens or FakeTokenProvider(),
            executor_override or executor,
            "gpt-4o",
            **kwargs,
        )
        return loop, client

    return _make
