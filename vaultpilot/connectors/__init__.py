from __future__ import annotations

import importlib
import os
from pathlib import Path
from typing import Any

from vaultpilot.auth import load_github_token
from vaultpilot.connectors.base import LLMConnector

CONNECTOR_MAP: dict[str, str] = {
    "copilot": "vaultpilot.connectors.copilot.CopilotConnector",
    "openai": "vaultpilot.connectors.openai.OpenAIConnector",
}


def get_connector(name: str, config: dict[str, Any], vault: Path) -> LLMConnector:
    """Factory: resolve connector name to class and instantiate from config."""
    if name not in CONNECTOR_MAP:
        raise ValueError(f"Unknown connector '{name}'. Available: {list(CONNECTOR_MAP)}")
    module_path, class_name = CONNECTOR_MAP[name].rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)

    agent = config["agent"]
    kwargs: dict[str, Any] = {
        "max_rounds": agent["max_rounds"],
        "custom_instructions": agent["custom_instructions"],
        "report_tool_input": agent["show_tool_input"],
    }
    if name == "copilot":
        kwargs["github_token"] = load_github_token()
    elif name == "openai":
        kwargs["api_key"] = os.environ.get(config["openai"]["api_key_env"], "")
        kwargs["base_url"] = config["openai"]["base_url"]
    return cls(config["llm"]["model"], vault, **kwargs)
