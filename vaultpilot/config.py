from __future__ import annotations

import copy
import tomllib
from pathlib import Path
from typing import Any

from vaultpilot.catalog import DEFAULT_MODEL_ID

CONFIG_DIR = Path("~/.vaultpilot").expanduser()
CONFIG_FILE = CONFIG_DIR / "config.toml"

DEFAULTS: dict[str, Any] = {
    "llm": {
        "connector": "copilot",
        "model": DEFAULT_MODEL_ID,
    },
    "vault": {
        "path": "~/Documents/vault",
    },
    "agent": {
        "max_rounds": 25,
        "custom_instructions": "",
        "show_tool_input": False,
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
    },
    "logging": {
        "level": "WARNING",
    },
}


def load(path: Path | None = None) -> dict[str, Any]:
    """Load config from ~/.vaultpilot/config.toml, merging with defaults."""
    path = path or CONFIG_FILE
    config = copy.deepcopy(DEFAULTS)
    if path.exists():
        with open(path, "rb") as f:
            on_disk = tomllib.load(f)
        config = _deep_merge(config, on_disk)
    validate(config)
    return config


def save(config: dict[str, Any], path: Path | None = None) -> None:
    """Save config dict as TOML (manual serialization)."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = _dict_to_toml(config)
    path.write_text("\n".join(lines).lstrip("\n") + "\n")


def validate(config: dict[str, Any]) -> None:
    max_rounds = config["agent"]["max_rounds"]
    if isinstance(max_rounds, bool) or not isinstance(max_rounds, int) or max_rounds < 1:
        raise ValueError(f"agent.max_rounds must be a positive integer, got {max_rounds!r}")


def vault_path(config: dict[str, Any]) -> Path:
    return Path(config["vault"]["path"]).expanduser()


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _dict_to_toml(d: dict[str, Any], prefix: str = "") -> list[str]:
    """Minimal TOML serializer for nested dicts of scalar values."""
    lines: list[str] = []
    sections: list[tuple[str, dict]] = []

    for k, v in d.items():
        if isinstance(v, dict):
            sections.append((k, v))
        else:
            lines.append(f"{k} = {_toml_value(v)}")

    for section_key, section_val in sections:
        name = section_key if not prefix else f"{prefix}.{section_key}"
        scalars = {k: v for k, v in section_val.items() if not isinstance(v, dict)}
        nested = {k: v for k, v in section_val.items() if isinstance(v, dict)}
        lines.append("")
        lines.append(f"[{name}]")
        for sk, sv in scalars.items():
            lines.append(f"{sk} = {_toml_value(sv)}")
        if nested:
            lines.extend(_dict_to_toml(nested, name))

    return lines


def _toml_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, str):
        escaped = v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    raise ValueError(f"Unsupported TOML value type: {type(v)}")
