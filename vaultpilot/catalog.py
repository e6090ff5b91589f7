"""Chat models offered by the Copilot endpoint."""

from __future__ import annotations

from typing import Any

from vaultpilot.models import ModelOption

DEFAULT_MODEL_ID = "gpt-4o"

FALLBACK_MODELS: list[ModelOption] = [
    ModelOption(id="gpt-4o", name="GPT-4o", provider="OpenAI"),
    ModelOption(id="gpt-4.1", name="GPT-4.1", provider="OpenAI"),
    ModelOption(id="claude-sonnet-4", name="Claude Sonnet 4", provider="Anthropic"),
    ModelOption(id="claude-3.5-sonnet", name="Claude 3.5 Sonnet", provider="Anthropic"),
    ModelOption(id="gemini-2.5-pro", name="Gemini 2.5 Pro", provider="Google"),
    ModelOption(id="o4-mini", name="o4-mini", provider="OpenAI"),
]

_KNOWN_NAMES = {m.id: m.name for m in FALLBACK_MODELS}

_OWNER_TO_PROVIDER = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google",
    "microsoft": "Microsoft",
    "meta": "Meta",
    "mistral": "Mistral",
}


def api_model_to_option(raw: dict[str, Any]) -> ModelOption:
    owner = str(raw.get("owned_by") or raw.get("vendor") or "unknown")
    model_id = str(raw["id"])
    name = _KNOWN_NAMES.get(model_id) or raw.get("name") or model_id
    return ModelOption(
        id=model_id,
        name=str(name),
        provider=_OWNER_TO_PROVIDER.get(owner.lower(), owner),
    )
