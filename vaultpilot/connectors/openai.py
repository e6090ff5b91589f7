from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Sequence

import httpx

from vaultpilot.agent import AgentLoop, MAX_TOOL_ROUNDS
from vaultpilot.auth import AuthError, StaticTokenProvider
from vaultpilot.client import ChatAPIError, ChatClient
from vaultpilot.connectors.base import LLMConnector
from vaultpilot.models import AgentEvent, ModelOption
from vaultpilot.tools import ToolExecutor

logger = logging.getLogger(__name__)


class OpenAIConnector(LLMConnector):
    """Any OpenAI-compatible chat-completions endpoint with a plain API key."""

    def __init__(
        self,
        model: str,
        vault: Path,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        *,
        http: httpx.AsyncClient | None = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
        custom_instructions: str = "",
        report_tool_input: bool = False,
    ) -> None:
        super().__init__(model)
        self.tokens = StaticTokenProvider(api_key)
        self.client = ChatClient(base_url=base_url, http=http, headers={"User-Agent": "vaultpilot"})
        self.loop = AgentLoop(
            self.client,
            self.tokens,
            ToolExecutor(vault),
            model,
            max_rounds=max_rounds,
            custom_instructions=custom_instructions,
            report_tool_input=report_tool_input,
        )

    def is_ready(self) -> bool:
        return True

    def set_model(self, model: str) -> None:
        super().set_model(model)
        self.loop.set_model(model)

    async def available_models(self) -> list[ModelOption]:
        try:
            raw = await self.client.fetch_models(await self.tokens.get_token())
        except (AuthError, ChatAPIError, httpx.HTTPError, ValueError) as e:
            logger.warning("Could not fetch model list: %s", e)
            return await super().available_models()
        return [ModelOption(id=m["id"], name=m["id"], provider=str(m.get("owned_by") or "openai")) for m in raw]

    def query(self, prompt: str, attachments: Sequence[str] = ()) -> AsyncIterator[AgentEvent]:
        return self.loop.send(prompt, attachments)

    def cancel(self) -> None:
        self.loop.cancel()

    def set_custom_instructions(self, text: str) -> None:
        self.loop.set_custom_instructions(text)

    def clear_history(self) -> None:
        self.loop.clear_history()

    async def aclose(self) -> None:
        await self.client.aclose()
