from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Sequence

import httpx

from vaultpilot.agent import AgentLoop, MAX_TOOL_ROUNDS
from vaultpilot.auth import AuthError, CopilotTokenProvider
from vaultpilot.cancellation import Cancelled, CancelToken
from vaultpilot.catalog import FALLBACK_MODELS, api_model_to_option
from vaultpilot.client import ChatAPIError, ChatClient
from vaultpilot.connectors.base import LLMConnector
from vaultpilot.models import AgentEvent, ModelOption
from vaultpilot.tools import ToolExecutor

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "Not authenticated with GitHub Copilot. Run 'vaultpilot login'."


class CopilotConnector(LLMConnector):
    """GitHub Copilot chat: GitHub token -> short-lived Copilot token -> agent loop."""

    def __init__(
        self,
        model: str,
        vault: Path,
        github_token: str | None = None,
        *,
        client: ChatClient | None = None,
        http: httpx.AsyncClient | None = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
        custom_instructions: str = "",
        report_tool_input: bool = False,
    ) -> None:
        super().__init__(model)
        self.tokens = CopilotTokenProvider(github_token or "", http)
        self.client = client or ChatClient(http=http)
        self.loop = AgentLoop(
            self.client,
            self.tokens,
            ToolExecutor(vault),
            model,
            max_rounds=max_rounds,
            custom_instructions=custom_instructions,
            report_tool_input=report_tool_input,
        )
        self._models: list[ModelOption] | None = None
        self._ready = False
        self._setup_cancel: CancelToken | None = None

    def is_ready(self) -> bool:
        return self._ready

    def set_model(self, model: str) -> None:
        super().set_model(model)
        self.loop.set_model(model)

    def update_github_token(self, github_token: str) -> None:
        self.tokens.update_secret(github_token)
        self._models = None
        self._ready = False

    async def ensure_ready(self) -> None:
        if self._ready:
            return
        token = await self.tokens.get_token()
        models = await self._fetch_models(token)
        if models and self.model not in {m.id for m in models}:
            logger.info("Model %s not offered; switching to %s", self.model, models[0].id)
            self.set_model(models[0].id)
        self._ready = True

    async def _fetch_models(self, token: str) -> list[ModelOption]:
        try:
            raw = await self.client.fetch_models(token)
        except (ChatAPIError, httpx.HTTPError, ValueError) as e:
            logger.warning("Could not fetch model list: %s", e)
            return []
        self._models = [api_model_to_option(m) for m in raw]
        return self._models

    async def available_models(self) -> list[ModelOption]:
        if self._models is None and self.tokens.has_secret:
            try:
                await self._fetch_models(await self.tokens.get_token())
            except AuthError as e:
                logger.warning("Could not fetch model list: %s", e)
        return list(self._models or FALLBACK_MODELS)

    async def query(self, prompt: str, attachments: Sequence[str] = ()) -> AsyncIterator[AgentEvent]:
        if not self.tokens.has_secret:
            yield AgentEvent.failure(NOT_AUTHENTICATED)
            return
        if not self._ready:
            # the loop has no cancel token yet, so setup gets its own
            setup = self._setup_cancel = CancelToken()
            try:
                await setup.race(self.ensure_ready())
                setup.raise_if_cancelled()
            except Cancelled:
                return
            except AuthError as e:
                yield AgentEvent.failure(f"Authentication failed: {e}")
                return
            finally:
                self._setup_cancel = None
        async for event in self.loop.send(prompt, attachments):
            yield event

    def cancel(self) -> None:
        if self._setup_cancel is not None:
            self._setup_cancel.cancel()
        self.loop.cancel()

    def set_custom_instructions(self, text: str) -> None:
        self.loop.set_custom_instructions(text)

    def clear_history(self) -> None:
        self.loop.clear_history()

    async def aclose(self) -> None:
        await self.client.aclose()
