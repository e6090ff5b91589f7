from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Sequence

from vaultpilot.models import AgentEvent, ModelOption


class LLMConnector(ABC):
    """What the CLI needs from a chat backend, and nothing more."""

    def __init__(self, model: str) -> None:
        self.model = model

    @abstractmethod
    def query(self, prompt: str, attachments: Sequence[str] = ()) -> AsyncIterator[AgentEvent]:
        """Stream the events for one user turn."""
        ...

    @abstractmethod
    def cancel(self) -> None:
        ...

    @abstractmethod
    def is_ready(self) -> bool:
        ...

    def set_model(self, model: str) -> None:
        self.model = model

    async def ensure_ready(self) -> None:
        """Do any network setup needed before the first query."""

    async def available_models(self) -> list[ModelOption]:
        return [ModelOption(id=self.model, name=self.model, provider="unknown")]

    @abstractmethod
    def clear_history(self) -> None:
        ...

    @abstractmethod
    def set_custom_instructions(self, text: str) -> None:
        """Replace the extra instructions appended to the system prompt."""
        ...

    async def aclose(self) -> None:
        pass
