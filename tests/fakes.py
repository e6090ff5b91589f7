"""Scripted stand-ins for the network side of the agent loop."""
from __future__ import annotations

import asyncio
from typing import Any

from vaultpilot.auth import AuthError, TokenProvider
from vaultpilot.cancellation import CancelToken
from vaultpilot.models import Choice, Delta, Message, StreamChunk, ToolCallFragment, ToolResult


def text_chunk(text: str) -> StreamChunk:
    return StreamChunk(choices=[Choice(delta=Delta(content=text))])


def tool_chunk(index: int, id: str | None = None, name: str | None = None, arguments: str | None = None) -> StreamChunk:
    fragment = ToolCallFragment(index=index, id=id, name=name, arguments=arguments)
    return StreamChunk(choices=[Choice(delta=Delta(tool_calls=[fragment]))])


def tool_round(call_id: str, name: str, arguments: str = "{}") -> list[StreamChunk]:
    """One round that asks for a single tool call, arguments split in two."""
    half = len(arguments) // 2
    return [
        tool_chunk(0, id=call_id, name=name),
        tool_chunk(0, arguments=arguments[:half]),
        tool_chunk(0, arguments=arguments[half:]),
    ]


WAIT_FOR_CANCEL = object()


class FakeClient:
    """Plays one scripted round per stream_chat call.

    A round is a list of chunks, or an exception to raise before any chunk.
    An exception inside the list is raised at that point of the stream, and
    WAIT_FOR_CANCEL blocks until the round's cancel token fires.
    """

    def __init__(self, rounds=(), replies=(), models=()) -> None:
        self.rounds = list(rounds)
        self.replies = list(replies)
        self.models = list(models)
        self.requests: list[list[Message]] = []
        self.sent: list[list[Message]] = []

    async def stream_chat(self, token, messages, model, tools=None, cancel: CancelToken | None = None):
        self.requests.append(list(messages))
        script = self.rounds.pop(0)
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if item is WAIT_FOR_CANCEL:
                await cancel.wait()
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def send_chat(self, token, messages, model, tools=None) -> Message:
        self.sent.append(list(messages))
        return self.replies.pop(0)

    async def fetch_models(self, token) -> list[dict[str, Any]]:
        return self.models

    async def aclose(self) -> None:
        pass


class FakeTokenProvider(TokenProvider):
    def __init__(self, token: str = "tok", error: str | None = None) -> None:
        self.token = token
        self.error = error
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        if self.error:
            raise AuthError(self.error)
        return self.token


class RecordingExecutor:
    """Executor double: records calls, optionally runs a hook first."""

    def __init__(self, hook=None, result: ToolResult | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.hook = hook
        self.result = result or ToolResult.ok("ok")

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        self.calls.append((name, arguments))
        if self.hook is not None:
            self.hook()
        await asyncio.sleep(0)
        return self.result
