"""Assemble one model turn from streamed chunks.

Text fragments are forwarded as soon as they arrive. Tool calls arrive as
fragments keyed by a positional ``index``: the first fragment for an index
usually carries the id and name, later ones carry slices of the JSON
arguments. Fragments for different indexes may interleave with each other
and with text.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from vaultpilot.cancellation import Cancelled, CancelToken
from vaultpilot.client import ChatAPIError
from vaultpilot.models import AgentEvent, RoundResult, StreamChunk, ToolCall, ToolCallFragment

logger = logging.getLogger(__name__)


@dataclass
class _CallBuilder:
    id: str
    name: str = ""
    arguments: str = ""


def synthesize_call_id(index: int, now: float | None = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"tc_{index}_{millis}"


class RoundAccumulator:
    def __init__(self, cancel: CancelToken | None = None, report_tool_input: bool = False) -> None:
        self.cancel = cancel or CancelToken()
        self.report_tool_input = report_tool_input
        self.text = ""
        self._calls: dict[int, _CallBuilder] = {}
        self.result: RoundResult | None = None
        self.exception: Exception | None = None

    @property
    def received_anything(self) -> bool:
        return bool(self.text or self._calls)

    def feed(self, chunk: StreamChunk) -> list[AgentEvent]:
        """Fold one chunk in; return the events observable right now."""
        events: list[AgentEvent] = []
        for choice in chunk.choices:
            delta = choice.delta
            if delta.content:
                self.text += delta.content
                events.append(AgentEvent.text_delta(delta.content))
            for fragment in delta.tool_calls:
                event = self._merge(fragment)
                if event is not None:
                    events.append(event)
        return events

    def _merge(self, fragment: ToolCallFragment) -> AgentEvent | None:
        builder = self._calls.get(fragment.index)
        if builder is None:
            builder = _CallBuilder(id=fragment.id or synthesize_call_id(fragment.index))
            self._calls[fragment.index] = builder
        elif fragment.id:
            builder.id = fragment.id

        if fragment.name:
            builder.name = fragment.name
        if fragment.arguments:
            builder.arguments += fragment.arguments
            if self.report_tool_input:
                return AgentEvent.tool_input_progress(builder.id, builder.name, builder.arguments)
        return None

    def finish(self) -> RoundResult:
        calls = [
            ToolCall(id=b.id, name=b.name, arguments=b.arguments)
            for _, b in sorted(self._calls.items())
        ]
        self.result = RoundResult(text=self.text, tool_calls=calls)
        return self.result

    def fail(self, message: str) -> RoundResult:
        self.result = RoundResult(text=self.text, error=message)
        return self.result

    def abort(self) -> RoundResult:
        self.result = RoundResult(text=self.text, aborted=True)
        return self.result

    async def consume(self, chunks: AsyncIterator[StreamChunk]) -> AsyncIterator[AgentEvent]:
        """Drive *chunks* to the end, yielding live events; sets ``self.result``.

        Network and protocol errors raised by *chunks* end up in
        ``result.error`` instead of escaping, unless the round was cancelled,
        in which case the result is marked aborted.
        """
        try:
            async for chunk in chunks:
                if self.cancel.cancelled:
                    break
                for event in self.feed(chunk):
                    yield event
        except (ChatAPIError, httpx.HTTPError, Cancelled) as e:
            self.exception = e
            if self.cancel.cancelled or isinstance(e, Cancelled):
                self.abort()
            else:
                logger.warning("Round failed: %s", e)
                self.fail(_describe(e))
            return
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.cancel.cancelled:
            self.abort()
        else:
            self.finish()


def _describe(error: Exception) -> str:
    if isinstance(error, httpx.HTTPError) and not str(error):
        return f"{type(error).__name__} while talking to the chat API"
    return str(error)
