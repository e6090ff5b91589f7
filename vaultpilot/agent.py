from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Sequence

import httpx

from vaultpilot.accumulator import RoundAccumulator
from vaultpilot.auth import AuthError, TokenProvider
from vaultpilot.cancellation import Cancelled, CancelToken
from vaultpilot.client import ChatClient
from vaultpilot.models import (
    AgentEvent,
    Choice,
    Delta,
    Message,
    RoundResult,
    StreamChunk,
    Tool,
    ToolCallFragment,
)
from vaultpilot.tools import TOOLS, ToolExecutor

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 25

MAX_ROUNDS_NOTICE = (
    "\n\n*Reached maximum tool use rounds ({rounds}). "
    "Please continue the conversation to proceed.*"
)

SYSTEM_PROMPT = """\
You are an AI assistant with full access to the user's vault directory. You can read, write, \
and edit files, run bash commands, search for content, and explore the file system.

Key behaviors:
- Read files before modifying them. Understand existing content before making changes.
- Use edit_file for targeted changes to existing files. Use write_file only for new files or full rewrites.
- Use grep with focused patterns to find content. Use glob to discover file structure.
- Keep bash commands focused; they run in the vault directory with a 30-second timeout.
- Be concise. Show your work through tool use, not lengthy explanations.
- If a task needs several steps, carry them out one after another with the tools available.
- Paths are relative to the vault root. Never try to access files outside the vault.
"""


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool call's JSON arguments; anything unusable becomes {}."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug("Unparseable tool arguments %r: %s", raw[:200], e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _message_as_chunk(message: Message) -> StreamChunk:
    fragments = [
        ToolCallFragment(index=i, id=tc.id or None, name=tc.name, arguments=tc.arguments)
        for i, tc in enumerate(message.tool_calls)
    ]
    return StreamChunk(choices=[Choice(delta=Delta(content=message.content, tool_calls=fragments))])


class AgentLoop:
    """Multi-round tool-calling loop over one conversation.

    Each ``send`` streams model turns, runs the requested tools in declared
    order, feeds their results back, and repeats until the model answers
    without tool calls or ``max_rounds`` tool rounds have run.
    """

    def __init__(
        self,
        client: ChatClient,
        token_provider: TokenProvider,
        executor: ToolExecutor,
        model: str,
        *,
        tools: list[Tool] | None = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
        system_prompt: str = SYSTEM_PROMPT,
        custom_instructions: str = "",
        report_tool_input: bool = False,
        stream_fallback: bool = True,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.client = client
        self.token_provider = token_provider
        self.executor = executor
        self.tools = TOOLS if tools is None else tools
        self.max_rounds = max_rounds
        self.system_prompt = system_prompt
        self.custom_instructions = custom_instructions
        self.report_tool_input = report_tool_input
        self.stream_fallback = stream_fallback
        self._model = model
        self._history: list[Message] = []
        self._cancel: CancelToken | None = None

    # -- session state ------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    def set_custom_instructions(self, text: str) -> None:
        self.custom_instructions = text

    @property
    def is_busy(self) -> bool:
        return self._cancel is not None

    def system_message(self) -> Message:
        content = self.system_prompt
        if self.custom_instructions.strip():
            content = f"{content}\n\n{self.custom_instructions.strip()}"
        return Message(role="system", content=content)

    @property
    def messages(self) -> list[Message]:
        """The full message list as sent to the model (a copy)."""
        return [self.system_message(), *self._history]

    def clear_history(self) -> None:
        self._history = []

    def cancel(self) -> None:
        if self._cancel is not None:
            logger.info("Cancelling in-flight request")
            self._cancel.cancel()

    # -- the loop -----------------------------------------------------------

    async def send(self, message: str, attachments: Sequence[str] = ()) -> AsyncIterator[AgentEvent]:
        """Process one user message, yielding events until done, error, or cancel."""
        if self._cancel is not None:
            raise RuntimeError("send() is already running for this session")
        cancel = self._cancel = CancelToken()
        try:
            async with aclosing(self._run(message, attachments, cancel)) as events:
                async for event in events:
                    if cancel.cancelled:
                        return
                    yield event
        except Exception as e:
            if cancel.cancelled:
                return
            logger.exception("Agent loop failed")
            yield AgentEvent.failure(str(e) or type(e).__name__)
        finally:
            if self._cancel is cancel:
                self._cancel = None

    async def _run(self, message: str, attachments: Sequence[str], cancel: CancelToken) -> AsyncIterator[AgentEvent]:
        content = message
        if attachments:
            content += (
                f"\n\n[Note: {len(attachments)} attachment(s) are present "
                "but not supported in this mode]"
            )
        self._history.append(Message(role="user", content=content))

        rounds = 0
        while True:
            # credentials may expire while tools run, so check every round
            try:
                token = await cancel.race(self.token_provider.get_token())
            except Cancelled:
                return
            except AuthError as e:
                yield AgentEvent.failure(f"Authentication failed: {e}")
                return

            logger.debug("Round %d/%d with %s", rounds + 1, self.max_rounds, self._model)
            result: RoundResult | None = None
            async for item in self._stream_round(token, cancel):
                if isinstance(item, RoundResult):
                    result = item
                else:
                    yield item
            if result is None or result.aborted or cancel.cancelled:
                return
            if result.error is not None:
                yield AgentEvent.failure(result.error)
                return

            if result.text:
                yield AgentEvent.text_done(result.text)
            assistant = Message(role="assistant", content=result.text or None, tool_calls=result.tool_calls)

            if not result.tool_calls:
                self._history.append(assistant)
                yield AgentEvent.done()
                return

            # the assistant turn and its tool results are committed together
            staged: list[Message] = [assistant]
            for call in result.tool_calls:
                if cancel.cancelled:
                    return
                arguments = parse_arguments(call.arguments)
                yield AgentEvent.tool_start(call, arguments)
                tool_result = await self.executor.execute(call.name, arguments)
                if cancel.cancelled:
                    return
                yield AgentEvent.tool_result(call, arguments, tool_result)
                staged.append(Message(role="tool", content=tool_result.content, tool_call_id=call.id))
            self._history.extend(staged)

            rounds += 1
            if rounds >= self.max_rounds:
                logger.warning("Reached max tool rounds (%d)", self.max_rounds)
                notice = MAX_ROUNDS_NOTICE.format(rounds=self.max_rounds)
                yield AgentEvent.text_delta(notice)
                yield AgentEvent.text_done(notice)
                self._history.append(Message(role="assistant", content=notice))
                yield AgentEvent.done()
                return

    async def _stream_round(self, token: str, cancel: CancelToken) -> AsyncIterator[AgentEvent | RoundResult]:
        """Yield live events for one model turn, then its RoundResult last."""
        acc = RoundAccumulator(cancel, self.report_tool_input)
        chunks = self.client.stream_chat(token, self.messages, self._model, self.tools, cancel)
        async for event in acc.consume(chunks):
            yield event

        if self._should_fall_back(acc):
            logger.warning("Streaming failed (%s); retrying without streaming", acc.exception)
            acc = RoundAccumulator(cancel, self.report_tool_input)
            async for event in acc.consume(self._single_response(token, cancel)):
                yield event

        yield acc.result or acc.abort()

    def _should_fall_back(self, acc: RoundAccumulator) -> bool:
        return (
            self.stream_fallback
            and acc.result is not None
            and acc.result.error is not None
            and isinstance(acc.exception, httpx.TransportError)
            and not acc.received_anything
        )

    async def _single_response(self, token: str, cancel: CancelToken) -> AsyncIterator[StreamChunk]:
        message = await cancel.race(self.client.send_chat(token, self.messages, self._model, self.tools))
        yield _message_as_chunk(message)
