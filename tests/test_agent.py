"""Agent loop behaviour over scripted rounds."""
from __future__ import annotations

import httpx
import pytest

from fakes import WAIT_FOR_CANCEL, FakeTokenProvider, RecordingExecutor, text_chunk, tool_chunk, tool_round
from vaultpilot.agent import MAX_ROUNDS_NOTICE, parse_arguments
from vaultpilot.client import ChatAPIError
from vaultpilot.models import Message


async def _drain(loop, message="hi", **kwargs):
    return [e async for e in loop.send(message, **kwargs)]


def _types(events):
    return [e.type for e in events]


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw", ["", "   ", "{not json", "[1, 2]", '"text"'])
def test_unusable_arguments_become_empty(raw):
    assert parse_arguments(raw) == {}


def test_arguments_parsed():
    assert parse_arguments('{"path": "notes"}') == {"path": "notes"}


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------

async def test_plain_answer(make_loop):
    loop, _ = make_loop([[text_chunk("Hel"), text_chunk("lo")]])
    events = await _drain(loop)
    assert _types(events) == ["text-delta", "text-delta", "text-done", "done"]
    assert events[2].text == "Hello"
    assert [m.role for m in loop.messages] == ["system", "user", "assistant"]


async def test_tool_round_then_answer(make_loop, tmp_vault):
    loop, client = make_loop([
        tool_round("call_1", "list_directory", '{"path": "."}'),
        [text_chunk("Done.")],
    ])
    events = await _drain(loop, "list files")

    assert _types(events) == ["tool-start", "tool-result", "text-delta", "text-done", "done"]
    assert events[0].arguments == {"path": "."}
    assert events[1].result.content == "[dir]  notes\n[file] readme.txt"

    history = loop.messages
    assert [m.role for m in history] == ["system", "user", "assistant", "tool", "assistant"]
    assert history[2].content is None
    assert history[2].tool_calls[0].id == "call_1"
    assert history[3].tool_call_id == "call_1"
    # second request carried the tool result
    assert [m.role for m in client.requests[1]] == ["system", "user", "assistant", "tool"]


async def test_tool_results_follow_declared_order(make_loop):
    executor = RecordingExecutor()
    loop, _ = make_loop(
        [
            [
                tool_chunk(1, id="second", name="grep", arguments='{"pattern": "b"}'),
                tool_chunk(0, id="first", name="grep", arguments='{"pattern": "a"}'),
            ],
            [text_chunk("ok")],
        ],
        executor_override=executor,
    )
    await _drain(loop)
    assert [args["pattern"] for _, args in executor.calls] == ["a", "b"]
    tool_messages = [m for m in loop.messages if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["first", "second"]


async def test_invalid_arguments_still_dispatch(make_loop):
    executor = RecordingExecutor()
    loop, _ = make_loop([tool_round("c", "bash", "{oops"), [text_chunk("ok")]], executor_override=executor)
    events = await _drain(loop)
    assert executor.calls == [("bash", {})]
    assert events[0].arguments == {}


async def test_round_cap(make_loop):
    executor = RecordingExecutor()
    rounds = [tool_round(f"c{i}", "list_directory") for i in range(3)]
    loop, client = make_loop(rounds, executor_override=executor, max_rounds=3)
    events = await _drain(loop)

    notice = MAX_ROUNDS_NOTICE.format(rounds=3)
    assert len(client.requests) == 3
    assert _types(events)[-3:] == ["text-delta", "text-done", "done"]
    assert events[-3].text == notice
    assert loop.messages[-1] == Message(role="assistant", content=notice)


async def test_default_round_cap_is_25(make_loop):
    rounds = [tool_round(f"c{i}", "list_directory") for i in range(25)]
    loop, client = make_loop(rounds, executor_override=RecordingExecutor())
    events = await _drain(loop)
    assert len(client.requests) == 25
    assert _types(events).count("tool-start") == 25
    assert "Reached maximum tool use rounds (25)" in events[-2].text


def test_max_rounds_must_be_positive(make_loop):
    with pytest.raises(ValueError):
        make_loop(max_rounds=0)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

async def test_auth_failure_is_single_error(make_loop):
    tokens = FakeTokenProvider(error="bad token")
    loop, client = make_loop([[text_chunk("never")]], tokens=tokens)
    events = await _drain(loop)
    assert _types(events) == ["error"]
    assert events[0].text == "Authentication failed: bad token"
    assert client.requests == []


async def test_token_checked_every_round(make_loop):
    tokens = FakeTokenProvider()
    loop, _ = make_loop([tool_round("c", "list_directory"), [text_chunk("ok")]], tokens=tokens)
    await _drain(loop)
    assert tokens.calls == 2


async def test_status_error_does_not_fall_back(make_loop):
    loop, client = make_loop([ChatAPIError(500, "boom")], replies=[Message(role="assistant", content="x")])
    events = await _drain(loop)
    assert _types(events) == ["error"]
    assert "500" in events[0].text
    assert client.sent == []


async def test_transport_error_falls_back_to_single_response(make_loop):
    loop, client = make_loop([httpx.ConnectError("refused")], replies=[Message(role="assistant", content="hello")])
    events = await _drain(loop)
    assert _types(events) == ["text-delta", "text-done", "done"]
    assert events[1].text == "hello"
    assert len(client.sent) == 1


async def test_no_fallback_after_partial_output(make_loop):
    loop, client = make_loop(
        [[text_chunk("par"), httpx.ReadError("reset")]],
        replies=[Message(role="assistant", content="x")],
    )
    events = await _drain(loop)
    assert _types(events) == ["text-delta", "error"]
    assert client.sent == []


async def test_fallback_can_be_disabled(make_loop):
    loop, client = make_loop([httpx.ConnectError("refused")], stream_fallback=False)
    events = await _drain(loop)
    assert _types(events) == ["error"]


async def test_tool_errors_are_fed_back(make_loop):
    loop, _ = make_loop([tool_round("c", "read_file", '{"file_path": "../x"}'), [text_chunk("sorry")]])
    events = await _drain(loop)
    assert events[1].result.is_error
    assert loop.messages[3].content.startswith("Path traversal not allowed")


# ---------------------------------------------------------------------------
# Cancellation and session state
# ---------------------------------------------------------------------------

async def test_cancel_during_stream_stops_events(make_loop):
    loop, _ = make_loop([[text_chunk("a"), WAIT_FOR_CANCEL]])
    events = []
    async for event in loop.send("hi"):
        events.append(event)
        loop.cancel()
    assert _types(events) == ["text-delta"]
    assert not loop.is_busy
    assert [m.role for m in loop.messages] == ["system", "user"]


async def test_cancel_during_tool_discards_round(make_loop):
    holder = {}
    executor = RecordingExecutor(hook=lambda: holder["loop"].cancel())
    loop, client = make_loop([tool_round("c", "bash", '{"command": "ls"}'), [text_chunk("never")]], executor_override=executor)
    holder["loop"] = loop
    events = await _drain(loop)

    assert _types(events) == ["tool-start"]
    assert len(executor.calls) == 1
    assert len(client.requests) == 1
    assert [m.role for m in loop.messages] == ["system", "user"]


async def test_concurrent_send_rejected(make_loop):
    loop, _ = make_loop([[text_chunk("a"), WAIT_FOR_CANCEL]])
    first = loop.send("one")
    await first.__anext__()
    with pytest.raises(RuntimeError):
        await loop.send("two").__anext__()
    loop.cancel()
    await first.aclose()
    assert not loop.is_busy


async def test_attachments_note(make_loop):
    loop, _ = make_loop([[text_chunk("ok")]])
    await _drain(loop, attachments=["a.png", "b.pdf"])
    assert "2 attachment(s) are present" in loop.messages[1].content


async def test_custom_instructions_and_clear(make_loop):
    loop, _ = make_loop([[text_chunk("ok")]], custom_instructions="Answer in French.")
    assert loop.messages[0].content.endswith("Answer in French.")
    loop.set_custom_instructions("Answer in German.")
    assert loop.messages[0].content.endswith("Answer in German.")
    loop.set_custom_instructions("")
    assert loop.messages[0].content == loop.system_prompt
    await _drain(loop)
    loop.clear_history()
    assert [m.role for m in loop.messages] == ["system"]


async def test_set_model_used_for_next_round(make_loop):
    loop, _ = make_loop()
    loop.set_model("claude-sonnet-4")
    assert loop.model == "claude-sonnet-4"
