"""Chat-completions client for Copilot and other OpenAI-compatible endpoints.

Streaming responses are Server-Sent Events: one ``data: <json>`` record per
line, blank keep-alive lines, and a ``data: [DONE]`` terminator.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from vaultpilot.cancellation import Cancelled, CancelToken
from vaultpilot.models import Message, StreamChunk, Tool, ToolCall

logger = logging.getLogger(__name__)

COPILOT_API_URL = "https://api.githubcopilot.com"

CLIENT_HEADERS: dict[str, str] = {
    "editor-version": "vscode/1.95.0",
    "editor-plugin-version": "copilot/1.0.0",
    "Copilot-Integration-Id": "vscode-chat",
    "User-Agent": "vaultpilot",
}

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
DONE = object()  # parse_sse_line result for the terminal record

TEMPERATURE = 0.1
TOP_P = 1

_TIMEOUT = httpx.Timeout(120, connect=30, read=60)


class ChatAPIError(Exception):
    """Non-2xx response from the chat endpoint."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Chat API error {status_code}: {body[:500]}")


def parse_sse_line(line: str) -> StreamChunk | object | None:
    """Decode one response line.

    Returns a StreamChunk, DONE for the terminal record, or None for lines
    that carry nothing usable (blank, comments, other fields, bad JSON).
    """
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    data = stripped[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return DONE
    try:
        return StreamChunk.model_validate(json.loads(data))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug("Skipping malformed SSE record: %s", e)
        return None


def build_request_body(
    messages: list[Message],
    model: str,
    tools: list[Tool] | None,
    stream: bool,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": [m.to_wire() for m in messages],
        "stream": stream,
        "temperature": TEMPERATURE,
        "top_p": TOP_P,
        "n": 1,
    }
    if tools:
        body["tools"] = [t.to_wire() for t in tools]
        body["tool_choice"] = "auto"
    return body


class ChatClient:
    def __init__(
        self,
        base_url: str = COPILOT_API_URL,
        http: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=_TIMEOUT)
        self._headers = dict(CLIENT_HEADERS if headers is None else headers)

    def _request_headers(self, token: str, accept: str) -> dict[str, str]:
        return {
            **self._headers,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": accept,
        }

    async def stream_chat(
        self,
        token: str,
        messages: list[Message],
        model: str,
        tools: list[Tool] | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one completion. Ends quietly (no error) when *cancel* fires."""
        cancel = cancel or CancelToken()
        body = build_request_body(messages, model, tools, stream=True)
        request = self._http.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            headers=self._request_headers(token, "text/event-stream"),
            json=body,
        )
        logger.debug("POST %s model=%s messages=%d", request.url, model, len(messages))

        try:
            response = await cancel.race(self._http.send(request, stream=True))
        except Cancelled:
            return

        try:
            if response.status_code // 100 != 2:
                text = (await response.aread()).decode("utf-8", errors="replace")
                raise ChatAPIError(response.status_code, text)

            lines = response.aiter_lines()
            while True:
                try:
                    line = await cancel.race(anext(lines, None))
                except Cancelled:
                    return
                if line is None:
                    return
                parsed = parse_sse_line(line)
                if parsed is DONE:
                    return
                if parsed is not None:
                    yield parsed
        finally:
            await response.aclose()

    async def send_chat(
        self,
        token: str,
        messages: list[Message],
        model: str,
        tools: list[Tool] | None = None,
    ) -> Message:
        """Non-streaming completion, used as the fallback strategy."""
        body = build_request_body(messages, model, tools, stream=False)
        response = await self._http.post(
            f"{self.base_url}/chat/completions",
            headers=self._request_headers(token, "application/json"),
            json=body,
        )
        if response.status_code // 100 != 2:
            raise ChatAPIError(response.status_code, response.text)

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ChatAPIError(response.status_code, "No response from chat API")
        raw = choices[0].get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "",
            )
            for tc in raw.get("tool_calls") or []
        ]
        return Message(role="assistant", content=raw.get("content"), tool_calls=tool_calls)

    async def fetch_models(self, token: str) -> list[dict[str, Any]]:
        response = await self._http.get(
            f"{self.base_url}/models",
            headers=self._request_headers(token, "application/json"),
        )
        if response.status_code // 100 != 2:
            raise ChatAPIError(response.status_code, response.text)
        data = response.json()
        models = data.get("data") if isinstance(data, dict) else None
        return [m for m in models or [] if isinstance(m, dict) and m.get("id")]

    async def aclose(self) -> None:
        await self._http.aclose()

