from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["system", "user", "assistant", "tool"]
EventType = Literal[
    "text-delta",
    "text-done",
    "tool-start",
    "tool-input-progress",
    "tool-result",
    "error",
    "done",
]

NO_OUTPUT = "(no output)"


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: str = ""  # raw JSON text, as streamed

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class Message(BaseModel):
    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None  # for role="tool" responses

    def to_wire(self) -> dict[str, Any]:
        """Convert to the chat-completions message dict."""
        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id,
                "content": self.content or "",
            }
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        elif self.content is None:
            d["content"] = ""
        return d


class Tool(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolResult(BaseModel):
    content: str = NO_OUTPUT
    is_error: bool = False

    @classmethod
    def ok(cls, content: str) -> ToolResult:
        return cls(content=content or NO_OUTPUT)

    @classmethod
    def error(cls, content: str) -> ToolResult:
        return cls(content=content or NO_OUTPUT, is_error=True)


# ---------------------------------------------------------------------------
# Wire-level stream chunks
# ---------------------------------------------------------------------------

class ToolCallFragment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_function(cls, data: Any) -> Any:
        # {"index", "id", "function": {"name", "arguments"}} -> flat fields
        if isinstance(data, dict) and isinstance(data.get("function"), dict):
            data = dict(data)
            func = data.pop("function")
            data.setdefault("name", func.get("name"))
            data.setdefault("arguments", func.get("arguments"))
        return data


class Delta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCallFragment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _null_tool_calls(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("tool_calls") is None and "tool_calls" in data:
            data = {k: v for k, v in data.items() if k != "tool_calls"}
        return data


class Choice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    choices: list[Choice] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Round and event records
# ---------------------------------------------------------------------------

class RoundResult(BaseModel):
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    error: str | None = None
    aborted: bool = False

    @model_validator(mode="after")
    def _error_excludes_tool_calls(self) -> RoundResult:
        if self.error is not None and self.tool_calls:
            raise ValueError("a failed round cannot carry tool calls")
        return self


class AgentEvent(BaseModel):
    type: EventType
    text: str | None = None
    tool_call_id: str | None = None
    name: str | None = None
    arguments: dict[str, Any] | None = None
    partial_arguments: str | None = None
    result: ToolResult | None = None

    @classmethod
    def text_delta(cls, text: str) -> AgentEvent:
        return cls(type="text-delta", text=text)

    @classmethod
    def text_done(cls, text: str) -> AgentEvent:
        return cls(type="text-done", text=text)

    @classmethod
    def tool_start(cls, call: ToolCall, arguments: dict[str, Any]) -> AgentEvent:
        return cls(type="tool-start", tool_call_id=call.id, name=call.name, arguments=arguments)

    @classmethod
    def tool_input_progress(cls, call_id: str, name: str, partial: str) -> AgentEvent:
        return cls(type="tool-input-progress", tool_call_id=call_id, name=name, partial_arguments=partial)

    @classmethod
    def tool_result(cls, call: ToolCall, arguments: dict[str, Any], result: ToolResult) -> AgentEvent:
        return cls(
            type="tool-result",
            tool_call_id=call.id,
            name=call.name,
            arguments=arguments,
            result=result,
        )

    @classmethod
    def failure(cls, message: str) -> AgentEvent:
        return cls(type="error", text=message)

    @classmethod
    def done(cls) -> AgentEvent:
        return cls(type="done")


# ---------------------------------------------------------------------------
# Credentials and model catalog
# ---------------------------------------------------------------------------

class CopilotToken(BaseModel):
    token: str
    expires_at: float  # epoch seconds


class DeviceCode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = 5


class ModelOption(BaseModel):
    id: str
    name: str
    provider: str
