"""
Model provider contract.

The turn loop talks to the model only through ModelProvider: a streamed
call that yields typed events plus a token estimator. Conversation
messages are plain dicts ``{"role", "content"}`` where content is a
string or a list of blocks:

    {"type": "text", "text": ...}
    {"type": "tool_use", "id": ..., "name": ..., "input": {...}}
    {"type": "tool_result", "tool_use_id": ..., "content": ..., "is_error": bool}
"""

from typing import Any, AsyncIterator, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class StreamEvent(BaseModel):
    """One event of a streamed model response.

    - ``text``: a text delta in ``text``
    - ``tool_use_start``: a tool call begins (id/name may be partial)
    - ``tool_use_end``: a tool call is complete (finalized id, name, input)
    - ``done``: end of the response, ``stop_reason`` when known
    """

    type: Literal["text", "tool_use_start", "tool_use_end", "done"]
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    stop_reason: str | None = None

    model_config = {"extra": "forbid"}

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(type="text", text=text)

    @classmethod
    def tool_start(cls, id: str | None, name: str | None) -> "StreamEvent":
        return cls(type="tool_use_start", id=id, name=name)

    @classmethod
    def tool_end(cls, id: str | None, name: str | None, input: dict[str, Any] | None) -> "StreamEvent":
        return cls(type="tool_use_end", id=id, name=name, input=input)

    @classmethod
    def done(cls, stop_reason: str | None = None) -> "StreamEvent":
        return cls(type="done", stop_reason=stop_reason)


class ToolDefinition(BaseModel):
    """Tool description handed to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class ModelProvider(Protocol):
    """What the core needs from a model vendor."""

    max_tokens: int

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response for ``messages`` with ``tools`` available."""
        ...

    def count_tokens(self, text: str) -> int:
        """Estimate the token count of ``text`` (synchronous)."""
        ...
