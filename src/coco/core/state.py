"""
Turn State - Data structures for one agent turn.

Defines what the model asked for (ToolCall), what happened to each call
(ExecutedToolCall / SkippedToolCall) and the outcome of the whole turn
(TurnResult).
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..tools.base import ToolResult


class StopReason(Enum):
    """Reason why a turn stopped.

    Distinguishes natural completion (the model requested no more tools)
    from cancellation, the iteration budget and unrecoverable errors.
    """

    LLM_DONE = "llm_done"                    # Natural: no tool calls in the response
    MAX_ITERATIONS = "max_iterations"        # Iteration budget exhausted
    USER_CANCEL = "user_cancel"              # Cancellation signal (Ctrl+C)
    CONFIRMATION_ABORT = "confirmation_abort"  # User chose abort at a prompt
    LLM_ERROR = "llm_error"                  # Provider call/stream raised


@dataclass(frozen=True)
class ToolCall:
    """One invocation request emitted by the model.

    ``id`` is unique within a turn and correlates the eventual result.
    """

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutedToolCall:
    """Record of a call that ran and what happened."""

    id: str
    name: str
    input: dict[str, Any]
    result: ToolResult
    duration: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        return (
            f"<ExecutedToolCall("
            f"tool='{self.name}', "
            f"success={self.result.success}, "
            f"duration={self.duration:.3f})>"
        )


@dataclass(frozen=True)
class SkippedToolCall:
    """A call that was never executed, with the reason."""

    tool_call: ToolCall
    reason: str


@dataclass
class ParallelExecutionResult:
    """Outcome of a parallel batch.

    ``executed`` keeps the caller's original order, never completion order.
    """

    executed: list[ExecutedToolCall] = field(default_factory=list)
    skipped: list[SkippedToolCall] = field(default_factory=list)
    aborted: bool = False


@dataclass
class TokenUsage:
    """Running token totals of a turn (estimated when streaming omits them)."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TurnResult:
    """Outcome of execute_turn().

    Cancellation is not an error: ``aborted=True`` with the text produced
    so far in ``partial_content``. Provider errors and iteration budget
    exhaustion come back with ``success=False``.
    """

    content: str = ""
    tool_calls: list[ExecutedToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    aborted: bool = False
    partial_content: str | None = None
    abort_reason: str | None = None
    success: bool = True
    stop_reason: StopReason | None = None
    iterations: int = 0
    error: str | None = None

    @property
    def failed_tool_calls(self) -> list[ExecutedToolCall]:
        return [tc for tc in self.tool_calls if not tc.result.success]

    def to_output_dict(self) -> dict[str, Any]:
        """Convert the result to a dict for --json output."""
        output: dict[str, Any] = {
            "success": self.success,
            "aborted": self.aborted,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "content": self.content,
            "iterations": self.iterations,
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
            },
            "tools_used": [
                {
                    "name": tc.name,
                    "success": tc.result.success,
                    **({"error": tc.result.error} if tc.result.error else {}),
                }
                for tc in self.tool_calls
            ],
        }
        if self.aborted:
            output["partial_content"] = self.partial_content
            output["abort_reason"] = self.abort_reason
        if self.error:
            output["error"] = self.error
        return output

    def __repr__(self) -> str:
        return (
            f"<TurnResult("
            f"success={self.success}, "
            f"aborted={self.aborted}, "
            f"iterations={self.iterations}, "
            f"tool_calls={len(self.tool_calls)})>"
        )
