"""
Tests for the agent turn loop.

Covers:
- Streaming text and tool call assembly
- Natural completion (including a tool_use stop without calls)
- tool_use / tool_result pairing for executed, declined, skipped and
  hook-blocked calls
- Provider errors, iteration budget and token usage
- Cancellation (before, during the stream, during tools) and
  confirmation abort
- Stop hooks and allow-listed tool definitions
"""

import asyncio
import json
from pathlib import Path

import pytest
from pydantic import BaseModel

from coco.core.hooks import HookDefinition, HookEvent, HookExecutor, HookRegistry
from coco.core.loop import (
    DECLINED_PREFIX,
    SKIPPED_PREFIX,
    TurnCallbacks,
    TurnOptions,
    execute_turn,
    format_abort_summary,
)
from coco.core.state import ExecutedToolCall, StopReason
from coco.core.trust import TrustedToolSet
from coco.execution.parallel import BLOCKED_BY_HOOK
from coco.execution.policies import ConfirmationDecision, ConfirmationGate, ConfirmationResult
from coco.execution.validators import PathAccess
from coco.features.sessions import Session, SessionStore
from coco.llm.provider import StreamEvent
from coco.tools import BaseTool, ToolRegistry, ToolResult, WriteFileTool


class EchoArgs(BaseModel):
    text: str


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the text back"
    args_model = EchoArgs

    async def execute(self, args: EchoArgs, signal=None):
        return {"echo": args.text}


class ScriptedProvider:
    """Replays one scripted response per model call.

    Each response is a list of StreamEvents; an exception in the list is
    raised when the stream reaches it. Once the script runs out, the last
    response repeats.
    """

    max_tokens = 1024

    def __init__(self, *responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def stream(self, messages, tools, max_tokens=None):
        self.calls.append({"messages": json.loads(json.dumps(messages)), "tools": tools})
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        for event in self.responses[index]:
            if isinstance(event, Exception):
                raise event
            await asyncio.sleep(0)
            yield event

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


def text(value: str) -> StreamEvent:
    return StreamEvent.text_delta(value)


def tool(id: str, name: str, input: dict) -> list[StreamEvent]:
    return [StreamEvent.tool_start(id, name), StreamEvent.tool_end(id, name, input)]


def done(reason: str = "end_turn") -> StreamEvent:
    return StreamEvent.done(reason)


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def registry(tmp_path: Path) -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(EchoTool())
    reg.register(WriteFileTool(PathAccess(tmp_path)))
    return reg


@pytest.fixture
def session(tmp_path: Path) -> Session:
    return Session(id="s1", project_path=str(tmp_path))


def tool_results(session: Session) -> list[dict]:
    return [
        block
        for message in session.messages
        if isinstance(message["content"], list)
        for block in message["content"]
        if block["type"] == "tool_result"
    ]


# ── Completion ────────────────────────────────────────────────────────────


class TestCompletion:
    async def test_text_only_response(self, session, registry):
        deltas = []
        provider = ScriptedProvider([text("Hello, "), text("world"), done()])

        result = await execute_turn(
            session, "hi", provider, registry, TurnOptions(callbacks=TurnCallbacks(on_text=deltas.append))
        )

        assert result.success
        assert result.content == "Hello, world"
        assert result.stop_reason is StopReason.LLM_DONE
        assert result.iterations == 1
        assert deltas == ["Hello, ", "world"]
        assert session.messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello, world"},
        ]

    async def test_tool_use_stop_without_calls_completes(self, session, registry):
        provider = ScriptedProvider([text("nothing to do"), done("tool_use")])

        result = await execute_turn(session, "hi", provider, registry)

        assert result.success
        assert result.stop_reason is StopReason.LLM_DONE
        assert len(provider.calls) == 1

    async def test_tool_round_trip(self, session, registry):
        provider = ScriptedProvider(
            [text("Let me check. "), *tool("t1", "echo", {"text": "ping"}), done("tool_use")],
            [text("It said ping."), done()],
        )

        result = await execute_turn(session, "echo ping", provider, registry)

        assert result.success
        assert result.iterations == 2
        assert result.content == "Let me check. It said ping."
        assert [tc.name for tc in result.tool_calls] == ["echo"]

        assistant = session.messages[1]
        assert assistant["content"] == [
            {"type": "text", "text": "Let me check. "},
            {"type": "tool_use", "id": "t1", "name": "echo", "input": {"text": "ping"}},
        ]
        [block] = tool_results(session)
        assert block["tool_use_id"] == "t1"
        assert block["is_error"] is False
        assert json.loads(block["content"]) == {"echo": "ping"}
        # The second model call sees the tool result
        assert provider.calls[1]["messages"][-1]["content"][0]["tool_use_id"] == "t1"

    async def test_tool_call_without_ids(self, session, registry):
        unnamed = [StreamEvent.tool_start(None, "echo"), StreamEvent.tool_end(None, None, {"text": "x"})]
        provider = ScriptedProvider([*unnamed, done("tool_use")], [*unnamed, done("tool_use")], [done()])

        result = await execute_turn(session, "go", provider, registry)

        assert [tc.id for tc in result.tool_calls] == ["tool_1_0", "tool_2_0"]
        assert [tc.name for tc in result.tool_calls] == ["echo", "echo"]
        assert [block["tool_use_id"] for block in tool_results(session)] == ["tool_1_0", "tool_2_0"]

    async def test_end_event_finalizes_tool_call(self, session, registry):
        provider = ScriptedProvider(
            [
                text("Hello, "),
                text("world"),
                StreamEvent.tool_start(None, "ec"),
                StreamEvent.tool_end("t1", "echo", {"text": "hi"}),
                done("tool_use"),
            ],
            [done()],
        )

        result = await execute_turn(session, "go", provider, registry)

        assert result.content == "Hello, world"
        [call] = result.tool_calls
        assert (call.id, call.name, call.input) == ("t1", "echo", {"text": "hi"})
        assert session.messages[1]["content"][1] == {
            "type": "tool_use", "id": "t1", "name": "echo", "input": {"text": "hi"},
        }

    async def test_system_prompt_and_allowed_tools(self, tmp_path, registry):
        session = Session(id="s1", project_path=str(tmp_path), system_prompt="Be terse")
        provider = ScriptedProvider([done()])

        await execute_turn(session, "hi", provider, registry, TurnOptions(allowed_tools=["echo"]))

        call = provider.calls[0]
        assert call["messages"][0] == {"role": "system", "content": "Be terse"}
        assert [t["name"] for t in call["tools"]] == ["echo"]

    async def test_usage_is_estimated(self, session, registry):
        provider = ScriptedProvider([text("x" * 40), done()])

        result = await execute_turn(session, "hi", provider, registry)

        assert result.usage.output_tokens >= 10
        assert result.usage.input_tokens > 0

    async def test_history_goes_through_store(self, tmp_path, registry):
        store = SessionStore(tmp_path, max_history_size=2)
        session = store.create()
        provider = ScriptedProvider([text("one"), done()])

        await execute_turn(session, "first", provider, registry, TurnOptions(store=store))
        await execute_turn(session, "second", provider, registry, TurnOptions(store=store))

        assert [m["content"] for m in session.messages] == ["second", "one"]

    async def test_stop_hooks_run_on_completion(self, session, registry, tmp_path):
        hooks = HookRegistry()
        hooks.register(HookDefinition(id="stop", event=HookEvent.STOP, command="touch stopped"))
        provider = ScriptedProvider([text("bye"), done()])

        await execute_turn(
            session, "hi", provider, registry,
            TurnOptions(hooks=hooks, hook_executor=HookExecutor(cwd=tmp_path)),
        )

        assert (tmp_path / "stopped").exists()


# ── Pairing ───────────────────────────────────────────────────────────────


class TestPairing:
    async def test_declined_call_gets_error_result(self, session, registry, tmp_path):
        declined = []
        provider = ScriptedProvider(
            [*tool("w1", "write_file", {"path": "out.txt", "content": "x"}), *tool("e1", "echo", {"text": "hi"}), done()],
            [text("ok"), done()],
        )

        result = await execute_turn(
            session, "write", provider, registry,
            TurnOptions(callbacks=TurnCallbacks(on_tool_declined=lambda tc, reason: declined.append(tc.id))),
        )

        assert result.success
        assert not (tmp_path / "out.txt").exists()
        assert declined == ["w1"]
        blocks = tool_results(session)
        assert [b["tool_use_id"] for b in blocks] == ["w1", "e1"]
        assert blocks[0]["is_error"] is True
        assert blocks[0]["content"].startswith(f"{DECLINED_PREFIX}: ")
        assert blocks[1]["is_error"] is False
        assert [tc.id for tc in result.tool_calls] == ["e1"]

    async def test_skip_confirmation_runs_everything(self, session, registry, tmp_path):
        provider = ScriptedProvider(
            [*tool("w1", "write_file", {"path": "out.txt", "content": "x"}), done()],
            [done()],
        )

        await execute_turn(session, "write", provider, registry, TurnOptions(skip_confirmation=True))

        assert (tmp_path / "out.txt").read_text() == "x"

    async def test_failed_tool_is_error_result(self, session, registry):
        provider = ScriptedProvider([*tool("e1", "echo", {"wrong": 1}), done()], [done()])

        result = await execute_turn(session, "go", provider, registry)

        [block] = tool_results(session)
        assert block["is_error"] is True
        assert "Invalid input for tool 'echo'" in block["content"]
        assert len(result.failed_tool_calls) == 1

    async def test_hook_blocked_call_is_paired(self, session, registry, tmp_path):
        hooks = HookRegistry()
        hooks.register(HookDefinition(id="no-echo", event=HookEvent.PRE_TOOL_USE, matcher="echo", command="exit 1"))
        provider = ScriptedProvider([*tool("e1", "echo", {"text": "hi"}), done()], [done()])

        result = await execute_turn(
            session, "go", provider, registry,
            TurnOptions(hooks=hooks, hook_executor=HookExecutor(cwd=tmp_path)),
        )

        [block] = tool_results(session)
        assert block["tool_use_id"] == "e1"
        assert block["is_error"] is True
        assert block["content"].startswith(f"{SKIPPED_PREFIX}: {BLOCKED_BY_HOOK}")
        assert result.tool_calls == []


# ── Failures and budget ───────────────────────────────────────────────────


class TestFailures:
    async def test_provider_error(self, session, registry):
        provider = ScriptedProvider([text("partial "), RuntimeError("rate limited")])

        result = await execute_turn(session, "hi", provider, registry)

        assert not result.success
        assert result.stop_reason is StopReason.LLM_ERROR
        assert result.content == "Error during iteration 1: rate limited"
        assert result.error == result.content
        assert result.partial_content == "partial "
        assert not result.aborted

    async def test_provider_error_on_later_iteration(self, session, registry):
        provider = ScriptedProvider(
            [*tool("e1", "echo", {"text": "hi"}), done()],
            [ConnectionError("socket closed")],
        )

        result = await execute_turn(session, "hi", provider, registry)

        assert result.content == "Error during iteration 2: socket closed"
        assert len(result.tool_calls) == 1

    async def test_max_iterations(self, session, registry):
        provider = ScriptedProvider([*tool("e1", "echo", {"text": "again"}), done()])

        result = await execute_turn(session, "loop", provider, registry, TurnOptions(max_iterations=2))

        assert not result.success
        assert result.stop_reason is StopReason.MAX_ITERATIONS
        assert result.iterations == 2
        assert len(result.tool_calls) == 2
        assert len(tool_results(session)) == 2


# ── Cancellation ──────────────────────────────────────────────────────────


class TestCancellation:
    async def test_cancelled_before_start(self, session, registry):
        signal = asyncio.Event()
        signal.set()
        provider = ScriptedProvider([text("never"), done()])

        result = await execute_turn(session, "hi", provider, registry, TurnOptions(signal=signal))

        assert result.aborted
        assert result.stop_reason is StopReason.USER_CANCEL
        assert result.abort_reason == "user_cancel"
        assert provider.calls == []

    async def test_cancelled_during_stream_keeps_partial_text(self, session, registry):
        signal = asyncio.Event()
        provider = ScriptedProvider([text("first "), text("second"), done()])

        result = await execute_turn(
            session, "hi", provider, registry,
            TurnOptions(signal=signal, callbacks=TurnCallbacks(on_text=lambda _: signal.set())),
        )

        assert result.aborted
        assert result.partial_content == "first "
        assert result.success
        # Nothing from the cancelled iteration reaches the history
        assert session.messages == [{"role": "user", "content": "hi"}]

    async def test_cancelled_during_tools_keeps_executed(self, session, registry):
        signal = asyncio.Event()
        provider = ScriptedProvider(
            [*tool("e1", "echo", {"text": "a"}), *tool("e2", "echo", {"text": "b"}), done()],
            [text("never"), done()],
        )

        result = await execute_turn(
            session, "go", provider, registry,
            TurnOptions(
                signal=signal,
                max_concurrency=1,
                callbacks=TurnCallbacks(on_tool_end=lambda _: signal.set()),
            ),
        )

        assert result.aborted
        assert [tc.id for tc in result.tool_calls] == ["e1"]
        assert len(provider.calls) == 1
        blocks = tool_results(session)
        assert [b["tool_use_id"] for b in blocks] == ["e1", "e2"]
        assert blocks[1]["content"] == f"{SKIPPED_PREFIX}: Operation cancelled"

    async def test_confirmation_abort(self, session, registry, tmp_path):
        class AbortPrompt:
            async def confirm(self, tool_call):
                return ConfirmationResult(ConfirmationDecision.ABORT)

        gate = ConfirmationGate(TrustedToolSet(), AbortPrompt())
        provider = ScriptedProvider(
            [text("Writing. "), *tool("w1", "write_file", {"path": "out.txt", "content": "x"}), done()]
        )

        result = await execute_turn(session, "write", provider, registry, TurnOptions(gate=gate))

        assert result.aborted
        assert result.stop_reason is StopReason.CONFIRMATION_ABORT
        assert result.partial_content == "Writing. "
        assert not (tmp_path / "out.txt").exists()
        assert session.messages == [{"role": "user", "content": "write"}]


class TestAbortSummary:
    def executed(self, name: str, success: bool = True) -> ExecutedToolCall:
        return ExecutedToolCall(
            id=name,
            name=name,
            input={},
            result=ToolResult(success=success, output="", error=None if success else "boom"),
        )

    def test_nothing_executed(self):
        assert format_abort_summary([]) is None

    def test_summary(self):
        summary = format_abort_summary([self.executed("read_file"), self.executed("bash_exec", False)])
        assert summary == "Completed 2 tool(s) before cancellation: read_file, bash_exec (1 failed)"
