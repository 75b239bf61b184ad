"""
Agent Turn Loop - one user message to model completion.

Per-iteration flow:
1. Stop if the cancellation event is set (partial text is kept)
2. Stream the model response; text deltas go to the output callback as
   they arrive, tool calls are collected from start/end events
3. Estimate token usage with the provider tokenizer
4. No tool calls -> append the assistant text and finish (LLM_DONE)
5. Otherwise: confirmation -> parallel execution -> result stitching,
   then append the assistant tool_use message and the user tool_result
   message and iterate again

Invariants:
- Every tool_use block appended to the session is answered by exactly
  one tool_result block in the next message, declined, skipped and
  hook-blocked calls included (is_error=True).
- The session is mutated only between iterations, never by tools.
- Cancellation is an outcome, not an error: aborted=True with the text
  produced so far and the calls already executed.
- A "tool_use" stop signal with no tool calls is an ordinary completion.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from ..execution.parallel import ParallelOptions, ParallelToolExecutor
from ..execution.policies import ConfirmationGate
from ..logging.human import HumanLog
from .hooks import HookContext, HookEvent, HookExecutor, HookRegistry
from .state import ExecutedToolCall, StopReason, ToolCall, TurnResult
from .trust import TrustedToolSet

if TYPE_CHECKING:
    from ..features.sessions import Session, SessionStore
    from ..llm.provider import ModelProvider
    from ..tools.registry import ToolRegistry

logger = structlog.get_logger()

DECLINED_PREFIX = "Tool execution was declined"
SKIPPED_PREFIX = "Tool execution was skipped"


@dataclass
class TurnCallbacks:
    """Hooks for live rendering of a turn. All optional."""

    on_text: Callable[[str], None] | None = None
    on_tool_start: Callable[[ToolCall, int, int], None] | None = None
    on_tool_end: Callable[[ExecutedToolCall], None] | None = None
    on_tool_skipped: Callable[[ToolCall, str], None] | None = None
    on_tool_declined: Callable[[ToolCall, str], None] | None = None
    on_path_access_denied: Callable[[str], Awaitable[bool]] | None = None


@dataclass
class TurnOptions:
    """Everything execute_turn needs besides the session, provider and registry.

    ``gate`` defaults to an in-memory gate without prompt: calls that need
    confirmation are declined unless ``skip_confirmation`` is set.
    """

    max_iterations: int = 25
    max_concurrency: int = 5
    max_tokens: int | None = None
    signal: asyncio.Event | None = None
    skip_confirmation: bool = False
    gate: ConfirmationGate | None = None
    store: "SessionStore | None" = None
    hooks: HookRegistry | None = None
    hook_executor: HookExecutor | None = None
    allowed_tools: list[str] | None = None
    callbacks: TurnCallbacks = field(default_factory=TurnCallbacks)


def format_abort_summary(executed: list[ExecutedToolCall]) -> str | None:
    """One-line account of the tools that ran before a cancellation."""
    if not executed:
        return None
    names = ", ".join(tc.name for tc in executed)
    summary = f"Completed {len(executed)} tool(s) before cancellation: {names}"
    failed = sum(1 for tc in executed if not tc.result.success)
    if failed:
        summary += f" ({failed} failed)"
    return summary


def _append(session: "Session", message: dict[str, Any], store: "SessionStore | None") -> None:
    if store is not None:
        store.add_message(session, message)
    else:
        session.messages.append(message)


def _context(session: "Session", store: "SessionStore | None") -> list[dict[str, Any]]:
    if store is not None:
        return store.get_conversation_context(session)
    system = [{"role": "system", "content": session.system_prompt}] if session.system_prompt else []
    return system + list(session.messages)


async def execute_turn(
    session: "Session",
    user_message: str,
    provider: "ModelProvider",
    registry: "ToolRegistry",
    options: TurnOptions | None = None,
) -> TurnResult:
    """Run one turn of the agent.

    Args:
        session: Conversation to extend
        user_message: New user input
        provider: Streaming model provider
        registry: Tools available to the model
        options: Budget, cancellation, confirmation, hooks and callbacks

    Returns:
        TurnResult. Never raises for provider, tool or hook failures.
    """
    options = options or TurnOptions()
    callbacks = options.callbacks
    signal = options.signal
    gate = options.gate or ConfirmationGate(TrustedToolSet())
    store = options.store
    log = logger.bind(component="turn", session_id=session.id)
    hlog = HumanLog(log)

    executor = ParallelToolExecutor(
        registry,
        hooks=options.hooks,
        hook_executor=options.hook_executor,
        session_id=session.id,
        project_path=session.project_path,
    )

    result = TurnResult()
    content = ""

    def aborted(stop_reason: StopReason) -> TurnResult:
        result.content = content
        result.partial_content = content
        result.aborted = True
        result.abort_reason = stop_reason.value
        result.stop_reason = stop_reason
        summary = format_abort_summary(result.tool_calls)
        log.info("turn.aborted", reason=stop_reason.value, iterations=result.iterations, summary=summary)
        hlog.turn_aborted(summary)
        return result

    _append(session, {"role": "user", "content": user_message}, store)
    tools = registry.get_tool_definitions_for_llm(options.allowed_tools)

    for iteration in range(1, options.max_iterations + 1):
        result.iterations = iteration

        if signal is not None and signal.is_set():
            return aborted(StopReason.USER_CANCEL)

        messages = _context(session, store)
        log.debug("turn.iteration.start", iteration=iteration, messages=len(messages))
        hlog.model_call(iteration, len(messages))

        iteration_text: list[str] = []
        builders: dict[str, dict[str, Any]] = {}
        tool_calls: list[ToolCall] = []
        cancelled = False

        # ── Stream ────────────────────────────────────────────────────────
        try:
            async for event in provider.stream(messages, tools, options.max_tokens):
                match event.type:
                    case "text":
                        if event.text:
                            iteration_text.append(event.text)
                            content += event.text
                            if callbacks.on_text:
                                callbacks.on_text(event.text)
                    case "tool_use_start":
                        key = event.id or f"tool_{iteration}_{len(builders) + len(tool_calls)}"
                        builders[key] = {"id": key, "name": event.name or "", "input": {}}
                    case "tool_use_end":
                        key = event.id if event.id in builders else next(reversed(builders), None)
                        builder = builders.pop(key, None) if key is not None else None
                        builder = builder or {"id": f"tool_{iteration}_{len(tool_calls)}", "name": "", "input": {}}
                        tool_calls.append(ToolCall(
                            id=event.id or builder["id"],
                            name=event.name or builder["name"],
                            input=event.input if event.input is not None else builder["input"],
                        ))
                    case "done":
                        break
                if signal is not None and signal.is_set():
                    cancelled = True
                    break
        except Exception as e:
            error = f"Error during iteration {iteration}: {e}"
            log.error("turn.model_error", iteration=iteration, error=str(e), error_type=type(e).__name__)
            hlog.model_error(str(e))
            result.partial_content = content or None
            result.content = error
            result.error = error
            result.success = False
            result.stop_reason = StopReason.LLM_ERROR
            return result

        text = "".join(iteration_text)
        result.usage.add(
            provider.count_tokens(json.dumps(messages, default=str)),
            provider.count_tokens(
                text + json.dumps([{"id": tc.id, "name": tc.name, "input": tc.input} for tc in tool_calls], default=str)
            ),
        )

        if cancelled:
            return aborted(StopReason.USER_CANCEL)

        # ── Natural completion ────────────────────────────────────────────
        if not tool_calls:
            _append(session, {"role": "assistant", "content": text}, store)
            result.content = content
            result.stop_reason = StopReason.LLM_DONE
            log.info("turn.complete", iterations=iteration, tool_calls=len(result.tool_calls))
            hlog.turn_complete(iteration, len(result.tool_calls))
            await _run_stop_hooks(options, session, log)
            return result

        # ── Phase 1: confirmation ─────────────────────────────────────────
        def on_declined(tool_call: ToolCall, reason: str) -> None:
            hlog.tool_declined(tool_call.name, reason)
            if callbacks.on_tool_declined:
                callbacks.on_tool_declined(tool_call, reason)

        confirmation = await gate.review(tool_calls, options.skip_confirmation, on_declined=on_declined)
        if confirmation.aborted:
            return aborted(StopReason.CONFIRMATION_ABORT)

        # ── Phase 2: execution ────────────────────────────────────────────
        batch = await executor.execute(
            confirmation.confirmed,
            ParallelOptions(
                max_concurrency=options.max_concurrency,
                signal=signal,
                on_tool_start=callbacks.on_tool_start,
                on_tool_end=callbacks.on_tool_end,
                on_tool_skipped=callbacks.on_tool_skipped,
                on_path_access_denied=callbacks.on_path_access_denied,
            ),
        )
        result.tool_calls.extend(batch.executed)

        # ── Phase 3: stitching ────────────────────────────────────────────
        executed_by_id = {tc.id: tc for tc in batch.executed}
        skipped_by_id = {s.tool_call.id: s.reason for s in batch.skipped}

        assistant_blocks: list[dict[str, Any]] = []
        if text:
            assistant_blocks.append({"type": "text", "text": text})
        result_blocks: list[dict[str, Any]] = []

        for tc in tool_calls:
            assistant_blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.input})
            if tc.id in confirmation.declined:
                block_content, is_error = f"{DECLINED_PREFIX}: {confirmation.declined[tc.id]}", True
            elif tc.id in executed_by_id:
                executed = executed_by_id[tc.id]
                block_content, is_error = executed.result.output, not executed.result.success
            else:
                reason = skipped_by_id.get(tc.id, "Operation cancelled")
                block_content, is_error = f"{SKIPPED_PREFIX}: {reason}", True
            result_blocks.append({
                "type": "tool_result",
                "tool_use_id": tc.id,
                "content": block_content,
                "is_error": is_error,
            })

        _append(session, {"role": "assistant", "content": assistant_blocks}, store)
        _append(session, {"role": "user", "content": result_blocks}, store)

        log.debug(
            "turn.iteration.complete",
            iteration=iteration,
            executed=len(batch.executed),
            declined=len(confirmation.declined),
            skipped=len(batch.skipped),
        )

    log.warning("turn.max_iterations", max_iterations=options.max_iterations)
    hlog.max_iterations(options.max_iterations)
    result.content = content
    result.success = False
    result.stop_reason = StopReason.MAX_ITERATIONS
    return result


async def _run_stop_hooks(options: TurnOptions, session: "Session", log) -> None:
    if options.hooks is None or not options.hooks.has_hooks_for_event(HookEvent.STOP):
        return
    executor = options.hook_executor or HookExecutor(cwd=session.project_path)
    outcome = await executor.execute_hooks(
        options.hooks,
        HookContext(event=HookEvent.STOP, session_id=session.id, project_path=session.project_path),
    )
    if not outcome.all_succeeded:
        log.warning("turn.stop_hook.failed", errors=[r.error for r in outcome.results if not r.success])
