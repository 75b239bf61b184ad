"""
Parallel Tool Executor.

Runs a batch of confirmed tool calls as a bounded worker pool: at most
``max_concurrency`` calls are in flight, and each worker takes the next
queued call as soon as its previous one completes.

Invariants:
- ``executed`` follows the caller's order, never completion order.
- A cancellation signal set before scheduling skips every call.
- A cancellation during the batch skips calls not started yet; calls in
  flight finish and stay in ``executed``.
- A call failing with an "outside project directory" error is retried
  exactly once if the path-authorization callback grants access.
- With a hook registry, PreToolUse hooks run before each call (deny
  skips it, modify rewrites its input) and PostToolUse hooks after.
"""

import asyncio
import json
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import structlog

from ..core.hooks import HookContext, HookEvent, HookExecutor, HookRegistry
from ..core.state import ExecutedToolCall, ParallelExecutionResult, SkippedToolCall, ToolCall
from ..logging.human import HumanLog
from ..tools.base import ToolResult
from ..tools.registry import ToolExecutionResult, ToolRegistry
from .validators import extract_denied_path

logger = structlog.get_logger()

CANCELLED_BEFORE_EXECUTION = "Operation cancelled before execution"
CANCELLED = "Operation cancelled"
BLOCKED_BY_HOOK = "Blocked by PreToolUse hook"

ToolStartCallback = Callable[[ToolCall, int, int], None]
ToolEndCallback = Callable[[ExecutedToolCall], None]
ToolSkippedCallback = Callable[[ToolCall, str], None]
PathAccessCallback = Callable[[str], Awaitable[bool]]


@dataclass
class ParallelOptions:
    """Per-batch execution options.

    Callbacks:
        on_tool_start(call, index, total): a call starts running
        on_tool_end(executed): a call finished (success or failure)
        on_tool_skipped(call, reason): a call will never run
        on_path_access_denied(directory): ask for access; True retries the call
    """

    max_concurrency: int = 5
    signal: asyncio.Event | None = None
    on_tool_start: ToolStartCallback | None = None
    on_tool_end: ToolEndCallback | None = None
    on_tool_skipped: ToolSkippedCallback | None = None
    on_path_access_denied: PathAccessCallback | None = None


def serialize_result(outcome: ToolExecutionResult) -> ToolResult:
    """Turn a registry outcome into conversation-ready ToolResult."""
    if outcome.success:
        data = outcome.data
        if isinstance(data, str):
            output = data
        else:
            output = json.dumps(data, indent=2, default=str, ensure_ascii=False)
        return ToolResult(success=True, output=output)
    error = outcome.error or "Unknown error"
    return ToolResult(success=False, output=error, error=error)


class ParallelToolExecutor:
    """Executes confirmed tool calls with bounded concurrency.

    Args:
        registry: Tools to execute
        hooks: Hook registry; None disables the hook-aware path
        hook_executor: Runner for the hooks (default: cwd of the process)
        session_id: Session id handed to hooks
        project_path: Project path handed to hooks
    """

    def __init__(
        self,
        registry: ToolRegistry,
        hooks: HookRegistry | None = None,
        hook_executor: HookExecutor | None = None,
        session_id: str = "",
        project_path: str = "",
    ) -> None:
        self.registry = registry
        self.hooks = hooks
        self.hook_executor = hook_executor or (HookExecutor(cwd=project_path or None) if hooks else None)
        self.session_id = session_id
        self.project_path = project_path
        self.log = logger.bind(component="parallel_executor")
        self.hlog = HumanLog(self.log)

    async def execute(
        self,
        tool_calls: list[ToolCall],
        options: ParallelOptions | None = None,
    ) -> ParallelExecutionResult:
        """Run ``tool_calls`` and return executed/skipped calls in input order."""
        options = options or ParallelOptions()
        signal = options.signal
        total = len(tool_calls)

        if signal is not None and signal.is_set():
            skipped = []
            for tc in tool_calls:
                skipped.append(SkippedToolCall(tool_call=tc, reason=CANCELLED_BEFORE_EXECUTION))
                if options.on_tool_skipped:
                    options.on_tool_skipped(tc, CANCELLED_BEFORE_EXECUTION)
            self.log.info("tool.batch.cancelled", count=total)
            return ParallelExecutionResult(skipped=skipped, aborted=True)

        executed: list[ExecutedToolCall | None] = [None] * total
        skipped: list[SkippedToolCall | None] = [None] * total
        next_index = 0

        self.log.debug(
            "tool.batch.start",
            count=total,
            max_concurrency=options.max_concurrency,
            tools=[tc.name for tc in tool_calls],
        )

        async def worker() -> None:
            nonlocal next_index
            while next_index < total:
                index = next_index
                next_index += 1
                tool_call = tool_calls[index]

                if signal is not None and signal.is_set():
                    skipped[index] = SkippedToolCall(tool_call=tool_call, reason=CANCELLED)
                    if options.on_tool_skipped:
                        options.on_tool_skipped(tool_call, CANCELLED)
                    continue

                if options.on_tool_start:
                    options.on_tool_start(tool_call, index, total)

                record, skip_reason = await self._execute_one(tool_call, options)
                if record is not None:
                    executed[index] = record
                    if options.on_tool_end:
                        options.on_tool_end(record)
                else:
                    skipped[index] = SkippedToolCall(tool_call=tool_call, reason=skip_reason or BLOCKED_BY_HOOK)
                    if options.on_tool_skipped:
                        options.on_tool_skipped(tool_call, skipped[index].reason)

        workers = max(1, min(options.max_concurrency, total))
        await asyncio.gather(*(worker() for _ in range(workers)))

        result = ParallelExecutionResult(
            executed=[e for e in executed if e is not None],
            skipped=[s for s in skipped if s is not None],
            aborted=signal is not None and signal.is_set(),
        )
        self.log.debug(
            "tool.batch.complete",
            executed=len(result.executed),
            skipped=len(result.skipped),
            aborted=result.aborted,
        )
        return result

    # ── Single call ───────────────────────────────────────────────────────

    async def _execute_one(
        self,
        tool_call: ToolCall,
        options: ParallelOptions,
    ) -> tuple[ExecutedToolCall | None, str | None]:
        """Run one call, through the hooks when configured.

        Returns:
            (record, None) when the call ran, (None, reason) when a hook blocked it or the
            batch was cancelled while the hooks ran.
        """
        if self.hooks is not None and self.hooks.has_hooks_for_event(HookEvent.PRE_TOOL_USE):
            pre = await self.hook_executor.execute_hooks(
                self.hooks, self._hook_context(HookEvent.PRE_TOOL_USE, tool_call)
            )
            if not pre.should_continue:
                reason = BLOCKED_BY_HOOK
                if pre.denial_reason:
                    reason = f"{BLOCKED_BY_HOOK}: {pre.denial_reason}"
                self.log.info("tool.blocked_by_hook", tool=tool_call.name, reason=reason)
                self.hlog.hook_blocked(tool_call.name, reason)
                return None, reason
            if pre.modified_input is not None:
                self.log.info("tool.input_modified_by_hook", tool=tool_call.name)
                tool_call = replace(tool_call, input=pre.modified_input)

            if options.signal is not None and options.signal.is_set():
                return None, CANCELLED

        record = await self._run_tool(tool_call, options)

        if self.hooks is not None and self.hooks.has_hooks_for_event(HookEvent.POST_TOOL_USE):
            post = await self.hook_executor.execute_hooks(
                self.hooks,
                self._hook_context(HookEvent.POST_TOOL_USE, tool_call, tool_result=record.result.model_dump()),
            )
            if not post.all_succeeded:
                self.log.warning(
                    "tool.post_hook.failed",
                    tool=tool_call.name,
                    errors=[r.error for r in post.results if not r.success],
                )

        return record, None

    async def _run_tool(self, tool_call: ToolCall, options: ParallelOptions) -> ExecutedToolCall:
        self.log.info("tool.execute.start", tool=tool_call.name, id=tool_call.id)
        self.hlog.tool_call(tool_call.name, tool_call.input)
        start = time.monotonic()

        outcome = await self.registry.execute(tool_call.name, tool_call.input, signal=options.signal)

        if not outcome.success and options.on_path_access_denied is not None:
            directory = extract_denied_path(outcome.error or "")
            if directory is not None and await options.on_path_access_denied(directory):
                self.log.info("tool.path_authorized.retry", tool=tool_call.name, directory=directory)
                outcome = await self.registry.execute(tool_call.name, tool_call.input, signal=options.signal)

        result = serialize_result(outcome)
        duration = time.monotonic() - start

        self.log.info(
            "tool.execute.complete",
            tool=tool_call.name,
            id=tool_call.id,
            success=result.success,
            duration=round(duration, 4),
            error=result.error,
        )
        self.hlog.tool_result(tool_call.name, result.success, result.error)

        return ExecutedToolCall(
            id=tool_call.id,
            name=tool_call.name,
            input=tool_call.input,
            result=result,
            duration=duration,
        )

    def _hook_context(self, event: HookEvent, tool_call: ToolCall, tool_result: Any = None) -> HookContext:
        return HookContext(
            event=event,
            session_id=self.session_id,
            project_path=self.project_path,
            tool_name=tool_call.name,
            tool_input=tool_call.input,
            tool_result=tool_result,
        )

    def __repr__(self) -> str:
        return f"<ParallelToolExecutor(tools={self.registry.count()}, hooks={self.hooks is not None})>"


async def execute_parallel(
    tool_calls: list[ToolCall],
    registry: ToolRegistry,
    options: ParallelOptions | None = None,
) -> ParallelExecutionResult:
    """Run ``tool_calls`` through ``registry`` without hooks."""
    return await ParallelToolExecutor(registry).execute(tool_calls, options)
