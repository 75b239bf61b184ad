"""
Human Log -- Formatter and helper for agent traceability logs.

Produces readable output so the user sees what the agent does step by
step, without technical noise.

Example:
    Iteration 1 -> model (3 messages)
      tool read_file -> src/main.py
        OK
      tool bash_exec -> git push
        DECLINED: User declined

    Iteration 2 -> model (7 messages)

    ✓ Turn complete (2 iterations, 2 tool calls)
"""

import logging
import sys

from .levels import HUMAN


class HumanFormatter:
    """Formats agent traceability events as readable text.

    Each event type has its own format. Unknown events return None
    and are not printed.
    """

    def format_event(self, event: str, **kw) -> str | None:
        """Format an event as readable text.

        Args:
            event: Event name (e.g. "turn.model.call", "turn.tool_call.execute")
            **kw: Event parameters

        Returns:
            Formatted text or None if the event has no format
        """
        match event:

            # ── MODEL ───────────────────────────────────────────────────
            case "turn.model.call":
                iteration = kw.get("iteration", 0)
                msgs = kw.get("messages_count", "?")
                return f"\nIteration {iteration + 1} -> model ({msgs} messages)"

            case "turn.model_error":
                error = kw.get("error", "unknown")
                return f"\n✗ Model error: {error}"

            # ── TOOLS ────────────────────────────────────────────────────
            case "turn.tool_call.execute":
                tool = kw.get("tool", "?")
                args = kw.get("args", {})
                return f"  tool {tool} -> {_summarize_args(tool, args)}"

            case "turn.tool_call.complete":
                if kw.get("success", True):
                    return "    OK"
                return f"    ERROR: {kw.get('error')}"

            case "turn.tool_call.declined":
                return f"    DECLINED: {kw.get('reason', '?')}"

            case "turn.hook.blocked":
                return f"    [blocked by hook: {kw.get('reason', '?')}]"

            # ── TURN LIFECYCLE ──────────────────────────────────────────
            case "turn.complete":
                iterations = kw.get("iterations", "?")
                tool_calls = kw.get("tool_calls", 0)
                return f"\n✓ Turn complete ({iterations} iterations, {tool_calls} tool calls)"

            case "turn.aborted":
                summary = kw.get("summary")
                base = "\n⚠  Turn cancelled"
                return f"{base}: {summary}" if summary else base

            case "turn.max_iterations":
                mx = kw.get("max_iterations", "?")
                return f"\n⚠  Iteration limit reached ({mx}) without completion"

            # ── COORDINATOR ─────────────────────────────────────────────
            case "coordinator.level.start":
                level = kw.get("level_index", 0)
                tasks = kw.get("tasks", [])
                return f"\nLevel {level + 1} -> {len(tasks)} task(s): {', '.join(tasks)}"

            case "coordinator.task.complete":
                task_id = kw.get("task_id", "?")
                role = kw.get("role", "?")
                status = "OK" if kw.get("success") else "FAILED"
                return f"  [{role}] {task_id}: {status}"

            case "coordinator.unschedulable":
                blocked = kw.get("blocked", [])
                return f"\n✗ Unschedulable tasks (cycle or missing dependency): {', '.join(blocked)}"

            case "coordinator.complete":
                levels = kw.get("levels", "?")
                parallelism = kw.get("parallelism", 0)
                return f"\n✓ Coordination complete ({levels} levels, parallelism {parallelism:.2f})"

            case _:
                return None


class HumanLogHandler(logging.Handler):
    """Logging handler that filters HUMAN events and formats them.

    Writes to stderr so stdout pipes stay clean.
    """

    _RECORD_ATTRS = frozenset({
        "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "taskName", "name", "event",
    })

    def __init__(self, stream=None) -> None:
        super().__init__(level=HUMAN)
        self.stream = stream or sys.stderr
        self.formatter_inst = HumanFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if record.levelno != HUMAN:
                return

            # structlog.stdlib passes the event dict as record.msg
            if isinstance(record.msg, dict):
                kw = dict(record.msg)
                event = kw.pop("event", "")
            else:
                event = getattr(record, "event", None) or record.getMessage()
                kw = {
                    k: v for k, v in record.__dict__.items()
                    if not k.startswith("_") and k not in self._RECORD_ATTRS
                }

            formatted = self.formatter_inst.format_event(event, **kw)
            if formatted is not None:
                self.stream.write(formatted + "\n")
                self.stream.flush()
        except Exception:
            self.handleError(record)


class HumanLog:
    """Typed helper to emit HUMAN level logs.

    Usage:
        hlog = HumanLog(structlog.get_logger())
        hlog.model_call(iteration=0, messages_count=2)
        hlog.tool_call("read_file", {"path": "main.py"})
    """

    def __init__(self, logger) -> None:
        self._log = logger

    def model_call(self, iteration: int, messages_count: int) -> None:
        self._log.log(HUMAN, "turn.model.call", iteration=iteration, messages_count=messages_count)

    def model_error(self, error: str) -> None:
        self._log.log(HUMAN, "turn.model_error", error=error)

    def tool_call(self, name: str, args: dict) -> None:
        self._log.log(HUMAN, "turn.tool_call.execute", tool=name, args=args)

    def tool_result(self, name: str, success: bool, error: str | None = None) -> None:
        self._log.log(HUMAN, "turn.tool_call.complete", tool=name, success=success, error=error)

    def tool_declined(self, name: str, reason: str) -> None:
        self._log.log(HUMAN, "turn.tool_call.declined", tool=name, reason=reason)

    def hook_blocked(self, name: str, reason: str) -> None:
        self._log.log(HUMAN, "turn.hook.blocked", tool=name, reason=reason)

    def turn_complete(self, iterations: int, tool_calls: int) -> None:
        self._log.log(HUMAN, "turn.complete", iterations=iterations, tool_calls=tool_calls)

    def turn_aborted(self, summary: str | None) -> None:
        self._log.log(HUMAN, "turn.aborted", summary=summary)

    def max_iterations(self, max_iterations: int) -> None:
        self._log.log(HUMAN, "turn.max_iterations", max_iterations=max_iterations)

    def level_start(self, level: int, tasks: list[str]) -> None:
        self._log.log(HUMAN, "coordinator.level.start", level_index=level, tasks=tasks)

    def task_complete(self, task_id: str, role: str, success: bool) -> None:
        self._log.log(HUMAN, "coordinator.task.complete", task_id=task_id, role=role, success=success)

    def unschedulable(self, blocked: list[str]) -> None:
        self._log.log(HUMAN, "coordinator.unschedulable", blocked=blocked)

    def coordination_complete(self, levels: int, parallelism: float) -> None:
        self._log.log(HUMAN, "coordinator.complete", levels=levels, parallelism=parallelism)


def _summarize_args(tool_name: str, args: dict) -> str:
    """Summarize tool arguments for readable human logs.

    Args:
        tool_name: Tool name
        args: Tool arguments

    Returns:
        Summary string (e.g. "src/main.py", "git status")
    """
    match tool_name:
        case "read_file" | "delete_file":
            return str(args.get("path", "?"))

        case "write_file":
            path = args.get("path", "?")
            content = str(args.get("content", ""))
            lines = content.count("\n") + 1
            return f"{path} ({lines} lines)"

        case "edit_file":
            path = args.get("path", "?")
            old = str(args.get("old_str", ""))
            new = str(args.get("new_str", ""))
            return f"{path} ({len(old.splitlines())}->{len(new.splitlines())} lines)"

        case "bash_exec" | "bash_background":
            cmd = str(args.get("command", "?"))
            return cmd[:60] + "..." if len(cmd) > 60 else cmd

        case _:
            if args:
                val_str = str(next(iter(args.values()), ""))
                return val_str[:60] + "..." if len(val_str) > 60 else val_str
            return "(no args)"
