"""
Hook System -- Extension points around tool execution.

Hooks are registered per lifecycle event and run sequentially in
registration order. A hook is either a shell command (subprocess with
the context exposed as COCO_* env vars) or a prompt (context templated
into text and judged by a model).

Command hook protocol:
- Exit 0  = allow. Optional JSON on stdout:
            {"action": "allow" | "deny" | "modify", "modifiedInput": {...}}
- Exit 1 during PreToolUse = deny
- Other   = hook failure

Invariants:
- A deny stops the chain (should_continue=False).
- A failing hook stops the chain unless it has continue_on_error.
- A modify carries its input forward to the executor (last one wins).
- Timeouts are reported as "Hook timed out after Nms".
- Output captured from a command hook is capped at 64KB.
"""

import asyncio
import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from ..config.schema import HooksConfig
    from ..llm.provider import ModelProvider

logger = structlog.get_logger()

__all__ = [
    "HookEvent",
    "HookType",
    "HookAction",
    "HookDefinition",
    "HookContext",
    "HookResult",
    "HookExecutionResult",
    "HookRegistry",
    "HookExecutor",
    "DuplicateHookError",
    "HookNotFoundError",
    "HookConfigError",
    "match_tool_pattern",
]

DEFAULT_TIMEOUT_MS = 30_000
MAX_OUTPUT_SIZE = 64 * 1024
HOOKS_FILE_VERSION = 1

PROMPT_HOOK_SYSTEM = (
    "You review actions of a coding agent. Answer ONLY with a JSON object: "
    '{"action": "allow" | "deny" | "modify", "modifiedInput": {...}, "message": "..."}. '
    "Include modifiedInput only when action is modify."
)


class HookEvent(str, Enum):
    """Lifecycle events where hooks can be injected."""

    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"


class HookType(str, Enum):
    COMMAND = "command"
    PROMPT = "prompt"


class HookAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    MODIFY = "modify"


class DuplicateHookError(Exception):
    """Raised when registering a hook whose id already exists."""

    pass


class HookNotFoundError(Exception):
    """Raised when toggling a hook id that is not registered."""

    pass


class HookConfigError(Exception):
    """Raised when a hooks file is malformed."""

    pass


class HookDefinition(BaseModel):
    """A registered hook.

    ``timeout`` is in milliseconds. Only ``enabled`` (and update_hook)
    changes a definition after registration.
    """

    id: str = Field(min_length=1)
    event: HookEvent
    type: HookType = HookType.COMMAND
    matcher: str | None = None
    command: str | None = None
    prompt: str | None = None
    timeout: int | None = Field(default=None, ge=1)
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    description: str | None = None
    enabled: bool = True

    model_config = {"extra": "forbid", "populate_by_name": True}


@dataclass
class HookContext:
    """Data handed to hooks for one event."""

    event: HookEvent
    session_id: str = ""
    project_path: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_result: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class HookResult:
    """Result of running one hook."""

    hook_id: str
    success: bool
    output: str | None = None
    error: str | None = None
    duration: float = 0.0
    exit_code: int | None = None
    action: HookAction | None = None
    modified_input: dict[str, Any] | None = None


@dataclass
class HookExecutionResult:
    """Combined outcome of all hooks of one event."""

    event: HookEvent
    results: list[HookResult] = field(default_factory=list)
    all_succeeded: bool = True
    should_continue: bool = True
    modified_input: dict[str, Any] | None = None
    duration: float = 0.0

    @property
    def denial_reason(self) -> str | None:
        """Why the chain stopped, taken from the last hook that ran."""
        if self.should_continue or not self.results:
            return None
        last = self.results[-1]
        return last.error or last.output or f"Hook '{last.hook_id}' denied the action"


def match_tool_pattern(pattern: str, value: str) -> bool:
    """Glob match supporting ``*`` and ``?``; exact match without wildcards."""
    if "*" not in pattern and "?" not in pattern:
        return pattern == value
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
        for ch in pattern
    )
    return re.fullmatch(regex, value) is not None


class HookRegistry:
    """Hooks indexed by id and by event, in registration order."""

    def __init__(self) -> None:
        self._by_id: dict[str, HookDefinition] = {}
        self._by_event: dict[HookEvent, list[HookDefinition]] = {}
        self.log = logger.bind(component="hook_registry")

    @classmethod
    def from_config(cls, config: "HooksConfig") -> "HookRegistry":
        """Build a registry from the hooks file and the inline hooks of the config."""
        registry = cls()
        if config.hooks_file:
            registry.load_from_file(Path(config.hooks_file))
        for item in config.hooks:
            hook = HookDefinition.model_validate(item.model_dump(by_alias=True))
            _validate_definition(hook)
            registry.register(hook)
        return registry

    def register(self, hook: HookDefinition) -> None:
        if hook.id in self._by_id:
            raise DuplicateHookError(f"Hook with ID '{hook.id}' already exists")
        self._by_id[hook.id] = hook
        self._by_event.setdefault(hook.event, []).append(hook)
        self.log.debug("hook.registered", hook=hook.id, hook_event=hook.event.value)

    def unregister(self, hook_id: str) -> bool:
        hook = self._by_id.pop(hook_id, None)
        if hook is None:
            return False
        event_hooks = self._by_event.get(hook.event, [])
        self._by_event[hook.event] = [h for h in event_hooks if h.id != hook_id]
        if not self._by_event[hook.event]:
            del self._by_event[hook.event]
        return True

    def get_hooks_for_event(self, event: HookEvent) -> list[HookDefinition]:
        return list(self._by_event.get(event, []))

    def has_hooks_for_event(self, event: HookEvent) -> bool:
        return bool(self._by_event.get(event))

    def get_matching_hooks(self, event: HookEvent, tool_name: str | None = None) -> list[HookDefinition]:
        """Enabled hooks of ``event`` whose matcher accepts ``tool_name``.

        A hook without matcher, or a context without tool name, always matches.
        """
        return [
            hook for hook in self.get_hooks_for_event(event)
            if hook.enabled
            and (not hook.matcher or tool_name is None or match_tool_pattern(hook.matcher, tool_name))
        ]

    def get_hook(self, hook_id: str) -> HookDefinition | None:
        return self._by_id.get(hook_id)

    def get_all_hooks(self) -> list[HookDefinition]:
        return list(self._by_id.values())

    def update_hook(self, hook_id: str, **updates: Any) -> bool:
        """Update fields of a hook. Changing ``event`` moves it to the end of the new event."""
        existing = self._by_id.get(hook_id)
        if existing is None:
            return False
        updates.pop("id", None)
        updated = existing.model_copy(update=updates)
        if updated.event != existing.event:
            self.unregister(hook_id)
            self.register(updated)
        else:
            self._by_id[hook_id] = updated
            self._by_event[existing.event] = [
                updated if h.id == hook_id else h for h in self._by_event[existing.event]
            ]
        return True

    def set_enabled(self, hook_id: str, enabled: bool) -> None:
        if not self.update_hook(hook_id, enabled=enabled):
            raise HookNotFoundError(f"Hook '{hook_id}' not found")

    def clear(self) -> None:
        self._by_id.clear()
        self._by_event.clear()

    @property
    def size(self) -> int:
        return len(self._by_id)

    def load_from_file(self, path: Path) -> None:
        """Replace the registry content with the hooks of a JSON file.

        A missing file leaves the registry untouched.

        Raises:
            HookConfigError: If the file is not a valid ``{version, hooks}`` document
        """
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise HookConfigError(f"Invalid hooks file {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("version"), int):
            raise HookConfigError("Invalid hooks config: missing version")
        if not isinstance(data.get("hooks"), list):
            raise HookConfigError("Invalid hooks config: hooks must be an array")

        hooks: list[HookDefinition] = []
        for raw in data["hooks"]:
            try:
                hook = HookDefinition.model_validate(raw)
            except ValidationError as e:
                raise HookConfigError(f"Invalid hook definition: {e}") from e
            _validate_definition(hook)
            hooks.append(hook)

        self.clear()
        for hook in hooks:
            self.register(hook)
        self.log.info("hooks.loaded", path=str(path), count=len(hooks))

    def save_to_file(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "version": HOOKS_FILE_VERSION,
            "hooks": [
                hook.model_dump(mode="json", by_alias=True, exclude_none=True)
                for hook in self.get_all_hooks()
            ],
        }
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"<HookRegistry({self.size} hooks)>"


def _validate_definition(hook: HookDefinition) -> None:
    if hook.type is HookType.COMMAND and not hook.command:
        raise HookConfigError(f"Command hook '{hook.id}' must have a command string")
    if hook.type is HookType.PROMPT and not hook.prompt:
        raise HookConfigError(f"Prompt hook '{hook.id}' must have a prompt string")


class HookExecutor:
    """Runs the hooks of an event and combines their verdicts.

    Args:
        cwd: Working directory of command hooks
        default_timeout: Timeout in ms for hooks that define none
        evaluator: Model used to judge prompt hooks. Without it prompt
            hooks allow (and say so in their output).
    """

    def __init__(
        self,
        cwd: str | Path | None = None,
        default_timeout: int = DEFAULT_TIMEOUT_MS,
        evaluator: "ModelProvider | None" = None,
    ) -> None:
        self.cwd = str(cwd or os.getcwd())
        self.default_timeout = default_timeout
        self.evaluator = evaluator
        self.log = logger.bind(component="hooks")

    async def execute_hooks(self, registry: HookRegistry, context: HookContext) -> HookExecutionResult:
        """Run every matching, enabled hook of ``context.event`` in order."""
        start = time.monotonic()
        hooks = registry.get_matching_hooks(context.event, context.tool_name)
        outcome = HookExecutionResult(event=context.event)

        for hook in hooks:
            if hook.type is HookType.COMMAND:
                result = await self._execute_command_hook(hook, context)
            else:
                result = await self._execute_prompt_hook(hook, context)
            outcome.results.append(result)

            self.log.debug(
                "hooks.hook.complete",
                hook=hook.id,
                hook_event=context.event.value,
                success=result.success,
                action=result.action.value if result.action else None,
                duration=round(result.duration, 4),
            )

            if not result.success:
                outcome.all_succeeded = False
                if not hook.continue_on_error:
                    outcome.should_continue = False

            if result.action is HookAction.DENY:
                outcome.should_continue = False
            elif result.action is HookAction.MODIFY and result.modified_input is not None:
                outcome.modified_input = result.modified_input

            if not outcome.should_continue:
                break

        outcome.duration = time.monotonic() - start
        return outcome

    # ── Command hooks ─────────────────────────────────────────────────────

    def build_environment(self, context: HookContext) -> dict[str, str]:
        """COCO_* variables describing the event for a command hook."""
        env = {
            "COCO_HOOK_EVENT": context.event.value,
            "COCO_SESSION_ID": context.session_id,
            "COCO_PROJECT_PATH": context.project_path,
            "COCO_HOOK_TIMESTAMP": context.timestamp.isoformat(),
        }
        if context.tool_name:
            env["COCO_TOOL_NAME"] = context.tool_name
        if context.tool_input is not None:
            env["COCO_TOOL_INPUT"] = json.dumps(context.tool_input, default=str)
        if context.tool_result is not None:
            env["COCO_TOOL_RESULT"] = json.dumps(context.tool_result, default=str)
        for key, value in context.metadata.items():
            env_key = "COCO_META_" + re.sub(r"[^A-Z0-9_]", "_", key.upper())
            env[env_key] = value if isinstance(value, str) else json.dumps(value, default=str)
        return env

    async def _execute_command_hook(self, hook: HookDefinition, context: HookContext) -> HookResult:
        start = time.monotonic()
        if not hook.command:
            return HookResult(hook_id=hook.id, success=False, error="Command hook has no command defined")

        timeout_ms = hook.timeout or self.default_timeout
        try:
            proc = await asyncio.create_subprocess_shell(
                hook.command,
                cwd=self.cwd,
                env={**os.environ, **self.build_environment(context)},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return HookResult(
                hook_id=hook.id, success=False, error=str(e), duration=time.monotonic() - start
            )

        try:
            raw_out, raw_err, overflowed = await asyncio.wait_for(_collect_output(proc), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            self.log.warning("hooks.hook.timeout", hook=hook.id, timeout_ms=timeout_ms)
            return HookResult(
                hook_id=hook.id,
                success=False,
                error=f"Hook timed out after {timeout_ms}ms",
                duration=time.monotonic() - start,
            )

        stdout = raw_out.decode("utf-8", errors="replace").strip()
        stderr = raw_err.decode("utf-8", errors="replace").strip()
        exit_code = proc.returncode
        output = "\n".join(part for part in (stdout, stderr) if part) or None
        duration = time.monotonic() - start

        if overflowed:
            self.log.warning("hooks.hook.output_overflow", hook=hook.id, limit=MAX_OUTPUT_SIZE)
            return HookResult(
                hook_id=hook.id,
                success=False,
                output=output,
                error=f"Hook output exceeded {MAX_OUTPUT_SIZE} bytes",
                duration=duration,
                exit_code=exit_code,
            )

        if exit_code == 0:
            action, modified = _parse_verdict(stdout)
            return HookResult(
                hook_id=hook.id,
                success=True,
                output=output,
                duration=duration,
                exit_code=0,
                action=action,
                modified_input=modified,
            )

        result = HookResult(
            hook_id=hook.id,
            success=False,
            output=output,
            error=stderr or f"Hook exited with code {exit_code}",
            duration=duration,
            exit_code=exit_code,
        )
        if exit_code == 1 and context.event is HookEvent.PRE_TOOL_USE:
            result.action = HookAction.DENY
        return result

    # ── Prompt hooks ──────────────────────────────────────────────────────

    def format_prompt(self, prompt: str, context: HookContext) -> str:
        """Substitute {{event}}, {{toolName}}, {{toolInput}}, {{toolResult}},
        {{sessionId}} and {{projectPath}}."""
        values = {
            "event": context.event.value,
            "toolName": context.tool_name or "N/A",
            "sessionId": context.session_id,
            "projectPath": context.project_path,
            "toolInput": (
                json.dumps(context.tool_input, indent=2, default=str)
                if context.tool_input is not None else "N/A"
            ),
            "toolResult": (
                json.dumps(context.tool_result, indent=2, default=str)
                if context.tool_result is not None else "N/A"
            ),
        }
        return re.sub(
            r"\{\{(\w+)\}\}",
            lambda m: values.get(m.group(1), m.group(0)),
            prompt,
        )

    async def _execute_prompt_hook(self, hook: HookDefinition, context: HookContext) -> HookResult:
        start = time.monotonic()
        if not hook.prompt:
            return HookResult(hook_id=hook.id, success=False, error="Prompt hook has no prompt defined")

        formatted = self.format_prompt(hook.prompt, context)

        if self.evaluator is None:
            # No model configured: prompt hooks allow
            return HookResult(
                hook_id=hook.id,
                success=True,
                output=f"Prompt evaluated: {formatted[:100]}...",
                duration=time.monotonic() - start,
                action=HookAction.ALLOW,
            )

        timeout_ms = hook.timeout or self.default_timeout
        try:
            answer = await asyncio.wait_for(self._ask_model(formatted), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return HookResult(
                hook_id=hook.id,
                success=False,
                error=f"Hook timed out after {timeout_ms}ms",
                duration=time.monotonic() - start,
            )
        except Exception as e:
            self.log.warning("hooks.prompt.error", hook=hook.id, error=str(e))
            return HookResult(hook_id=hook.id, success=False, error=str(e), duration=time.monotonic() - start)

        action, modified = _parse_verdict(answer)
        if action is None:
            return HookResult(
                hook_id=hook.id,
                success=False,
                output=answer or None,
                error="Prompt hook returned no valid verdict",
                duration=time.monotonic() - start,
            )
        return HookResult(
            hook_id=hook.id,
            success=True,
            output=answer,
            duration=time.monotonic() - start,
            action=action,
            modified_input=modified,
        )

    async def _ask_model(self, prompt: str) -> str:
        messages = [
            {"role": "system", "content": PROMPT_HOOK_SYSTEM},
            {"role": "user", "content": prompt},
        ]
        chunks: list[str] = []
        async for event in self.evaluator.stream(messages, [], max_tokens=1024):
            if event.type == "text" and event.text:
                chunks.append(event.text)
            elif event.type == "done":
                break
        return "".join(chunks).strip()

    def __repr__(self) -> str:
        return f"<HookExecutor(cwd='{self.cwd}', evaluator={self.evaluator is not None})>"


async def _read_capped(proc: asyncio.subprocess.Process, stream: asyncio.StreamReader) -> tuple[bytes, bool]:
    """Read ``stream`` up to MAX_OUTPUT_SIZE bytes; kill ``proc`` past the limit."""
    buffer = bytearray()
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            return bytes(buffer), False
        buffer.extend(chunk)
        if len(buffer) > MAX_OUTPUT_SIZE:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            # Drain what children of the shell still write
            while await stream.read(8192):
                pass
            return bytes(buffer[:MAX_OUTPUT_SIZE]), True


async def _collect_output(proc: asyncio.subprocess.Process) -> tuple[bytes, bytes, bool]:
    (out, out_over), (err, err_over) = await asyncio.gather(
        _read_capped(proc, proc.stdout),
        _read_capped(proc, proc.stderr),
    )
    await proc.wait()
    return out, err, out_over or err_over


def _parse_verdict(text: str) -> tuple[HookAction | None, dict[str, Any] | None]:
    """Read ``{"action", "modifiedInput"}`` from hook output.

    Text that holds no JSON object with a valid action yields (None, None).
    """
    if not text:
        return None, None
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return None, None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None, None
    if not isinstance(data, dict):
        return None, None
    try:
        action = HookAction(str(data.get("action", "")).lower())
    except ValueError:
        return None, None
    modified = data.get("modifiedInput")
    if action is HookAction.MODIFY and not isinstance(modified, dict):
        return None, None
    return action, modified if action is HookAction.MODIFY else None
