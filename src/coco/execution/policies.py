"""
Confirmation policies for tool execution.

Decides, per tool call, whether the user must confirm it, presents the
call with its risk information and records trust decisions so the same
pattern skips the prompt later.

Decisions: yes, no, abort, trust_project, trust_global, edit.

Invariants:
- Calls are confirmed strictly in the order the model emitted them.
- A trust decision is added to the session set before the next call is
  considered, so later calls in the same batch skip the prompt.
- Persisting a trust decision is fire-and-forget and never blocks the turn.
"""

import asyncio
import difflib
import re
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

import click
import structlog

from ..core.state import ToolCall
from ..core.trust import BASH_TOOLS, TrustedToolSet, TrustStore, get_trust_pattern

logger = structlog.get_logger()

# Tools that always require confirmation, whatever their input
ALWAYS_CONFIRM_TOOLS: frozenset[str] = frozenset({
    # File modifications
    "write_file", "edit_file", "delete_file", "copy_file", "move_file",
    # Git remote
    "git_push", "git_pull",
    # Package management and build tools run arbitrary code
    "install_deps", "make", "run_script",
    # Network
    "http_fetch", "http_json",
    # Sensitive data
    "get_env",
})

# Read-only or informational shell commands
SAFE_BASH_COMMANDS: frozenset[str] = frozenset({
    # File listing and info
    "ls", "ll", "la", "dir", "find", "locate", "stat", "file", "du", "df", "tree",
    # Text viewing
    "cat", "head", "tail", "less", "more", "wc",
    # Search
    "grep", "egrep", "fgrep", "rg", "ag", "ack",
    # Process and system info
    "ps", "top", "htop", "who", "whoami", "id", "uname", "hostname", "uptime",
    "date", "cal", "env", "printenv",
    # Path lookup
    "which", "whereis", "type",
    # Output
    "echo", "printf", "pwd",
    # Help
    "man", "help",
})

SAFE_GIT_PREFIXES: tuple[str, ...] = (
    "git status", "git log", "git diff", "git branch", "git show", "git blame",
    "git remote -v", "git tag", "git stash list",
)

# Any match forces confirmation, even for an otherwise safe base command
DANGEROUS_BASH_PATTERNS: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE) for p in (
        # Network
        r"\bcurl\b", r"\bwget\b", r"\bssh\b", r"\bscp\b", r"\brsync\b",
        r"\bnc\b", r"\bnetcat\b", r"\btelnet\b", r"\bftp\b",
        # Destructive file operations
        r"\brm\b", r"\brmdir\b", r"\bmv\b", r"\bcp\b", r"\bdd\b", r"\bshred\b",
        # Permissions
        r"\bchmod\b", r"\bchown\b", r"\bchgrp\b",
        # Package installation
        r"\bnpm\s+(install|i|add|ci)\b",
        r"\bpnpm\s+(install|i|add)\b",
        r"\byarn\s+(add|install)\b",
        r"\bpip\s+install\b",
        r"\bapt(-get)?\s+(install|remove|purge)\b",
        r"\bbrew\s+(install|uninstall|remove)\b",
        # Git writes
        r"\bgit\s+(push|commit|merge|rebase|reset|checkout|pull|clone)\b",
        # Process control
        r"\bkill\b", r"\bpkill\b", r"\bkillall\b",
        # Privilege
        r"\bsudo\b", r"\bsu\b",
        # Code execution
        r"\beval\b", r"\bexec\b", r"\bsource\b", r"\b\.\s+/",
        # Pipes into a shell
        r"\|\s*(ba)?sh\b",
        # Writing to files
        r"[>|]\s*/?\w", r"\btee\b",
        # Containers
        r"\bdocker\s+(run|exec|build|push|pull|rm|stop|kill)\b",
        r"\bdocker-compose\s+(up|down|build|pull|push)\b",
        r"\bkubectl\s+(apply|delete|exec|scale|rollout)\b",
        # Databases
        r"\bmysql\b", r"\bpsql\b", r"\bmongo\b", r"\bredis-cli\b",
    )
]


class NoTTYError(Exception):
    """Raised when confirmation is required but no terminal is available.

    Happens in headless environments (CI, cron, pipes) when the policy
    requires confirmation. Use --yes to skip confirmations there.
    """

    pass


class ConfirmationDecision(Enum):
    YES = "yes"
    NO = "no"
    ABORT = "abort"
    TRUST_PROJECT = "trust_project"
    TRUST_GLOBAL = "trust_global"
    EDIT = "edit"


@dataclass(frozen=True)
class ConfirmationResult:
    """Answer of the user for one call. ``new_command`` is set for EDIT."""

    decision: ConfirmationDecision
    new_command: str | None = None


@dataclass
class ConfirmationOutcome:
    """Result of reviewing a batch of tool calls.

    ``confirmed`` holds the calls allowed to run (edited input applied),
    in the original order.
    """

    confirmed: list[ToolCall] = field(default_factory=list)
    declined: dict[str, str] = field(default_factory=dict)
    aborted: bool = False


def is_safe_bash_command(command: str) -> bool:
    """True if the command is read-only/informational and needs no prompt."""
    trimmed = command.strip()

    if any(pattern.search(trimmed) for pattern in DANGEROUS_BASH_PATTERNS):
        return False

    tokens = trimmed.split()
    base_command = tokens[0].lower() if tokens else ""
    if base_command in SAFE_BASH_COMMANDS:
        return True

    if trimmed.lower().startswith(SAFE_GIT_PREFIXES):
        return True

    return trimmed.endswith(("--help", "-h", "--version", "-v", "-V"))


def requires_confirmation(tool_name: str, tool_input: dict[str, Any] | None = None) -> bool:
    """Risk classification of a tool call.

    Args:
        tool_name: Tool name
        tool_input: Tool input, used by shell tools

    Returns:
        True if the user must confirm the call
    """
    if tool_name in ALWAYS_CONFIRM_TOOLS:
        return True

    if tool_name in BASH_TOOLS:
        command = (tool_input or {}).get("command")
        if isinstance(command, str):
            return not is_safe_bash_command(command)
        return True

    return False


# ── Display ──────────────────────────────────────────────────────────────


def _truncate_line(line: str, max_width: int = 80) -> str:
    return line if len(line) <= max_width else line[: max_width - 3] + "..."


def format_tool_call_for_confirmation(tool_call: ToolCall, is_create: bool = False) -> str:
    """One-line action label of a call (plain text)."""
    name, inp = tool_call.name, tool_call.input
    match name:
        case "write_file":
            label = "CREATE file" if is_create else "MODIFY file"
            return f"{label}: {inp.get('path', 'unknown')}"
        case "edit_file":
            return f"EDIT file: {inp.get('path', 'unknown')}"
        case "delete_file":
            return f"DELETE file: {inp.get('path', 'unknown')}"
        case "copy_file" | "move_file":
            verb = "COPY" if name == "copy_file" else "MOVE"
            return f"{verb}: {inp.get('source', '?')} -> {inp.get('destination', '?')}"
        case "bash_exec":
            return f"EXECUTE: {_truncate_line(str(inp.get('command', '')))}"
        case "bash_background":
            return f"BACKGROUND: {_truncate_line(str(inp.get('command', '')))}"
        case "git_push" | "git_pull":
            verb = "GIT PUSH" if name == "git_push" else "GIT PULL"
            return f"{verb}: {inp.get('remote', 'origin')}/{inp.get('branch', 'current')}"
        case "install_deps":
            return f"INSTALL DEPS: {inp.get('packageManager', 'npm/pnpm')}"
        case "make":
            return f"MAKE: {inp.get('target', 'default')}"
        case "run_script":
            return f"RUN SCRIPT: {inp.get('script', inp.get('name', 'unknown'))}"
        case "http_fetch" | "http_json":
            method = str(inp.get("method", "GET")).upper()
            return f"HTTP {method}: {inp.get('url', 'unknown')}"
        case "get_env":
            return f"READ ENV: {inp.get('name', inp.get('variable', 'unknown'))}"
        case _:
            return name


def format_diff_preview(tool_call: ToolCall, max_lines: int = 500) -> str | None:
    """Unified diff between old_str and new_str of an edit_file call."""
    if tool_call.name != "edit_file":
        return None
    old, new = tool_call.input.get("old_str"), tool_call.input.get("new_str")
    if not isinstance(old, str) or not isinstance(new, str):
        return None
    if old == new:
        return "(no changes)"

    old_lines, new_lines = old.split("\n"), new.split("\n")
    if len(old_lines) > max_lines or len(new_lines) > max_lines:
        return f"(diff too large: {len(old_lines)} -> {len(new_lines)} lines)"

    diff = difflib.unified_diff(old_lines, new_lines, lineterm="", n=1)
    # Drop the ---/+++ headers
    body = [_truncate_line(line) for line in diff][2:]
    return "\n".join(body) or "(no visible changes)"


def format_write_file_preview(tool_call: ToolCall, max_lines: int = 10) -> str | None:
    """First lines of the content of a write_file call."""
    if tool_call.name != "write_file":
        return None
    content = tool_call.input.get("content")
    if not isinstance(content, str):
        return None
    if not content:
        return "  (empty file)"

    lines = content.split("\n")
    preview = [f"  | {_truncate_line(line)}" for line in lines[:max_lines]]
    if len(lines) > max_lines:
        preview.append(f"  ... {len(lines) - max_lines} more lines")
    return "\n".join(preview)


# ── Prompt ───────────────────────────────────────────────────────────────


class ConfirmationPrompt(Protocol):
    """Asks the user about one tool call."""

    async def confirm(self, tool_call: ToolCall) -> ConfirmationResult: ...


class TerminalConfirmationPrompt:
    """Interactive y/n/e/t/! prompt on the terminal.

    Ctrl+C or EOF answers abort. Unknown answers ask again. The edit
    option is only offered for bash_exec; an empty edit asks again.
    """

    def __init__(
        self,
        workspace_root: Path,
        reader: Callable[[str], str] = input,
        echo: Callable[[str], None] = click.echo,
        require_tty: bool = True,
    ) -> None:
        self.workspace_root = workspace_root
        self._read = reader
        self._echo = echo
        self.require_tty = require_tty

    async def confirm(self, tool_call: ToolCall) -> ConfirmationResult:
        if self.require_tty and not sys.stdin.isatty():
            raise NoTTYError(
                f"Confirmation required to run '{tool_call.name}' but no TTY is "
                f"available (headless/CI). Use --yes to skip confirmations."
            )
        return await asyncio.to_thread(self._ask, tool_call)

    def _ask(self, tool_call: ToolCall) -> ConfirmationResult:
        is_create = False
        if tool_call.name == "write_file" and tool_call.input.get("path"):
            is_create = not (self.workspace_root / str(tool_call.input["path"])).exists()

        can_edit = tool_call.name == "bash_exec"
        self._echo("")
        self._echo(click.style("  Confirm Action", fg="magenta", bold=True))
        self._echo(f"  {format_tool_call_for_confirmation(tool_call, is_create=is_create)}")

        if diff := format_diff_preview(tool_call):
            self._echo("\n  Changes:")
            for line in diff.split("\n")[:5]:
                self._echo(f"    {line}")
        if preview := format_write_file_preview(tool_call, max_lines=3):
            self._echo("\n  Preview:")
            for line in preview.split("\n")[:4]:
                self._echo(line)

        self._echo("")
        self._echo("  [y]es      Allow once")
        self._echo("  [n]o       Skip")
        if can_edit:
            self._echo("  [e]dit     Edit command")
        self._echo("  [t]rust    Always allow (this project)")
        self._echo("  [!]        Always allow (everywhere)")
        self._echo("  Ctrl+C to abort task")

        while True:
            try:
                answer = self._read("  Choice: ").strip().lower()
            except (KeyboardInterrupt, EOFError):
                return ConfirmationResult(ConfirmationDecision.ABORT)

            match answer:
                case "y" | "yes":
                    return ConfirmationResult(ConfirmationDecision.YES)
                case "n" | "no":
                    return ConfirmationResult(ConfirmationDecision.NO)
                case "t" | "trust":
                    return ConfirmationResult(ConfirmationDecision.TRUST_PROJECT)
                case "!":
                    return ConfirmationResult(ConfirmationDecision.TRUST_GLOBAL)
                case "e" | "edit" if can_edit:
                    try:
                        new_command = self._read(
                            f"  Current: {tool_call.input.get('command', '')}\n  New cmd: "
                        ).strip()
                    except (KeyboardInterrupt, EOFError):
                        return ConfirmationResult(ConfirmationDecision.ABORT)
                    if new_command:
                        return ConfirmationResult(ConfirmationDecision.EDIT, new_command=new_command)
                case _:
                    pass
            self._echo("  Please answer y, n, t or !" + (" (or e)" if can_edit else ""))


# ── Gate ─────────────────────────────────────────────────────────────────


class ConfirmationGate:
    """Runs the confirmation phase over a batch of tool calls.

    Args:
        trusted: Session trusted set (mutated on trust decisions)
        prompt: Interactive prompt; None means nothing can be confirmed
            interactively, so calls that need confirmation are declined.
        store: Trust persistence; None keeps trust in memory only
        project_path: Key of the project scope in the store
    """

    def __init__(
        self,
        trusted: TrustedToolSet,
        prompt: ConfirmationPrompt | None = None,
        store: TrustStore | None = None,
        project_path: str | None = None,
    ) -> None:
        self.trusted = trusted
        self.prompt = prompt
        self.store = store
        self.project_path = project_path
        self._pending_saves: set[asyncio.Task] = set()
        self.log = logger.bind(component="confirmation_gate")

    def needs_confirmation(self, tool_call: ToolCall, skip_confirmation: bool = False) -> bool:
        if skip_confirmation:
            return False
        if self.trusted.is_trusted(tool_call.name, tool_call.input):
            return False
        return requires_confirmation(tool_call.name, tool_call.input)

    async def review(
        self,
        tool_calls: list[ToolCall],
        skip_confirmation: bool = False,
        on_declined: Callable[[ToolCall, str], None] | None = None,
    ) -> ConfirmationOutcome:
        """Decide every call in order.

        Returns:
            ConfirmationOutcome with the confirmed calls, the decline
            reasons by call id and whether the user aborted the turn.
        """
        outcome = ConfirmationOutcome()

        for tool_call in tool_calls:
            if not self.needs_confirmation(tool_call, skip_confirmation):
                outcome.confirmed.append(tool_call)
                continue

            if self.prompt is None:
                reason = "Confirmation required but no interactive prompt is available"
                outcome.declined[tool_call.id] = reason
                if on_declined:
                    on_declined(tool_call, reason)
                continue

            result = await self.prompt.confirm(tool_call)
            self.log.debug("confirmation.decision", tool=tool_call.name, decision=result.decision.value)

            match result.decision:
                case ConfirmationDecision.YES:
                    outcome.confirmed.append(tool_call)
                case ConfirmationDecision.NO:
                    outcome.declined[tool_call.id] = "User declined"
                    if on_declined:
                        on_declined(tool_call, "User declined")
                case ConfirmationDecision.ABORT:
                    outcome.aborted = True
                    break
                case ConfirmationDecision.EDIT:
                    edited = replace(tool_call, input={**tool_call.input, "command": result.new_command})
                    outcome.confirmed.append(edited)
                case ConfirmationDecision.TRUST_PROJECT | ConfirmationDecision.TRUST_GLOBAL:
                    is_global = result.decision is ConfirmationDecision.TRUST_GLOBAL
                    self.trust(get_trust_pattern(tool_call.name, tool_call.input), is_global)
                    outcome.confirmed.append(tool_call)

        return outcome

    def trust(self, pattern: str, is_global: bool) -> None:
        """Trust ``pattern`` for the session now and persist it in the background.

        Project trust without a project path stays in the session.
        """
        self.trusted.add(pattern)
        self.log.info("trust.added", pattern=pattern, scope="global" if is_global else "project")
        if self.store is None:
            return
        if not is_global and self.project_path is None:
            self.log.debug("trust.session_only", pattern=pattern)
            return
        task = asyncio.create_task(self.store.save_async(pattern, self.project_path, is_global))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def drain(self) -> None:
        """Wait for pending trust writes (used before the process exits)."""
        if self._pending_saves:
            await asyncio.gather(*self._pending_saves, return_exceptions=True)

    def __repr__(self) -> str:
        return f"<ConfirmationGate(trusted={len(self.trusted)})>"
