"""
Tool bash_exec -- Shell command execution.

Commands run as asyncio subprocesses in the project directory with a
timeout and a cap on captured output. Whether a command needs the
user's confirmation is decided by the confirmation gate, not here.
"""

import asyncio
import os
from pathlib import Path
from typing import Any

import structlog

from .base import BaseTool, ToolError
from .schemas import BashExecArgs

logger = structlog.get_logger()

MAX_OUTPUT_LINES = 400


class BashExecTool(BaseTool):
    """Runs a shell command and reports stdout, stderr and exit code."""

    name = "bash_exec"
    description = (
        "Execute a command in the system shell. Useful for:\n"
        "- Running tests: pytest tests/, npm test\n"
        "- Checking status: git status, git log --oneline -5\n"
        "- Building: make build, cargo build\n"
        "The command runs in the project directory."
    )
    sensitive = True
    args_model = BashExecArgs

    def __init__(self, workspace_root: Path, max_lines: int = MAX_OUTPUT_LINES) -> None:
        self.workspace_root = workspace_root
        self.max_lines = max_lines
        self.log = logger.bind(component="bash_exec_tool")

    async def execute(self, args: BashExecArgs, signal: asyncio.Event | None = None) -> Any:
        self.log.info("bash_exec.execute", command=args.command[:100], timeout=args.timeout)

        proc = await asyncio.create_subprocess_shell(
            args.command,
            cwd=str(self.workspace_root),
            env=os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=args.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self.log.warning("bash_exec.timeout", command=args.command[:100], timeout=args.timeout)
            raise ToolError(f"Command exceeded the {args.timeout}s timeout: '{args.command}'")

        out = self._truncate(stdout.decode("utf-8", errors="replace"), self.max_lines)
        err = self._truncate(stderr.decode("utf-8", errors="replace"), max(self.max_lines // 4, 10))

        self.log.info("bash_exec.complete", command=args.command[:100], exit_code=proc.returncode)

        if proc.returncode != 0:
            detail = err.strip() or out.strip()
            raise ToolError(
                f"Command failed with exit code {proc.returncode}"
                + (f":\n{detail}" if detail else "")
            )
        return {"stdout": out, "stderr": err, "exit_code": proc.returncode}

    def _truncate(self, text: str, max_lines: int) -> str:
        """Truncate long text keeping the first half and the last quarter."""
        if not text:
            return text
        lines = text.splitlines()
        if len(lines) <= max_lines:
            return text

        head_count = max_lines // 2
        tail_count = max_lines // 4
        omitted = len(lines) - head_count - tail_count

        head = "\n".join(lines[:head_count])
        tail = "\n".join(lines[-tail_count:])
        return f"{head}\n\n[... {omitted} lines omitted ...]\n\n{tail}"
