"""
Agent Executor - runs one task as an autonomous agent.

The task becomes the first user message of a fresh session whose system
prompt is the role's; the turn loop then runs with the role's tool
allow-list and turn budget.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ..core.hooks import HookContext, HookEvent, HookExecutor, HookRegistry
from ..core.loop import TurnOptions, execute_turn
from ..core.state import StopReason
from ..execution.policies import ConfirmationGate
from ..features.sessions import Session
from ..llm.provider import ModelProvider
from ..tools.registry import ToolRegistry
from .roles import AgentRole

logger = structlog.get_logger()

MAX_TURNS_MESSAGE = "Agent reached maximum turns without completing task"


class AgentTask(BaseModel):
    """A unit of work for the coordinator."""

    id: str = Field(min_length=1)
    description: str
    dependencies: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


@dataclass
class AgentResult:
    """Outcome of one agent run."""

    output: str
    success: bool
    turns: int = 0
    tools_used: list[str] = field(default_factory=list)
    tokens_used: int = 0
    duration: float = 0.0
    role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "success": self.success,
            "turns": self.turns,
            "tools_used": self.tools_used,
            "tokens_used": self.tokens_used,
            "duration": round(self.duration, 3),
            "role": self.role,
        }


def build_task_prompt(task: AgentTask) -> str:
    prompt = f"Task: {task.description}\n"
    if task.context:
        prompt += f"\nContext:\n{json.dumps(task.context, indent=2, default=str)}\n"
    prompt += (
        "\nComplete this task autonomously using the available tools. "
        "When done, provide a summary of what you accomplished."
    )
    return prompt


class AgentExecutor:
    """Runs tasks through the turn loop with a role's settings.

    Sub-agents run concurrently, so they never prompt the user: calls
    that need confirmation go through ``gate`` (declined when it has no
    prompt) unless ``skip_confirmation`` is set.
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        project_path: str = ".",
        gate: ConfirmationGate | None = None,
        skip_confirmation: bool = False,
        hooks: HookRegistry | None = None,
        max_concurrency: int = 5,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.project_path = project_path
        self.gate = gate
        self.skip_confirmation = skip_confirmation
        self.hooks = hooks
        self.max_concurrency = max_concurrency
        self.log = logger.bind(component="agent_executor")

    async def execute(
        self,
        role: AgentRole,
        task: AgentTask,
        signal: asyncio.Event | None = None,
    ) -> AgentResult:
        start = time.monotonic()
        session = Session(project_path=self.project_path, system_prompt=role.system_prompt)
        self.log.info("agent.start", task_id=task.id, role=role.name, max_turns=role.max_turns)

        try:
            turn = await execute_turn(
                session,
                build_task_prompt(task),
                self.provider,
                self.registry,
                TurnOptions(
                    max_iterations=role.max_turns,
                    max_concurrency=self.max_concurrency,
                    signal=signal,
                    skip_confirmation=self.skip_confirmation,
                    gate=self.gate,
                    hooks=self.hooks,
                    allowed_tools=list(role.allowed_tools),
                ),
            )
        except Exception as e:
            self.log.error("agent.error", task_id=task.id, error=str(e), error_type=type(e).__name__)
            return AgentResult(
                output=f"Agent error: {e}",
                success=False,
                duration=time.monotonic() - start,
                role=role.name,
            )

        tools_used = list(dict.fromkeys(tc.name for tc in turn.tool_calls))
        if turn.stop_reason is StopReason.LLM_ERROR:
            output = f"Agent error: {turn.error}"
        elif turn.stop_reason is StopReason.MAX_ITERATIONS:
            output = MAX_TURNS_MESSAGE
        else:
            output = turn.content

        result = AgentResult(
            output=output,
            success=turn.success and not turn.aborted,
            turns=turn.iterations,
            tools_used=tools_used,
            tokens_used=turn.usage.total,
            duration=time.monotonic() - start,
            role=role.name,
        )
        self.log.info(
            "agent.complete",
            task_id=task.id,
            role=role.name,
            success=result.success,
            turns=result.turns,
            stop_reason=turn.stop_reason.value if turn.stop_reason else None,
        )
        await self._run_subagent_stop_hooks(session, task, result)
        return result

    async def _run_subagent_stop_hooks(self, session: Session, task: AgentTask, result: AgentResult) -> None:
        if self.hooks is None or not self.hooks.has_hooks_for_event(HookEvent.SUBAGENT_STOP):
            return
        outcome = await HookExecutor(cwd=self.project_path).execute_hooks(
            self.hooks,
            HookContext(
                event=HookEvent.SUBAGENT_STOP,
                session_id=session.id,
                project_path=self.project_path,
                metadata={"task_id": task.id, "role": result.role, "success": result.success},
            ),
        )
        if not outcome.all_succeeded:
            self.log.warning(
                "agent.subagent_stop_hook.failed",
                task_id=task.id,
                errors=[r.error for r in outcome.results if not r.success],
            )
