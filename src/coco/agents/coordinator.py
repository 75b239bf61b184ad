"""
Agent Coordinator - runs dependent tasks level by level.

Tasks are grouped into execution levels by repeated passes: a level is
every pending task whose dependencies are all completed. Levels run
sequentially; inside a level tasks run in concurrent batches of at most
``max_parallel_agents``.

A pass that schedules nothing (cycle or unknown dependency) stops the
scheduling: the levels computed so far still run, and the blocked tasks
are reported in ``CoordinationResult.unscheduled``.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from ..logging.human import HumanLog
from .executor import AgentExecutor, AgentResult, AgentTask
from .roles import AgentRole, KeywordRoleClassifier, RoleClassifier, get_role

logger = structlog.get_logger()


@dataclass
class CoordinationResult:
    results: dict[str, AgentResult] = field(default_factory=dict)
    total_duration: float = 0.0
    levels_executed: int = 0
    parallelism_achieved: float = 0.0
    levels: list[list[str]] = field(default_factory=list)
    unscheduled: dict[str, list[str]] = field(default_factory=dict)
    aborted: bool = False

    @property
    def success(self) -> bool:
        return (
            not self.unscheduled
            and not self.aborted
            and all(r.success for r in self.results.values())
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": {task_id: r.to_dict() for task_id, r in self.results.items()},
            "total_duration": round(self.total_duration, 3),
            "levels_executed": self.levels_executed,
            "parallelism_achieved": self.parallelism_achieved,
            "levels": self.levels,
            "unscheduled": self.unscheduled,
            "aborted": self.aborted,
        }


def build_dependency_graph(tasks: list[AgentTask]) -> dict[str, set[str]]:
    """Map every task id to the ids it depends on.

    Raises:
        ValueError: If two tasks share an id
    """
    graph: dict[str, set[str]] = {}
    for task in tasks:
        if task.id in graph:
            raise ValueError(f"Duplicate task id '{task.id}'")
        graph[task.id] = set(task.dependencies)
    return graph


def compute_levels(tasks: list[AgentTask]) -> tuple[list[list[AgentTask]], dict[str, list[str]]]:
    """Group tasks into execution levels.

    Returns:
        (levels, unscheduled) where ``unscheduled`` maps every task that
        could not be placed to its unsatisfied dependencies.
    """
    graph = build_dependency_graph(tasks)
    by_id = {task.id: task for task in tasks}
    completed: set[str] = set()
    levels: list[list[AgentTask]] = []

    while len(completed) < len(graph):
        level = [
            by_id[task_id]
            for task_id, deps in graph.items()
            if task_id not in completed and deps <= completed
        ]
        if not level:
            break
        completed.update(task.id for task in level)
        levels.append(level)

    unscheduled = {
        task_id: sorted(deps - completed)
        for task_id, deps in graph.items()
        if task_id not in completed
    }
    return levels, unscheduled


def build_context(task: AgentTask, results: dict[str, AgentResult]) -> dict[str, Any]:
    """Task context plus ``dependency_<id>`` entries for finished dependencies."""
    context = dict(task.context)
    for dep_id in task.dependencies:
        dep = results.get(dep_id)
        if dep is not None:
            context[f"dependency_{dep_id}"] = {"output": dep.output, "success": dep.success}
    return context


class AgentCoordinator:
    """Schedules tasks over an AgentExecutor.

    Args:
        executor: Runs one task
        classifier: Routes a task description to a role
        roles: Role definitions by name (default: built-in roles)
        max_parallel_agents: Batch size inside a level
    """

    def __init__(
        self,
        executor: AgentExecutor,
        classifier: RoleClassifier | None = None,
        roles: dict[str, AgentRole] | None = None,
        max_parallel_agents: int = 5,
    ) -> None:
        self.executor = executor
        self.classifier = classifier or KeywordRoleClassifier()
        self.roles = roles
        self.max_parallel_agents = max_parallel_agents
        self.log = logger.bind(component="coordinator")
        self.hlog = HumanLog(self.log)

    def role_for(self, task: AgentTask) -> AgentRole:
        name = self.classifier.classify(task.description)
        if self.roles is not None and name in self.roles:
            return self.roles[name]
        return get_role(name)

    async def coordinate(
        self,
        tasks: list[AgentTask],
        signal: asyncio.Event | None = None,
    ) -> CoordinationResult:
        start = time.monotonic()
        levels, unscheduled = compute_levels(tasks)
        outcome = CoordinationResult(
            levels=[[task.id for task in level] for level in levels],
            unscheduled=unscheduled,
        )

        if unscheduled:
            self.log.warning("coordinator.unschedulable", blocked=unscheduled)
            self.hlog.unschedulable(sorted(unscheduled))

        executed = 0
        for index, level in enumerate(levels, start=1):
            if signal is not None and signal.is_set():
                outcome.aborted = True
                break

            self.log.info("coordinator.level.start", level_index=index, total=len(levels), tasks=len(level))
            self.hlog.level_start(index, [task.id for task in level])

            for offset in range(0, len(level), self.max_parallel_agents):
                if signal is not None and signal.is_set():
                    outcome.aborted = True
                    break
                batch = level[offset:offset + self.max_parallel_agents]
                batch_results = await asyncio.gather(
                    *(self._run_task(task, outcome.results, signal) for task in batch)
                )
                for task, result in zip(batch, batch_results):
                    outcome.results[task.id] = result
                    executed += 1
                    self.hlog.task_complete(task.id, result.role or "?", result.success)

            outcome.levels_executed += 1
            if outcome.aborted:
                break

        outcome.parallelism_achieved = (
            executed / outcome.levels_executed if outcome.levels_executed else 0.0
        )
        outcome.total_duration = time.monotonic() - start

        self.log.info(
            "coordinator.complete",
            levels=outcome.levels_executed,
            tasks=executed,
            parallelism=round(outcome.parallelism_achieved, 2),
            aborted=outcome.aborted,
        )
        self.hlog.coordination_complete(outcome.levels_executed, outcome.parallelism_achieved)
        return outcome

    async def _run_task(
        self,
        task: AgentTask,
        results: dict[str, AgentResult],
        signal: asyncio.Event | None,
    ) -> AgentResult:
        role = self.role_for(task)
        contextual = task.model_copy(update={"context": build_context(task, results)})
        return await self.executor.execute(role, contextual, signal)
