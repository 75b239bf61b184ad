"""
Tests for multi-agent coordination.

Covers:
- Role routing (keyword scores, threshold fallback, role definitions)
- compute_levels (dependency levels, cycles and unknown dependencies)
- AgentCoordinator (level order, dependency context, batching,
  parallelism metric, cancellation)
- AgentExecutor (prompt, role tool allow-list, error and budget outcomes)
- Level progress rendering
"""

import asyncio
import json
import logging
from unittest.mock import patch

import pytest
import structlog
from pydantic import BaseModel, ValidationError

from coco.agents import (
    AGENT_ROLES,
    AgentCoordinator,
    AgentExecutor,
    AgentResult,
    AgentRole,
    AgentTask,
    KeywordRoleClassifier,
    build_context,
    build_task_prompt,
    compute_levels,
    get_role,
)
from coco.agents.executor import MAX_TURNS_MESSAGE
from coco.config.schema import LoggingConfig
from coco.core.hooks import HookDefinition, HookEvent, HookRegistry
from coco.llm.provider import StreamEvent
from coco.logging import HumanLog, configure_logging
from coco.tools import BaseTool, ToolRegistry


def task(id: str, description: str = "do something", deps: list[str] | None = None, **context) -> AgentTask:
    return AgentTask(id=id, description=description, dependencies=deps or [], context=context)


class RecordingExecutor:
    """AgentExecutor stand-in that records what it ran."""

    def __init__(self, delay: float = 0.0, fail: set[str] | None = None, on_run=None) -> None:
        self.delay = delay
        self.fail = fail or set()
        self.on_run = on_run
        self.order: list[str] = []
        self.tasks: dict[str, AgentTask] = {}
        self.roles: dict[str, str] = {}
        self.prompts: dict[str, str] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, role, task, signal=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        self.order.append(task.id)
        self.tasks[task.id] = task
        self.roles[task.id] = role.name
        self.prompts[task.id] = role.system_prompt
        if self.on_run:
            self.on_run(task)
        return AgentResult(output=f"{task.id} done", success=task.id not in self.fail, role=role.name)


# ── Roles ─────────────────────────────────────────────────────────────────


class TestRoleClassification:
    @pytest.fixture
    def classifier(self) -> KeywordRoleClassifier:
        return KeywordRoleClassifier()

    @pytest.mark.parametrize(
        "description, role",
        [
            ("please optimize and refactor this function", "optimizer"),
            ("write unit tests for the parser", "tester"),
            ("review the pull request for quality", "reviewer"),
            ("investigate and analyze the crash", "researcher"),
            ("plan and decompose the migration", "planner"),
        ],
    )
    def test_routing(self, classifier, description, role):
        assert classifier.classify(description) == role

    def test_no_keywords_falls_back_to_coder(self, classifier):
        assert classifier.classify("add a login form") == "coder"

    def test_weak_match_below_threshold(self, classifier):
        assert classifier.scores("clean the login form")["optimizer"] == 1
        assert classifier.classify("clean the login form") == "coder"

    def test_custom_threshold_and_default(self):
        classifier = KeywordRoleClassifier(threshold=1, default_role="planner")
        assert classifier.classify("clean the login form") == "optimizer"
        assert classifier.classify("add a login form") == "planner"

    def test_role_definitions(self):
        assert AGENT_ROLES["reviewer"].allowed_tools == ("read_file",)
        assert AGENT_ROLES["researcher"].max_turns == 20
        assert get_role("unknown").name == "coder"


# ── Levels ────────────────────────────────────────────────────────────────


class TestComputeLevels:
    def test_diamond(self):
        levels, unscheduled = compute_levels(
            [task("A"), task("B", deps=["A"]), task("C", deps=["A"]), task("D", deps=["B", "C"])]
        )
        assert [[t.id for t in level] for level in levels] == [["A"], ["B", "C"], ["D"]]
        assert unscheduled == {}

    def test_cycle_is_unscheduled(self):
        levels, unscheduled = compute_levels([task("X", deps=["Y"]), task("Y", deps=["X"]), task("Z")])
        assert [[t.id for t in level] for level in levels] == [["Z"]]
        assert unscheduled == {"X": ["Y"], "Y": ["X"]}

    def test_unknown_dependency_is_unscheduled(self):
        levels, unscheduled = compute_levels([task("T", deps=["ghost"]), task("U", deps=["T"])])
        assert levels == []
        assert unscheduled == {"T": ["ghost"], "U": ["T"]}

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="Duplicate task id 'A'"):
            compute_levels([task("A"), task("A")])

    def test_empty_task_id_rejected(self):
        with pytest.raises(ValidationError):
            AgentTask(id="", description="x")


class TestContext:
    def test_dependency_results_added(self):
        results = {"A": AgentResult(output="found it", success=True)}
        context = build_context(task("B", deps=["A", "missing"], hint="x"), results)
        assert context == {"hint": "x", "dependency_A": {"output": "found it", "success": True}}

    def test_task_prompt(self):
        prompt = build_task_prompt(task("B", "Fix the parser", extra=1))
        assert prompt.startswith("Task: Fix the parser\n")
        assert "Context:\n" + json.dumps({"extra": 1}, indent=2) in prompt
        assert prompt.endswith("provide a summary of what you accomplished.")

    def test_task_prompt_without_context(self):
        assert "Context" not in build_task_prompt(task("B", "Fix the parser"))


# ── Coordinator ───────────────────────────────────────────────────────────


class TestCoordinator:
    async def test_levels_run_in_order(self):
        executor = RecordingExecutor()
        coordinator = AgentCoordinator(executor)
        tasks = [task("D", deps=["B", "C"]), task("B", deps=["A"]), task("C", deps=["A"]), task("A")]

        result = await coordinator.coordinate(tasks)

        assert result.success
        assert result.levels == [["A"], ["B", "C"], ["D"]]
        assert result.levels_executed == 3
        assert result.parallelism_achieved == pytest.approx(4 / 3)
        assert executor.order[0] == "A"
        assert executor.order[-1] == "D"
        assert set(result.results) == {"A", "B", "C", "D"}

    async def test_dependency_context_is_passed(self):
        executor = RecordingExecutor()
        await AgentCoordinator(executor).coordinate([task("A"), task("B", deps=["A"], note="n")])

        context = executor.tasks["B"].context
        assert context["dependency_A"] == {"output": "A done", "success": True}
        assert context["note"] == "n"

    async def test_roles_are_routed(self):
        executor = RecordingExecutor()
        await AgentCoordinator(executor).coordinate(
            [task("opt", "optimize and refactor the cache"), task("misc", "add a button")]
        )
        assert executor.roles == {"opt": "optimizer", "misc": "coder"}

    async def test_custom_roles(self):
        executor = RecordingExecutor()
        roles = {"coder": AgentRole(name="coder", system_prompt="custom", allowed_tools=(), max_turns=1)}

        await AgentCoordinator(executor, roles=roles).coordinate([task("A", "add a button")])

        assert executor.prompts["A"] == "custom"

    async def test_batches_respect_max_parallel(self):
        executor = RecordingExecutor(delay=0.02)
        tasks = [task(str(i)) for i in range(5)]

        result = await AgentCoordinator(executor, max_parallel_agents=2).coordinate(tasks)

        assert executor.max_in_flight == 2
        assert result.levels_executed == 1
        assert result.parallelism_achieved == 5

    async def test_level_runs_concurrently(self):
        executor = RecordingExecutor(delay=0.02)
        await AgentCoordinator(executor).coordinate([task("A"), task("B"), task("C")])
        assert executor.max_in_flight == 3

    async def test_failed_dependency_still_runs_dependents(self):
        executor = RecordingExecutor(fail={"A"})

        result = await AgentCoordinator(executor).coordinate([task("A"), task("B", deps=["A"])])

        assert not result.success
        assert executor.tasks["B"].context["dependency_A"]["success"] is False

    async def test_unscheduled_tasks_reported(self):
        executor = RecordingExecutor()

        result = await AgentCoordinator(executor).coordinate([task("X", deps=["Y"]), task("Y", deps=["X"]), task("Z")])

        assert executor.order == ["Z"]
        assert result.unscheduled == {"X": ["Y"], "Y": ["X"]}
        assert not result.success
        assert result.to_dict()["unscheduled"] == {"X": ["Y"], "Y": ["X"]}

    async def test_cancel_before_start(self):
        signal = asyncio.Event()
        signal.set()
        executor = RecordingExecutor()

        result = await AgentCoordinator(executor).coordinate([task("A")], signal)

        assert result.aborted
        assert result.levels_executed == 0
        assert result.parallelism_achieved == 0.0
        assert executor.order == []

    async def test_cancel_between_levels(self):
        signal = asyncio.Event()
        executor = RecordingExecutor(on_run=lambda t: signal.set())

        result = await AgentCoordinator(executor).coordinate([task("A"), task("B", deps=["A"])], signal)

        assert result.aborted
        assert executor.order == ["A"]
        assert result.levels_executed == 1
        assert not result.success


# ── Agent executor ────────────────────────────────────────────────────────


class ReadArgs(BaseModel):
    path: str


class FakeReadTool(BaseTool):
    name = "read_file"
    description = "Read a file"
    args_model = ReadArgs

    async def execute(self, args: ReadArgs, signal=None):
        return f"contents of {args.path}"


class FakeShellTool(BaseTool):
    name = "deploy"
    description = "Not allowed for any role"
    args_model = ReadArgs

    async def execute(self, args: ReadArgs, signal=None):
        return "deployed"


class ScriptedProvider:
    max_tokens = 1024

    def __init__(self, *responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def stream(self, messages, tools, max_tokens=None):
        self.calls.append({"messages": messages, "tools": tools})
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        for event in self.responses[index]:
            if isinstance(event, Exception):
                raise event
            yield event

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


def read_call(id: str, path: str) -> list[StreamEvent]:
    return [StreamEvent.tool_start(id, "read_file"), StreamEvent.tool_end(id, "read_file", {"path": path})]


@pytest.fixture
def tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(FakeReadTool())
    registry.register(FakeShellTool())
    return registry


class TestAgentExecutor:
    async def test_successful_run(self, tool_registry):
        provider = ScriptedProvider(
            [*read_call("r1", "a.py"), *read_call("r2", "b.py"), StreamEvent.done("tool_use")],
            [StreamEvent.text_delta("Both files read."), StreamEvent.done()],
        )
        executor = AgentExecutor(provider, tool_registry, project_path="/proj")

        result = await executor.execute(AGENT_ROLES["reviewer"], task("T", "Review a.py", focus="style"))

        assert result.success
        assert result.output == "Both files read."
        assert result.turns == 2
        assert result.tools_used == ["read_file"]
        assert result.role == "reviewer"
        assert result.tokens_used > 0

        first = provider.calls[0]
        assert first["messages"][0] == {"role": "system", "content": AGENT_ROLES["reviewer"].system_prompt}
        assert first["messages"][1]["content"].startswith("Task: Review a.py\n")
        assert '"focus": "style"' in first["messages"][1]["content"]
        assert [t["name"] for t in first["tools"]] == ["read_file"]

    async def test_provider_error(self, tool_registry):
        provider = ScriptedProvider([RuntimeError("overloaded")])

        result = await AgentExecutor(provider, tool_registry).execute(get_role("coder"), task("T"))

        assert not result.success
        assert result.output == "Agent error: Error during iteration 1: overloaded"

    async def test_turn_budget_exhausted(self, tool_registry):
        provider = ScriptedProvider([*read_call("r1", "a.py"), StreamEvent.done("tool_use")])
        role = AgentRole(name="coder", system_prompt="code", allowed_tools=("read_file",), max_turns=2)

        result = await AgentExecutor(provider, tool_registry).execute(role, task("T"))

        assert not result.success
        assert result.output == MAX_TURNS_MESSAGE
        assert result.turns == 2

    async def test_unexpected_exception(self, tool_registry):
        provider = ScriptedProvider([StreamEvent.done()])
        with patch("coco.agents.executor.execute_turn", side_effect=RuntimeError("kaboom")):
            result = await AgentExecutor(provider, tool_registry).execute(get_role("coder"), task("T"))

        assert not result.success
        assert result.output == "Agent error: kaboom"
        assert result.role == "coder"

    async def test_cancelled_run_is_not_success(self, tool_registry):
        signal = asyncio.Event()
        signal.set()
        provider = ScriptedProvider([StreamEvent.done()])

        result = await AgentExecutor(provider, tool_registry).execute(get_role("coder"), task("T"), signal)

        assert not result.success
        assert provider.calls == []

    async def test_subagent_stop_hooks(self, tool_registry, tmp_path):
        hooks = HookRegistry()
        hooks.register(
            HookDefinition(
                id="notify",
                event=HookEvent.SUBAGENT_STOP,
                command='echo "$COCO_META_TASK_ID $COCO_META_ROLE $COCO_META_SUCCESS" > done.txt',
            )
        )
        provider = ScriptedProvider([StreamEvent.text_delta("ok"), StreamEvent.done()])
        executor = AgentExecutor(provider, tool_registry, project_path=str(tmp_path), hooks=hooks)

        await executor.execute(get_role("planner"), task("T1"))

        assert (tmp_path / "done.txt").read_text().strip() == "T1 planner true"


# ── Progress log ──────────────────────────────────────────────────────────


class TestProgressLog:
    @pytest.fixture
    def human_logging(self, capsys):
        configure_logging(LoggingConfig())
        yield
        logging.root.handlers.clear()

    def test_level_start_is_rendered(self, human_logging, capsys):
        HumanLog(structlog.get_logger()).level_start(1, ["B", "C"])

        assert "Level 2 -> 2 task(s): B, C" in capsys.readouterr().err
