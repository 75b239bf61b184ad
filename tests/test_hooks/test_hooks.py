"""
Tests for the hook pipeline.

Covers:
- HookDefinition (aliases, validation)
- match_tool_pattern (glob and exact)
- HookRegistry (register, matching, enable/disable, update, file load/save)
- HookExecutor command hooks (exit codes, JSON verdicts, timeout, output cap, env vars)
- HookExecutor prompt hooks (templating, no evaluator, model verdicts)
- Chain semantics (deny stops, continue_on_error, last modify wins)
"""

import json
from pathlib import Path

import pytest

from coco.config.schema import HookItemConfig, HooksConfig
from coco.core.hooks import (
    DuplicateHookError,
    HookAction,
    HookConfigError,
    HookContext,
    HookDefinition,
    HookEvent,
    HookExecutor,
    HookNotFoundError,
    HookRegistry,
    HookType,
    MAX_OUTPUT_SIZE,
    match_tool_pattern,
)
from coco.llm.provider import StreamEvent


# ── Fixtures ──────────────────────────────────────────────────────────────


def command_hook(id: str, command: str, event: HookEvent = HookEvent.PRE_TOOL_USE, **kwargs) -> HookDefinition:
    return HookDefinition(id=id, event=event, type=HookType.COMMAND, command=command, **kwargs)


def pre_context(tool_name: str = "bash_exec", tool_input: dict | None = None, **kwargs) -> HookContext:
    return HookContext(
        event=HookEvent.PRE_TOOL_USE,
        session_id="sess-1",
        project_path="/proj",
        tool_name=tool_name,
        tool_input=tool_input if tool_input is not None else {"command": "ls"},
        **kwargs,
    )


@pytest.fixture
def registry() -> HookRegistry:
    return HookRegistry()


@pytest.fixture
def executor(tmp_path: Path) -> HookExecutor:
    return HookExecutor(cwd=tmp_path)


class FakeEvaluator:
    """Model stand-in that streams a fixed answer in two deltas."""

    max_tokens = 1024

    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.messages: list[dict] = []

    async def stream(self, messages, tools, max_tokens=None):
        self.messages = messages
        half = len(self.answer) // 2
        yield StreamEvent.text_delta(self.answer[:half])
        yield StreamEvent.text_delta(self.answer[half:])
        yield StreamEvent.done("end_turn")

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


# ── Definitions and matching ──────────────────────────────────────────────


class TestHookDefinition:
    def test_alias_and_defaults(self):
        hook = HookDefinition.model_validate(
            {"id": "h", "event": "PreToolUse", "command": "true", "continueOnError": True}
        )
        assert hook.continue_on_error is True
        assert hook.type is HookType.COMMAND
        assert hook.enabled is True

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            HookDefinition.model_validate({"id": "h", "event": "BeforeEverything", "command": "true"})

    def test_extra_fields_rejected(self):
        with pytest.raises(ValueError):
            HookDefinition.model_validate({"id": "h", "event": "Stop", "command": "true", "bogus": 1})


class TestMatchToolPattern:
    @pytest.mark.parametrize(
        "pattern, value, expected",
        [
            ("bash_exec", "bash_exec", True),
            ("bash", "bash_exec", False),
            ("*_file", "write_file", True),
            ("*_file", "bash_exec", False),
            ("read_fil?", "read_file", True),
            ("*", "anything", True),
            ("a.b", "axb", False),
        ],
    )
    def test_patterns(self, pattern, value, expected):
        assert match_tool_pattern(pattern, value) is expected


# ── Registry ──────────────────────────────────────────────────────────────


class TestHookRegistry:
    def test_register_and_order(self, registry):
        registry.register(command_hook("a", "true"))
        registry.register(command_hook("b", "true"))
        registry.register(command_hook("c", "true", event=HookEvent.STOP))

        assert [h.id for h in registry.get_hooks_for_event(HookEvent.PRE_TOOL_USE)] == ["a", "b"]
        assert registry.has_hooks_for_event(HookEvent.STOP)
        assert not registry.has_hooks_for_event(HookEvent.SESSION_END)
        assert registry.size == 3

    def test_duplicate_rejected(self, registry):
        registry.register(command_hook("a", "true"))
        with pytest.raises(DuplicateHookError):
            registry.register(command_hook("a", "false"))

    def test_unregister(self, registry):
        registry.register(command_hook("a", "true"))
        assert registry.unregister("a") is True
        assert registry.unregister("a") is False
        assert registry.get_hooks_for_event(HookEvent.PRE_TOOL_USE) == []

    def test_matching_respects_matcher_and_enabled(self, registry):
        registry.register(command_hook("any", "true"))
        registry.register(command_hook("files", "true", matcher="*_file"))
        registry.register(command_hook("off", "true", enabled=False))

        assert [h.id for h in registry.get_matching_hooks(HookEvent.PRE_TOOL_USE, "write_file")] == ["any", "files"]
        assert [h.id for h in registry.get_matching_hooks(HookEvent.PRE_TOOL_USE, "bash_exec")] == ["any"]
        # No tool name in context: matchers are ignored
        assert [h.id for h in registry.get_matching_hooks(HookEvent.PRE_TOOL_USE)] == ["any", "files"]

    def test_set_enabled(self, registry):
        registry.register(command_hook("a", "true"))
        registry.set_enabled("a", False)
        assert registry.get_matching_hooks(HookEvent.PRE_TOOL_USE, "x") == []
        with pytest.raises(HookNotFoundError):
            registry.set_enabled("missing", True)

    def test_update_moves_event(self, registry):
        registry.register(command_hook("a", "true"))
        registry.register(command_hook("b", "true", event=HookEvent.STOP))

        assert registry.update_hook("a", event=HookEvent.STOP, id="ignored")
        assert [h.id for h in registry.get_hooks_for_event(HookEvent.STOP)] == ["b", "a"]
        assert registry.get_hook("a").event is HookEvent.STOP
        assert registry.update_hook("missing", enabled=False) is False

    def test_save_and_load_round_trip(self, registry, tmp_path):
        registry.register(command_hook("a", "echo hi", matcher="bash_exec", continue_on_error=True))
        registry.register(
            HookDefinition(id="p", event=HookEvent.STOP, type=HookType.PROMPT, prompt="Judge {{event}}")
        )
        path = tmp_path / "hooks" / "hooks.json"
        registry.save_to_file(path)

        raw = json.loads(path.read_text())
        assert raw["version"] == 1
        assert raw["hooks"][0]["continueOnError"] is True
        assert "prompt" not in raw["hooks"][0]

        loaded = HookRegistry()
        loaded.load_from_file(path)
        assert [h.id for h in loaded.get_all_hooks()] == ["a", "p"]
        assert loaded.get_hook("a").matcher == "bash_exec"

    def test_load_missing_file_is_noop(self, registry, tmp_path):
        registry.register(command_hook("a", "true"))
        registry.load_from_file(tmp_path / "nope.json")
        assert registry.size == 1

    @pytest.mark.parametrize(
        "document, message",
        [
            ({"hooks": []}, "missing version"),
            ({"version": 1, "hooks": {}}, "hooks must be an array"),
            ({"version": 1, "hooks": [{"id": "a", "event": "Stop", "type": "command"}]}, "must have a command"),
            ({"version": 1, "hooks": [{"id": "a", "event": "Stop", "type": "prompt"}]}, "must have a prompt"),
            ({"version": 1, "hooks": [{"id": "a", "event": "Nope", "command": "x"}]}, "Invalid hook definition"),
        ],
    )
    def test_load_invalid_documents(self, registry, tmp_path, document, message):
        path = tmp_path / "hooks.json"
        path.write_text(json.dumps(document))
        with pytest.raises(HookConfigError, match=message):
            registry.load_from_file(path)

    def test_load_invalid_json(self, registry, tmp_path):
        path = tmp_path / "hooks.json"
        path.write_text("{not json")
        with pytest.raises(HookConfigError):
            registry.load_from_file(path)

    def test_from_config(self, tmp_path):
        path = tmp_path / "hooks.json"
        path.write_text(json.dumps({"version": 1, "hooks": [{"id": "file", "event": "Stop", "command": "true"}]}))
        config = HooksConfig(
            hooks_file=str(path),
            hooks=[HookItemConfig(id="inline", event="PreToolUse", command="true")],
        )

        registry = HookRegistry.from_config(config)

        assert [h.id for h in registry.get_all_hooks()] == ["file", "inline"]


# ── Command hooks ─────────────────────────────────────────────────────────


class TestCommandHooks:
    async def test_exit_zero_allows(self, registry, executor):
        registry.register(command_hook("ok", "echo checked"))
        result = await executor.execute_hooks(registry, pre_context())

        assert result.should_continue
        assert result.all_succeeded
        assert result.results[0].output == "checked"
        assert result.results[0].exit_code == 0
        assert result.results[0].action is None

    async def test_exit_one_denies_pre_tool_use(self, registry, executor):
        registry.register(command_hook("guard", "echo 'no rm here' >&2; exit 1"))
        registry.register(command_hook("never", "echo second"))

        result = await executor.execute_hooks(registry, pre_context())

        assert not result.should_continue
        assert len(result.results) == 1
        assert result.results[0].action is HookAction.DENY
        assert result.denial_reason == "no rm here"

    async def test_exit_one_on_post_tool_use_is_failure(self, registry, executor):
        registry.register(command_hook("post", "exit 1", event=HookEvent.POST_TOOL_USE))
        context = HookContext(event=HookEvent.POST_TOOL_USE, tool_name="bash_exec")

        result = await executor.execute_hooks(registry, context)

        assert result.results[0].action is None
        assert result.results[0].error == "Hook exited with code 1"
        assert not result.should_continue

    async def test_other_exit_code_fails(self, registry, executor):
        registry.register(command_hook("broken", "exit 2"))
        result = await executor.execute_hooks(registry, pre_context())

        assert not result.all_succeeded
        assert not result.should_continue
        assert result.results[0].exit_code == 2

    async def test_continue_on_error(self, registry, executor):
        registry.register(command_hook("flaky", "exit 3", continue_on_error=True))
        registry.register(command_hook("next", "echo ran"))

        result = await executor.execute_hooks(registry, pre_context())

        assert result.should_continue
        assert not result.all_succeeded
        assert [r.hook_id for r in result.results] == ["flaky", "next"]

    async def test_json_deny_verdict(self, registry, executor):
        registry.register(command_hook("json", """echo '{"action": "deny"}'"""))
        result = await executor.execute_hooks(registry, pre_context())

        assert not result.should_continue
        assert result.results[0].success

    async def test_modify_last_one_wins(self, registry, executor):
        registry.register(
            command_hook("m1", """echo '{"action": "modify", "modifiedInput": {"command": "ls -1"}}'""")
        )
        registry.register(
            command_hook("m2", """echo '{"action": "modify", "modifiedInput": {"command": "ls -a"}}'""")
        )

        result = await executor.execute_hooks(registry, pre_context())

        assert result.should_continue
        assert result.modified_input == {"command": "ls -a"}

    async def test_modify_without_input_is_ignored(self, registry, executor):
        registry.register(command_hook("m", """echo '{"action": "modify"}'"""))
        result = await executor.execute_hooks(registry, pre_context())

        assert result.modified_input is None
        assert result.results[0].action is None

    async def test_timeout(self, registry, executor):
        registry.register(command_hook("slow", "sleep 5", timeout=100))
        result = await executor.execute_hooks(registry, pre_context())

        assert result.results[0].error == "Hook timed out after 100ms"
        assert not result.should_continue

    async def test_output_over_limit_fails(self, registry, executor):
        registry.register(command_hook("noisy", "head -c 100000 /dev/zero", timeout=10_000))
        result = await executor.execute_hooks(registry, pre_context())

        [hook_result] = result.results
        assert not hook_result.success
        assert hook_result.error == f"Hook output exceeded {MAX_OUTPUT_SIZE} bytes"
        assert not result.should_continue

    async def test_environment_variables(self, registry, executor):
        registry.register(
            command_hook(
                "env",
                'echo "$COCO_HOOK_EVENT|$COCO_TOOL_NAME|$COCO_SESSION_ID|$COCO_TOOL_INPUT|$COCO_META_RUN_ID"',
            )
        )
        context = pre_context(tool_input={"command": "ls"}, metadata={"run-id": "r1"})

        result = await executor.execute_hooks(registry, context)

        assert result.results[0].output == 'PreToolUse|bash_exec|sess-1|{"command": "ls"}|r1'

    async def test_runs_in_cwd(self, registry, tmp_path):
        registry.register(command_hook("pwd", "pwd"))
        result = await HookExecutor(cwd=tmp_path).execute_hooks(registry, pre_context())
        assert Path(result.results[0].output).resolve() == tmp_path.resolve()

    async def test_no_matching_hooks(self, registry, executor):
        registry.register(command_hook("files", "exit 1", matcher="*_file"))
        result = await executor.execute_hooks(registry, pre_context(tool_name="bash_exec"))

        assert result.results == []
        assert result.should_continue
        assert result.denial_reason is None


# ── Prompt hooks ──────────────────────────────────────────────────────────


def prompt_hook(id: str = "judge", prompt: str = "Is {{toolName}} with {{toolInput}} safe?") -> HookDefinition:
    return HookDefinition(id=id, event=HookEvent.PRE_TOOL_USE, type=HookType.PROMPT, prompt=prompt)


class TestPromptHooks:
    def test_format_prompt(self, executor):
        text = executor.format_prompt(
            "{{event}} {{toolName}} {{toolResult}} {{sessionId}} {{projectPath}} {{unknown}}",
            pre_context(),
        )
        assert text == "PreToolUse bash_exec N/A sess-1 /proj {{unknown}}"

    async def test_without_evaluator_allows(self, registry, executor):
        registry.register(prompt_hook())
        result = await executor.execute_hooks(registry, pre_context())

        assert result.should_continue
        assert result.results[0].action is HookAction.ALLOW
        assert result.results[0].output.startswith("Prompt evaluated: Is bash_exec")

    async def test_evaluator_deny(self, registry, tmp_path):
        evaluator = FakeEvaluator('Verdict: {"action": "deny", "message": "too risky"}')
        registry.register(prompt_hook())

        result = await HookExecutor(cwd=tmp_path, evaluator=evaluator).execute_hooks(registry, pre_context())

        assert not result.should_continue
        assert result.results[0].action is HookAction.DENY
        assert evaluator.messages[0]["role"] == "system"
        assert '"command": "ls"' in evaluator.messages[1]["content"]

    async def test_evaluator_modify(self, registry, tmp_path):
        evaluator = FakeEvaluator('{"action": "modify", "modifiedInput": {"command": "ls -l"}}')
        registry.register(prompt_hook())

        result = await HookExecutor(cwd=tmp_path, evaluator=evaluator).execute_hooks(registry, pre_context())

        assert result.modified_input == {"command": "ls -l"}

    async def test_evaluator_without_verdict_fails(self, registry, tmp_path):
        registry.register(prompt_hook())
        executor = HookExecutor(cwd=tmp_path, evaluator=FakeEvaluator("Looks fine to me."))

        result = await executor.execute_hooks(registry, pre_context())

        assert result.results[0].error == "Prompt hook returned no valid verdict"
        assert not result.should_continue
