"""
Main CLI for coco using Click.

Thin wrappers: every command builds its collaborators from the loaded
configuration and hands over to the core (turn loop, trust store, hook
registry, coordinator).
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError

from . import __version__
from .agents import AgentCoordinator, AgentExecutor, AgentTask, KeywordRoleClassifier
from .config.loader import load_config
from .config.schema import AppConfig, LoggingConfig
from .core.hooks import HookConfigError, HookRegistry
from .core.loop import TurnCallbacks, TurnOptions, execute_turn
from .core.shutdown import GracefulShutdown
from .core.state import ExecutedToolCall, ToolCall
from .core.trust import TrustedToolSet, TrustStore
from .execution.policies import ConfirmationGate, NoTTYError, TerminalConfirmationPrompt
from .features.sessions import SessionStore
from .llm import LiteLLMProvider
from .logging import configure_logging
from .tools import ToolRegistry, register_builtin_tools

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2
EXIT_CONFIG_ERROR = 3
EXIT_INTERRUPTED = 130


def _config_option(f):
    return click.option(
        "-c",
        "--config",
        type=click.Path(exists=True, path_type=Path),
        help="Path to the YAML configuration file",
    )(f)


def _load(config_path: Path | None, cli_args: dict[str, Any] | None = None) -> AppConfig:
    try:
        return load_config(config_path=config_path, cli_args=cli_args or {})
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


def _load_quiet(config_path: Path | None) -> AppConfig:
    """Load the configuration for a management command.

    Technical logs only reach the log file so stdout keeps the command output.
    """
    app_config = _load(config_path)
    configure_logging(app_config.logging, quiet=True)
    return app_config


@click.group()
@click.version_option(version=__version__, prog_name="coco")
def main() -> None:
    """coco - agentic coding assistant.

    Drives a language model through a tool-calling loop with user
    confirmation, hooks and bounded parallel tool execution.
    """
    pass


# ── run ──────────────────────────────────────────────────────────────────


@main.command()
@click.argument("prompt", required=True)
@_config_option
@click.option("-w", "--workspace", type=click.Path(path_type=Path), help="Project directory")
@click.option("--model", help="Model to use (e.g.: claude-sonnet-4-20250514, gpt-4o)")
@click.option("--api-base", help="Model API base URL")
@click.option("--max-iterations", type=int, help="Maximum tool iterations for the turn")
@click.option("--max-concurrency", type=int, help="Maximum tool calls in flight")
@click.option("-y", "--yes", is_flag=True, help="Skip every confirmation prompt")
@click.option("--hooks-file", type=click.Path(path_type=Path), help="JSON file with hook definitions")
@click.option("--session", "session_id", help="Continue a saved session")
@click.option("--json", "json_output", is_flag=True, help="Print the result as JSON")
@click.option("--quiet", is_flag=True, help="Only print the final result")
@click.option("--log-file", type=click.Path(path_type=Path), help="Write JSON logs to this file")
@click.option("-v", "--verbose", count=True, help="Technical logs (-v info, -vv debug)")
def run(prompt: str, **kwargs) -> None:  # type: ignore
    """Run one agent turn for PROMPT.

    Examples:

        \b
        $ coco run "add input validation to user.py"

        \b
        # No confirmation prompts, JSON result for pipes
        $ coco run "summarize the project" --yes --json | jq .
    """
    config = _load(kwargs.get("config"), kwargs)
    configure_logging(config.logging, json_output=kwargs["json_output"], quiet=kwargs["quiet"])

    try:
        hooks = HookRegistry.from_config(config.hooks)
    except HookConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        exit_code = asyncio.run(_run_turn(prompt, config, hooks, kwargs))
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        exit_code = EXIT_INTERRUPTED
    except NoTTYError as e:
        click.echo(f"Error: {e}", err=True)
        exit_code = EXIT_FAILED
    sys.exit(exit_code)


async def _run_turn(prompt: str, config: AppConfig, hooks: HookRegistry, kwargs: dict[str, Any]) -> int:
    json_output = kwargs["json_output"]
    quiet = kwargs["quiet"]
    shutdown = GracefulShutdown()

    try:
        registry = ToolRegistry()
        access = register_builtin_tools(registry, config.workspace)
        project_path = str(access.root)

        trust_store = TrustStore(config.trust.trust_file)
        interactive = sys.stdin.isatty() and not json_output
        gate = ConfirmationGate(
            TrustedToolSet.initialize(trust_store, project_path),
            prompt=TerminalConfirmationPrompt(access.root) if interactive else None,
            store=trust_store,
            project_path=project_path,
        )

        store = SessionStore(access.root, config.agent.max_history_size, trust_store)
        session = None
        if kwargs.get("session_id"):
            session = store.load(kwargs["session_id"])
            if session is None:
                click.echo(f"Session not found: {kwargs['session_id']}", err=True)
                return EXIT_CONFIG_ERROR
        if session is None:
            session = store.create(config.agent.system_prompt, project_path)

        def on_text(chunk: str) -> None:
            if not json_output and not quiet:
                sys.stdout.write(chunk)
                sys.stdout.flush()

        def on_declined(tool_call: ToolCall, reason: str) -> None:
            if not json_output:
                click.echo(f"  skipped {tool_call.name}: {reason}", err=True)

        def on_tool_end(executed: ExecutedToolCall) -> None:
            if not json_output and not quiet and not executed.result.success:
                click.echo(f"  {executed.name} failed: {executed.result.error}", err=True)

        async def on_path_access_denied(directory: str) -> bool:
            if not interactive:
                return False
            allowed = await asyncio.to_thread(
                click.confirm, f"\n  Allow access to {directory} for this session?", default=False
            )
            if allowed:
                access.authorize(directory)
            return allowed

        result = await execute_turn(
            session,
            prompt,
            LiteLLMProvider(config.llm),
            registry,
            TurnOptions(
                max_iterations=config.agent.max_tool_iterations,
                max_concurrency=config.agent.max_concurrency,
                max_tokens=config.llm.max_tokens,
                signal=shutdown.event,
                skip_confirmation=config.agent.skip_confirmation,
                gate=gate,
                store=store,
                hooks=hooks,
                callbacks=TurnCallbacks(
                    on_text=on_text,
                    on_tool_end=on_tool_end,
                    on_tool_declined=on_declined,
                    on_path_access_denied=on_path_access_denied,
                ),
            ),
        )

        await gate.drain()
        store.save(session)

        if json_output:
            click.echo(json.dumps({"session_id": session.id, **result.to_output_dict()}, indent=2))
        else:
            if quiet:
                click.echo(result.content)
            else:
                sys.stdout.write("\n")
                if result.error:
                    click.echo(result.error, err=True)
            click.echo(
                f"\nStatus: {result.stop_reason.value if result.stop_reason else 'unknown'} | "
                f"Iterations: {result.iterations} | "
                f"Tool calls: {len(result.tool_calls)} | "
                f"Session: {session.id}",
                err=True,
            )

        if shutdown.should_stop:
            return EXIT_INTERRUPTED
        if result.aborted:
            return EXIT_PARTIAL
        return EXIT_SUCCESS if result.success else EXIT_FAILED
    finally:
        shutdown.restore_defaults()


# ── trust ────────────────────────────────────────────────────────────────


@main.group()
def trust() -> None:
    """Manage trusted tool patterns (skip confirmation)."""
    pass


def _project_option(f):
    return click.option(
        "-p",
        "--project",
        type=click.Path(path_type=Path),
        default=Path("."),
        help="Project directory (default: current directory)",
    )(f)


@trust.command("list")
@_config_option
@_project_option
def trust_list(config: Path | None, project: Path) -> None:
    """List trusted patterns for the global and project scopes."""
    app_config = _load_quiet(config)
    patterns = TrustStore(app_config.trust.trust_file).get_all(str(project.resolve()))
    for scope in ("global", "project"):
        click.echo(f"{scope.capitalize()}:")
        if not patterns[scope]:
            click.echo("  (none)")
        for pattern in patterns[scope]:
            click.echo(f"  {pattern}")


@trust.command("add")
@click.argument("pattern")
@_config_option
@_project_option
@click.option("--global", "is_global", is_flag=True, help="Trust in every project")
def trust_add(pattern: str, config: Path | None, project: Path, is_global: bool) -> None:
    """Trust PATTERN (e.g.: read_file, bash:git:status)."""
    app_config = _load_quiet(config)
    TrustStore(app_config.trust.trust_file).save(pattern, str(project.resolve()), is_global)
    click.echo(f"Trusted {pattern} ({'global' if is_global else 'project'})")


@trust.command("remove")
@click.argument("pattern")
@_config_option
@_project_option
@click.option("--global", "is_global", is_flag=True, help="Remove from the global scope")
def trust_remove(pattern: str, config: Path | None, project: Path, is_global: bool) -> None:
    """Stop trusting PATTERN."""
    app_config = _load_quiet(config)
    if not TrustStore(app_config.trust.trust_file).remove(pattern, str(project.resolve()), is_global):
        click.echo(f"Pattern not trusted: {pattern}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Removed {pattern}")


# ── hooks ────────────────────────────────────────────────────────────────


@main.group()
def hooks() -> None:
    """Inspect hook definitions."""
    pass


@hooks.command("list")
@_config_option
def hooks_list(config: Path | None) -> None:
    """List the hooks of the configuration."""
    app_config = _load_quiet(config)
    try:
        registry = HookRegistry.from_config(app_config.hooks)
    except HookConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if registry.size == 0:
        click.echo("No hooks configured.")
        return
    for hook in registry.get_all_hooks():
        state = "" if hook.enabled else " (disabled)"
        matcher = hook.matcher or "*"
        click.echo(f"  {hook.id:<20} {hook.event.value:<13} {hook.type.value:<8} {matcher}{state}")


@hooks.command("validate")
@click.argument("file", type=click.Path(exists=True, path_type=Path))
def hooks_validate(file: Path) -> None:
    """Validate a JSON hooks FILE."""
    configure_logging(LoggingConfig(), quiet=True)
    registry = HookRegistry()
    try:
        registry.load_from_file(file)
    except HookConfigError as e:
        click.echo(f"Invalid hooks file: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    click.echo(f"Valid hooks file: {registry.size} hook(s)")


# ── coordinate ───────────────────────────────────────────────────────────


def load_tasks(path: Path) -> list[AgentTask]:
    """Read tasks from YAML: a list, or a mapping with a ``tasks`` list."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise ValueError("Tasks file must contain a list of tasks")
    return [AgentTask.model_validate(item) for item in data]


@main.command()
@click.argument("tasks_file", type=click.Path(exists=True, path_type=Path))
@_config_option
@click.option("-w", "--workspace", type=click.Path(path_type=Path), help="Project directory")
@click.option("--max-parallel", type=int, help="Maximum agents running at the same time")
@click.option("-y", "--yes", is_flag=True, help="Let agents run tools without confirmation")
@click.option("--json", "json_output", is_flag=True, help="Print the result as JSON")
@click.option("-v", "--verbose", count=True, help="Technical logs (-v info, -vv debug)")
def coordinate(tasks_file: Path, **kwargs) -> None:  # type: ignore
    """Run the tasks of TASKS_FILE as coordinated sub-agents."""
    config = _load(kwargs.get("config"), kwargs)
    configure_logging(config.logging, json_output=kwargs["json_output"])

    try:
        tasks = load_tasks(tasks_file)
    except (ValueError, ValidationError, yaml.YAMLError) as e:
        click.echo(f"Invalid tasks file: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        exit_code = asyncio.run(_coordinate(tasks, config, kwargs))
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        exit_code = EXIT_INTERRUPTED
    except (ValueError, HookConfigError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        exit_code = EXIT_CONFIG_ERROR
    sys.exit(exit_code)


async def _coordinate(tasks: list[AgentTask], config: AppConfig, kwargs: dict[str, Any]) -> int:
    shutdown = GracefulShutdown()
    try:
        registry = ToolRegistry()
        access = register_builtin_tools(registry, config.workspace)
        project_path = str(access.root)
        trust_store = TrustStore(config.trust.trust_file)

        executor = AgentExecutor(
            LiteLLMProvider(config.llm),
            registry,
            project_path=project_path,
            gate=ConfirmationGate(TrustedToolSet.initialize(trust_store, project_path)),
            skip_confirmation=config.agent.skip_confirmation,
            hooks=HookRegistry.from_config(config.hooks),
            max_concurrency=config.agent.max_concurrency,
        )
        coordinator = AgentCoordinator(
            executor,
            classifier=KeywordRoleClassifier(
                threshold=config.coordinator.role_threshold,
                default_role=config.coordinator.default_role,
            ),
            max_parallel_agents=kwargs.get("max_parallel") or config.coordinator.max_parallel_agents,
        )
        result = await coordinator.coordinate(tasks, signal=shutdown.event)

        if kwargs["json_output"]:
            click.echo(json.dumps(result.to_dict(), indent=2))
        else:
            for task_id, agent_result in result.results.items():
                mark = "ok" if agent_result.success else "FAILED"
                click.echo(f"[{mark}] {task_id} ({agent_result.role}, {agent_result.turns} turns)")
                click.echo(f"    {agent_result.output[:500]}")
            for task_id, missing in result.unscheduled.items():
                click.echo(f"[unscheduled] {task_id}: waiting on {', '.join(missing) or '?'}", err=True)
            click.echo(
                f"\nLevels: {result.levels_executed} | "
                f"Parallelism: {result.parallelism_achieved:.2f} | "
                f"Duration: {result.total_duration:.1f}s",
                err=True,
            )

        if shutdown.should_stop:
            return EXIT_INTERRUPTED
        if result.success:
            return EXIT_SUCCESS
        if result.aborted or (result.results and any(r.success for r in result.results.values())):
            return EXIT_PARTIAL
        return EXIT_FAILED
    finally:
        shutdown.restore_defaults()


# ── validate-config ──────────────────────────────────────────────────────


@main.command("validate-config")
@_config_option
def validate_config(config: Path | None) -> None:
    """Validate a YAML configuration file."""
    app_config = _load_quiet(config)
    try:
        hook_registry = HookRegistry.from_config(app_config.hooks)
    except HookConfigError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    click.echo("Valid configuration")
    click.echo(f"  Model: {app_config.llm.model}")
    click.echo(f"  Max iterations: {app_config.agent.max_tool_iterations}")
    click.echo(f"  Max concurrency: {app_config.agent.max_concurrency}")
    click.echo(f"  Hooks: {hook_registry.size}")
