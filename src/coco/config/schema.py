"""
Pydantic models for coco configuration.

Defines all configuration schemas using Pydantic v2 for validation,
defaults, and serialization.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    """Model provider configuration."""

    provider: str = "litellm"
    model: str = "claude-sonnet-4-20250514"
    api_base: str | None = None
    api_key_env: str = "ANTHROPIC_API_KEY"
    timeout: int = 120
    retries: int = 2
    max_tokens: int = Field(
        default=8192,
        ge=1,
        description="Upper bound of output tokens requested per model call.",
    )

    model_config = {"extra": "forbid"}


class AgentConfig(BaseModel):
    """Configuration of the agent turn loop."""

    system_prompt: str = ""
    max_tool_iterations: int = Field(
        default=25,
        ge=1,
        description="Maximum request/stream/dispatch cycles per turn.",
    )
    max_concurrency: int = Field(
        default=5,
        ge=1,
        description="Maximum tool executions in flight at the same time.",
    )
    skip_confirmation: bool = Field(
        default=False,
        description="If True, no tool call asks the user for confirmation.",
    )
    max_history_size: int = Field(
        default=100,
        ge=2,
        description="Messages kept in the session history (oldest are dropped).",
    )

    model_config = {"extra": "forbid"}


class CoordinatorConfig(BaseModel):
    """Multi-agent coordinator configuration."""

    max_parallel_agents: int = Field(default=5, ge=1)
    role_threshold: int = Field(
        default=2,
        ge=0,
        description="Minimum keyword score for a role to beat the default role.",
    )
    default_role: str = "coder"

    model_config = {"extra": "forbid"}


class HookItemConfig(BaseModel):
    """Inline hook definition.

    A command hook runs a shell command with the event context exposed
    as COCO_* environment variables. A prompt hook templates the context
    into a prompt and asks the model for a verdict.

    Protocol for command hooks:
    - Exit 0 = allow (optional JSON on stdout: {"action", "modifiedInput"})
    - Exit 1 during PreToolUse = deny
    - Other  = hook failure
    """

    id: str = Field(description="Unique hook identifier")
    event: Literal[
        "PreToolUse",
        "PostToolUse",
        "Stop",
        "SubagentStop",
        "PreCompact",
        "SessionStart",
        "SessionEnd",
    ]
    type: Literal["command", "prompt"] = "command"
    matcher: str | None = Field(
        default=None,
        description="Glob of tool names ('*' and '?'). None matches every tool.",
    )
    command: str | None = None
    prompt: str | None = None
    timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout in milliseconds (default 30000)",
    )
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    description: str | None = None
    enabled: bool = True

    model_config = {"extra": "forbid", "populate_by_name": True}


class HooksConfig(BaseModel):
    """Hook system configuration."""

    hooks_file: Path | None = Field(
        default=None,
        description="JSON file with hook definitions ({version, hooks}).",
    )
    hooks: list[HookItemConfig] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


class TrustConfig(BaseModel):
    """Persistence of trusted tool patterns."""

    trust_file: Path = Field(
        default_factory=lambda: Path.home() / ".config" / "coco" / "trusted-tools.json",
    )

    model_config = {"extra": "forbid"}


class LoggingConfig(BaseModel):
    """Logging system configuration."""

    level: Literal["debug", "info", "human", "warn", "error"] = "human"
    file: Path | None = None
    verbose: int = 0

    model_config = {"extra": "forbid"}


class WorkspaceConfig(BaseModel):
    """Workspace (project directory) configuration."""

    root: Path = Path(".")
    allowed_paths: list[Path] = Field(
        default_factory=list,
        description="Extra directories the file tools may touch.",
    )

    model_config = {"extra": "forbid"}


class AppConfig(BaseModel):
    """Complete application configuration.

    This is the root of the configuration tree. It combines all sections
    and is the entry point for validation.
    """

    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)

    model_config = {"extra": "forbid"}

    def dump(self) -> dict[str, Any]:
        """Return the configuration as a JSON-compatible dict."""
        return self.model_dump(mode="json", by_alias=True)
