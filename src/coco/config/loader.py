"""
Configuration loader with deep merge.

Precedence order (lowest to highest):
1. Defaults (defined in the Pydantic schemas)
2. YAML file
3. Environment variables
4. CLI arguments

The merge is recursive so every key is preserved at every level.
"""

import os
from pathlib import Path
from typing import Any

import yaml

from .schema import AppConfig


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dictionary merge.

    Args:
        base: Base dictionary
        override: Dictionary whose values override the base

    Returns:
        New merged dictionary. Override wins on leaf conflicts.

    Example:
        >>> deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"b": 99}, "e": 4})
        {'a': {'b': 99, 'c': 2}, 'd': 3, 'e': 4}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file, or None to skip

    Returns:
        Dictionary with the configuration, or an empty dict without a file

    Raises:
        FileNotFoundError: If config_path does not exist
    """
    if not config_path:
        return {}

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def load_env_overrides() -> dict[str, Any]:
    """Load overrides from environment variables.

    Supported variables:
        COCO_MODEL: overrides llm.model
        COCO_API_BASE: overrides llm.api_base
        COCO_LOG_LEVEL: overrides logging.level
        COCO_WORKSPACE: overrides workspace.root
        COCO_MAX_ITERATIONS: overrides agent.max_tool_iterations
    """
    overrides: dict[str, Any] = {}

    if model := os.environ.get("COCO_MODEL"):
        overrides.setdefault("llm", {})["model"] = model

    if api_base := os.environ.get("COCO_API_BASE"):
        overrides.setdefault("llm", {})["api_base"] = api_base

    if log_level := os.environ.get("COCO_LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = log_level.lower()

    if workspace := os.environ.get("COCO_WORKSPACE"):
        overrides.setdefault("workspace", {})["root"] = workspace

    if max_iterations := os.environ.get("COCO_MAX_ITERATIONS"):
        overrides.setdefault("agent", {})["max_tool_iterations"] = int(max_iterations)

    return overrides


def apply_cli_overrides(config_dict: dict[str, Any], cli_args: dict[str, Any]) -> dict[str, Any]:
    """Apply overrides coming from CLI arguments.

    Args:
        config_dict: Base configuration (already merged with YAML and env)
        cli_args: Dictionary with CLI arguments

    Returns:
        Configuration with the CLI overrides applied
    """
    overrides: dict[str, Any] = {}

    if cli_args.get("model"):
        overrides.setdefault("llm", {})["model"] = cli_args["model"]

    if cli_args.get("api_base"):
        overrides.setdefault("llm", {})["api_base"] = cli_args["api_base"]

    if cli_args.get("max_iterations"):
        overrides.setdefault("agent", {})["max_tool_iterations"] = cli_args["max_iterations"]

    if cli_args.get("max_concurrency"):
        overrides.setdefault("agent", {})["max_concurrency"] = cli_args["max_concurrency"]

    if cli_args.get("yes"):
        overrides.setdefault("agent", {})["skip_confirmation"] = True

    if cli_args.get("hooks_file"):
        overrides.setdefault("hooks", {})["hooks_file"] = cli_args["hooks_file"]

    if cli_args.get("workspace"):
        overrides.setdefault("workspace", {})["root"] = cli_args["workspace"]

    if cli_args.get("log_file"):
        overrides.setdefault("logging", {})["file"] = cli_args["log_file"]

    if cli_args.get("verbose") is not None:
        overrides.setdefault("logging", {})["verbose"] = cli_args["verbose"]

    return deep_merge(config_dict, overrides)


def load_config(
    config_path: Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> AppConfig:
    """Load and validate the complete application configuration.

    Args:
        config_path: Path to the YAML configuration file
        cli_args: Dictionary with CLI arguments

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If config_path does not exist
        pydantic.ValidationError: If the final configuration is invalid
    """
    cli_args = cli_args or {}

    yaml_config = load_yaml_config(config_path)
    merged = deep_merge(yaml_config, load_env_overrides())
    merged = apply_cli_overrides(merged, cli_args)

    # Pydantic fills in every default
    return AppConfig(**merged)
