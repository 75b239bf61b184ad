"""
Configuration module - Pydantic schemas and the layered loader.
"""

from .loader import deep_merge, load_config
from .schema import (
    AgentConfig,
    AppConfig,
    CoordinatorConfig,
    HookItemConfig,
    HooksConfig,
    LLMConfig,
    LoggingConfig,
    TrustConfig,
    WorkspaceConfig,
)

__all__ = [
    "AgentConfig",
    "AppConfig",
    "CoordinatorConfig",
    "HookItemConfig",
    "HooksConfig",
    "LLMConfig",
    "LoggingConfig",
    "TrustConfig",
    "WorkspaceConfig",
    "deep_merge",
    "load_config",
]
