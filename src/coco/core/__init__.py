"""
Core module - turn state, trust, hooks and shutdown handling.

The turn loop lives in ``coco.core.loop`` and is imported from there.
"""

from .hooks import (
    DuplicateHookError,
    HookAction,
    HookConfigError,
    HookContext,
    HookDefinition,
    HookEvent,
    HookExecutionResult,
    HookExecutor,
    HookNotFoundError,
    HookRegistry,
    HookResult,
    HookType,
)
from .shutdown import GracefulShutdown
from .state import (
    ExecutedToolCall,
    ParallelExecutionResult,
    SkippedToolCall,
    StopReason,
    TokenUsage,
    ToolCall,
    TurnResult,
)
from .trust import TrustedToolSet, TrustStore, extract_bash_pattern, get_trust_pattern

__all__ = [
    "DuplicateHookError",
    "ExecutedToolCall",
    "GracefulShutdown",
    "HookAction",
    "HookConfigError",
    "HookContext",
    "HookDefinition",
    "HookEvent",
    "HookExecutionResult",
    "HookExecutor",
    "HookNotFoundError",
    "HookRegistry",
    "HookResult",
    "HookType",
    "ParallelExecutionResult",
    "SkippedToolCall",
    "StopReason",
    "TokenUsage",
    "ToolCall",
    "TrustedToolSet",
    "TrustStore",
    "TurnResult",
    "extract_bash_pattern",
    "get_trust_pattern",
]
