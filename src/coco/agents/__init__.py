"""
Agents - specialized sub-agents and the multi-agent coordinator.
"""

from .coordinator import AgentCoordinator, CoordinationResult, build_context, compute_levels
from .executor import AgentExecutor, AgentResult, AgentTask, build_task_prompt
from .roles import (
    AGENT_ROLES,
    ROLE_PATTERNS,
    AgentRole,
    KeywordRoleClassifier,
    RoleClassifier,
    get_role,
)

__all__ = [
    "AGENT_ROLES",
    "ROLE_PATTERNS",
    "AgentCoordinator",
    "AgentExecutor",
    "AgentResult",
    "AgentRole",
    "AgentTask",
    "CoordinationResult",
    "KeywordRoleClassifier",
    "RoleClassifier",
    "build_context",
    "build_task_prompt",
    "compute_levels",
    "get_role",
]
