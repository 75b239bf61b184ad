"""
Agent roles and task classification.

Each role has a system prompt, a tool allow-list and a turn budget. A
task is routed to a role by a RoleClassifier; the default classifier
scores the task description against weighted keyword patterns.
"""

from dataclasses import dataclass
from typing import Protocol

DEFAULT_ROLE = "coder"


@dataclass(frozen=True)
class AgentRole:
    """Definition of a specialized agent."""

    name: str
    system_prompt: str
    allowed_tools: tuple[str, ...]
    max_turns: int


AGENT_ROLES: dict[str, AgentRole] = {
    "researcher": AgentRole(
        name="researcher",
        system_prompt=(
            "You are a code researcher agent. Explore and understand the codebase, "
            "find relevant patterns and examples, identify dependencies and "
            "relationships, and document your findings clearly."
        ),
        allowed_tools=("read_file", "bash_exec"),
        max_turns=20,
    ),
    "coder": AgentRole(
        name="coder",
        system_prompt=(
            "You are a coding agent. Write correct, maintainable code that follows "
            "the conventions of the project, and verify that it works."
        ),
        allowed_tools=("read_file", "write_file", "edit_file", "bash_exec"),
        max_turns=20,
    ),
    "tester": AgentRole(
        name="tester",
        system_prompt=(
            "You are a test generation agent. Write reliable test suites that cover "
            "edge cases and error conditions, and run them."
        ),
        allowed_tools=("read_file", "write_file", "edit_file", "bash_exec"),
        max_turns=15,
    ),
    "reviewer": AgentRole(
        name="reviewer",
        system_prompt=(
            "You are a code review agent. Identify quality issues and security "
            "vulnerabilities and give actionable feedback. Do not modify files."
        ),
        allowed_tools=("read_file",),
        max_turns=10,
    ),
    "optimizer": AgentRole(
        name="optimizer",
        system_prompt=(
            "You are a code optimization agent. Reduce complexity, eliminate "
            "duplication and improve performance without changing behavior."
        ),
        allowed_tools=("read_file", "edit_file", "write_file"),
        max_turns=15,
    ),
    "planner": AgentRole(
        name="planner",
        system_prompt=(
            "You are a task planning agent. Break the task into subtasks, identify "
            "the dependencies between them and produce an actionable plan."
        ),
        allowed_tools=("read_file",),
        max_turns=10,
    ),
}

# (keywords, weight) per role: primary keywords weigh 3, secondary 1
ROLE_PATTERNS: dict[str, list[tuple[tuple[str, ...], int]]] = {
    "researcher": [
        (("research", "find", "analyze", "explore", "investigate", "discover", "understand", "examine"), 3),
        (("pattern", "example", "reference", "dependency", "structure", "architecture", "how", "why"), 1),
    ],
    "tester": [
        (("test", "coverage", "spec", "assertion", "mock", "unit test", "e2e", "integration test"), 3),
        (("validate", "verify", "check", "expect", "should"), 1),
    ],
    "reviewer": [
        (("review", "quality", "audit", "inspect", "lint", "code review"), 3),
        (("issue", "problem", "vulnerability", "smell", "concern", "feedback"), 1),
    ],
    "optimizer": [
        (("optimize", "refactor", "performance", "simplify", "reduce", "improve efficiency"), 3),
        (("clean", "improve", "deduplicate", "consolidate", "streamline"), 1),
    ],
    "planner": [
        (("plan", "decompose", "design", "architect", "breakdown", "roadmap"), 3),
        (("strategy", "organize", "prioritize", "estimate", "scope", "divide"), 1),
    ],
}


class RoleClassifier(Protocol):
    def classify(self, description: str) -> str: ...


def score_description(description: str, patterns: list[tuple[tuple[str, ...], int]]) -> int:
    """Sum of the weights of every keyword contained in ``description``."""
    text = description.lower()
    return sum(weight for keywords, weight in patterns for keyword in keywords if keyword in text)


class KeywordRoleClassifier:
    """Picks the best-scoring role; below ``threshold`` the default role wins.

    Ties go to the role listed first in ``patterns``.
    """

    def __init__(
        self,
        patterns: dict[str, list[tuple[tuple[str, ...], int]]] | None = None,
        threshold: int = 2,
        default_role: str = DEFAULT_ROLE,
    ) -> None:
        self.patterns = patterns if patterns is not None else ROLE_PATTERNS
        self.threshold = threshold
        self.default_role = default_role

    def scores(self, description: str) -> dict[str, int]:
        return {role: score_description(description, p) for role, p in self.patterns.items()}

    def classify(self, description: str) -> str:
        best_role, best_score = self.default_role, 0
        for role, score in self.scores(description).items():
            if score > best_score:
                best_role, best_score = role, score
        if best_score < self.threshold:
            return self.default_role
        return best_role


def get_role(name: str) -> AgentRole:
    """Role definition by name, falling back to the coder role."""
    return AGENT_ROLES.get(name, AGENT_ROLES[DEFAULT_ROLE])
