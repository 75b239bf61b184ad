"""
Trust patterns and trusted-tool persistence.

A trust pattern is the key that lets a tool call skip the confirmation
prompt. Shell commands get subcommand-level patterns:

    "git commit -m 'foo'" -> "bash:git:commit"
    "curl example.com"    -> "bash:curl"
    "sudo git push"       -> "bash:sudo:git:push"
    "ls -la"              -> "bash:ls"

Every other tool uses its bare name.

Invariants:
- Matching is exact-string. Trusting "bash:git" never trusts "bash:git:push".
- The session set only grows; nothing is revoked mid-session.
- Persistence is best-effort: a failed write is logged, never raised.
"""

import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger()

# Commands whose first argument is a meaningful subcommand
SUBCOMMAND_TOOLS: frozenset[str] = frozenset({
    # Version control
    "git", "gh",
    # Package managers
    "npm", "pnpm", "yarn", "pip", "brew", "apt", "apt-get",
    # Build tools
    "docker", "docker-compose", "cargo", "go", "gradle", "./gradlew", "mvn", "./mvnw",
    # Cloud and infra
    "kubectl", "aws",
})

BASH_TOOLS: frozenset[str] = frozenset({"bash_exec", "bash_background"})


def extract_bash_pattern(command: str) -> str:
    """Extract the trust pattern of a shell command.

    Args:
        command: Raw command line

    Returns:
        "bash:<cmd>" or "bash:<cmd>:<subcommand>", with "sudo" inserted
        after "bash" when the command is run through sudo.
    """
    tokens = command.split()
    if not tokens:
        return "bash:unknown"

    idx = 0
    parts = ["bash"]

    if tokens[idx].lower() == "sudo":
        parts.append("sudo")
        idx += 1
        if idx >= len(tokens):
            return ":".join(parts)

    base_cmd = tokens[idx].lower()
    parts.append(base_cmd)
    idx += 1

    # A leading "-" is a flag, not a subcommand
    if base_cmd in SUBCOMMAND_TOOLS and idx < len(tokens) and not tokens[idx].startswith("-"):
        parts.append(tokens[idx].lower())

    return ":".join(parts)


def get_trust_pattern(tool_name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Return the trust pattern of a tool call."""
    if tool_name in BASH_TOOLS and isinstance((tool_input or {}).get("command"), str):
        return extract_bash_pattern(tool_input["command"])
    return tool_name


def is_bash_command_trusted(command: str, trusted: "set[str] | TrustedToolSet") -> bool:
    """True only if the exact pattern of ``command`` is trusted."""
    return extract_bash_pattern(command) in trusted


class TrustedToolSet:
    """Session set of trusted patterns (exact match only)."""

    def __init__(self, patterns: set[str] | None = None) -> None:
        self._patterns: set[str] = set(patterns or ())

    @classmethod
    def initialize(cls, store: "TrustStore", project_path: str) -> "TrustedToolSet":
        """Seed a session set with the global and project patterns on disk."""
        return cls(store.load(project_path))

    def add(self, pattern: str) -> None:
        self._patterns.add(pattern)

    def is_trusted(self, tool_name: str, tool_input: dict[str, Any] | None = None) -> bool:
        return get_trust_pattern(tool_name, tool_input) in self._patterns

    def __contains__(self, pattern: object) -> bool:
        return pattern in self._patterns

    def __iter__(self):
        return iter(sorted(self._patterns))

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"<TrustedToolSet({len(self._patterns)} patterns)>"


class TrustSettings(BaseModel):
    """On-disk layout of the trust file."""

    global_trusted: list[str] = Field(default_factory=list, alias="globalTrusted")
    project_trusted: dict[str, list[str]] = Field(default_factory=dict, alias="projectTrusted")
    updated_at: str | None = Field(default=None, alias="updatedAt")

    model_config = {"populate_by_name": True}


def _require_scope(project_path: str | None, is_global: bool) -> None:
    if not is_global and project_path is None:
        raise ValueError("Project-scoped trust needs a project path")


class TrustStore:
    """Persists trusted patterns per scope (global and per project) in a JSON file.

    A missing or unreadable file behaves as an empty store. Writes are
    serialized with a lock because fire-and-forget saves may overlap.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self.log = logger.bind(component="trust_store")

    def _read(self) -> TrustSettings:
        if not self.path.exists():
            return TrustSettings()
        try:
            return TrustSettings.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            self.log.warning("trust.load_failed", path=str(self.path), error=str(e))
            return TrustSettings()

    def _write(self, settings: TrustSettings) -> None:
        settings.updated_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(settings.model_dump(by_alias=True), indent=2),
            encoding="utf-8",
        )

    def load(self, project_path: str) -> set[str]:
        """Return global patterns plus those of ``project_path``."""
        settings = self._read()
        return set(settings.global_trusted) | set(settings.project_trusted.get(project_path, []))

    def save(self, pattern: str, project_path: str | None, is_global: bool = False) -> None:
        """Add ``pattern`` to the global scope or to the project scope."""
        _require_scope(project_path, is_global)
        with self._lock:
            settings = self._read()
            if is_global:
                if pattern not in settings.global_trusted:
                    settings.global_trusted.append(pattern)
            else:
                project = settings.project_trusted.setdefault(project_path, [])
                if pattern not in project:
                    project.append(pattern)
            self._write(settings)
        self.log.debug("trust.saved", pattern=pattern, scope="global" if is_global else "project")

    async def save_async(self, pattern: str, project_path: str | None, is_global: bool = False) -> None:
        """Fire-and-forget variant of save(): failures are logged and dropped."""
        try:
            await asyncio.to_thread(self.save, pattern, project_path, is_global)
        except OSError as e:
            self.log.warning("trust.save_failed", pattern=pattern, error=str(e))

    def remove(self, pattern: str, project_path: str | None, is_global: bool = False) -> bool:
        """Remove ``pattern`` from a scope. Returns True if it was present."""
        _require_scope(project_path, is_global)
        with self._lock:
            settings = self._read()
            if is_global:
                present = pattern in settings.global_trusted
                settings.global_trusted = [p for p in settings.global_trusted if p != pattern]
            else:
                project = settings.project_trusted.get(project_path, [])
                present = pattern in project
                if project_path in settings.project_trusted:
                    settings.project_trusted[project_path] = [p for p in project if p != pattern]
            if present:
                self._write(settings)
        return present

    def get_all(self, project_path: str) -> dict[str, list[str]]:
        """Return ``{"global": [...], "project": [...]}`` for display."""
        settings = self._read()
        return {
            "global": list(settings.global_trusted),
            "project": list(settings.project_trusted.get(project_path, [])),
        }

    def __repr__(self) -> str:
        return f"<TrustStore(path='{self.path}')>"
