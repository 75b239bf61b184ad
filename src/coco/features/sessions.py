"""
Sessions - Conversation history and its persistence.

A Session owns the durable conversation of one interactive run; the turn
loop appends to it only after an iteration's tool dispatch completes.

History is bounded by ``max_history_size``: the oldest messages are
dropped first, and a tool_result message is never kept without the
tool_use message that precedes it.

Each session is saved in `.coco/sessions/<session_id>.json`.
"""

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog

from ..core.trust import TrustStore

logger = structlog.get_logger()

SESSIONS_DIR = ".coco/sessions"


def generate_session_id() -> str:
    """Generate a unique session ID based on timestamp + short uuid."""
    ts = time.strftime("%Y%m%d-%H%M%S")
    short_uuid = uuid.uuid4().hex[:6]
    return f"{ts}-{short_uuid}"


@dataclass
class Session:
    """Conversation state that outlives a single turn."""

    id: str = field(default_factory=generate_session_id)
    project_path: str = "."
    system_prompt: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in valid_fields})


def _has_block(message: dict[str, Any], block_type: str) -> bool:
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(b, dict) and b.get("type") == block_type for b in content)


def trim_history(messages: list[dict[str, Any]], max_size: int) -> list[dict[str, Any]]:
    """Keep at most ``max_size`` of the newest messages without orphaning tool results."""
    if len(messages) <= max_size:
        return messages
    trimmed = messages[len(messages) - max_size:]
    while trimmed and _has_block(trimmed[0], "tool_result"):
        trimmed = trimmed[1:]
    return trimmed


class SessionStore:
    """Creates, updates and persists sessions.

    Args:
        workspace_root: Directory holding `.coco/sessions`
        max_history_size: Messages kept per session
        trust_store: Persistence for trust decisions (optional)
    """

    def __init__(
        self,
        workspace_root: str | Path,
        max_history_size: int = 100,
        trust_store: TrustStore | None = None,
    ) -> None:
        self.root = Path(workspace_root)
        self.sessions_dir = self.root / SESSIONS_DIR
        self.max_history_size = max_history_size
        self.trust_store = trust_store

    def create(self, system_prompt: str = "", project_path: str | None = None) -> Session:
        session = Session(
            project_path=project_path or str(self.root.resolve()),
            system_prompt=system_prompt,
        )
        logger.debug("session.created", session_id=session.id)
        return session

    def add_message(self, session: Session, message: dict[str, Any]) -> None:
        """Append ``message`` and trim the history to the configured size."""
        session.messages.append(message)
        before = len(session.messages)
        session.messages = trim_history(session.messages, self.max_history_size)
        session.updated_at = time.time()
        if len(session.messages) < before:
            logger.debug(
                "session.trimmed",
                session_id=session.id,
                dropped=before - len(session.messages),
            )

    def get_conversation_context(self, session: Session) -> list[dict[str, Any]]:
        """Messages to send to the model: system prompt first, then the history."""
        context: list[dict[str, Any]] = []
        if session.system_prompt:
            context.append({"role": "system", "content": session.system_prompt})
        context.extend(session.messages)
        return context

    def save_trusted_tool(self, pattern: str, project_path: str | None, is_global: bool = False) -> None:
        if self.trust_store is None:
            return
        self.trust_store.save(pattern, project_path, is_global)

    # ── Persistence ───────────────────────────────────────────────────────

    def save(self, session: Session) -> Path:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self.sessions_dir / f"{session.id}.json"
        session.updated_at = time.time()
        path.write_text(
            json.dumps(session.to_dict(), indent=2, default=str, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.debug("session.saved", session_id=session.id, messages=len(session.messages))
        return path

    def load(self, session_id: str) -> Session | None:
        """Load a saved session; None if it does not exist or cannot be read."""
        path = self.sessions_dir / f"{session_id}.json"
        if not path.exists():
            logger.warning("session.not_found", session_id=session_id)
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = Session.from_dict(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("session.load_error", session_id=session_id, error=str(e))
            return None
        logger.info("session.loaded", session_id=session_id, messages=len(session.messages))
        return session

    def list_sessions(self) -> list[dict[str, Any]]:
        """Saved sessions, most recently updated first."""
        if not self.sessions_dir.exists():
            return []
        sessions: list[dict[str, Any]] = []
        for path in self.sessions_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                continue
            sessions.append({
                "id": data.get("id", path.stem),
                "messages": len(data.get("messages", [])),
                "updated": data.get("updated_at", 0),
            })
        return sorted(sessions, key=lambda s: s["updated"], reverse=True)

    def delete(self, session_id: str) -> bool:
        path = self.sessions_dir / f"{session_id}.json"
        if not path.exists():
            return False
        path.unlink()
        return True

    def __repr__(self) -> str:
        return f"<SessionStore(dir='{self.sessions_dir}', max_history={self.max_history_size})>"
