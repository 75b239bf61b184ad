"""
Features - session persistence.
"""

from .sessions import Session, SessionStore, generate_session_id, trim_history

__all__ = ["Session", "SessionStore", "generate_session_id", "trim_history"]
