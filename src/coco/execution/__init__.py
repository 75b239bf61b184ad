"""
Execution module - path validation, confirmation policies and the
parallel tool executor.

Only the path validators are re-exported here; import
``coco.execution.policies`` and ``coco.execution.parallel`` directly.
"""

from .validators import (
    PathAccess,
    PathOutsideProjectError,
    ValidationError,
    extract_denied_path,
    validate_path,
)

__all__ = [
    "PathAccess",
    "PathOutsideProjectError",
    "ValidationError",
    "extract_denied_path",
    "validate_path",
]
