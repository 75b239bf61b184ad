"""
Path validation for file tools.

Every file operation is confined to the project directory plus the
directories the user authorized during the session. A path outside
that boundary raises PathOutsideProjectError whose message tells the
executor which directory to ask about.
"""

import re
from pathlib import Path

# Marker pattern the parallel executor uses to offer path authorization
ALLOW_PATH_PATTERN = re.compile(r"Use /allow-path (.+?) to grant access")


class PathOutsideProjectError(Exception):
    """Raised when a path escapes the project directory."""

    def __init__(self, path: str, directory: Path) -> None:
        self.path = path
        self.directory = directory
        super().__init__(
            f"Path '{path}' is outside project directory. "
            f"Use /allow-path {directory} to grant access"
        )


class ValidationError(Exception):
    """Generic validation error."""

    pass


class PathAccess:
    """Project root plus the extra directories authorized for file tools.

    Shared by the file tools and the path-authorization callback so an
    authorization granted mid-turn applies to the retried call.
    """

    def __init__(self, root: Path, allowed: list[Path] | None = None) -> None:
        self.root = root.resolve()
        self.allowed: list[Path] = [p.resolve() for p in allowed or []]

    def authorize(self, directory: str | Path) -> None:
        """Grant access to ``directory`` for the rest of the session."""
        resolved = Path(directory).expanduser().resolve()
        if resolved not in self.allowed:
            self.allowed.append(resolved)

    def is_allowed(self, path: Path) -> bool:
        return any(path.is_relative_to(base) for base in [self.root, *self.allowed])

    def __repr__(self) -> str:
        return f"<PathAccess(root='{self.root}', allowed={len(self.allowed)})>"


def validate_path(path: str, access: PathAccess) -> Path:
    """Resolve a path and make sure it stays inside the authorized boundary.

    Relative paths are resolved against the project root. Symlinks and
    '..' components are resolved before the check.

    Args:
        path: Path provided by the model
        access: Authorized directories

    Returns:
        Absolute resolved path

    Raises:
        PathOutsideProjectError: If the resolved path escapes every authorized directory
        ValidationError: If the path cannot be resolved

    Example:
        >>> validate_path("src/main.py", PathAccess(Path("/work")))
        PosixPath('/work/src/main.py')
    """
    try:
        full_path = (access.root / Path(path).expanduser()).resolve()
    except (ValueError, OSError) as e:
        raise ValidationError(f"Invalid path '{path}': {e}")

    if not access.is_allowed(full_path):
        directory = full_path if full_path.is_dir() else full_path.parent
        raise PathOutsideProjectError(path, directory)

    return full_path


def extract_denied_path(error: str) -> str | None:
    """Return the directory named by an "outside project directory" error."""
    match = ALLOW_PATH_PATTERN.search(error)
    return match.group(1) if match else None
