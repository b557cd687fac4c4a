"""Workspace containment checks for tool paths."""

import os
from pathlib import Path

from cjode.exceptions import PathEscapeError


def ensure_contained(candidate_path: str | Path, workspace_root: str | Path) -> Path:
    """Resolve ``candidate_path`` and require it to stay under ``workspace_root``.

    Relative candidates are anchored at the root. Symlinks are resolved on both
    sides before comparison, so a link pointing outside the workspace is
    rejected as well.

    Args:
        candidate_path: Caller-supplied path (absolute or relative)
        workspace_root: Directory boundary

    Returns:
        Absolute resolved path inside the root

    Raises:
        PathEscapeError: If the resolved path is not the root or a descendant
    """
    root = Path(workspace_root).expanduser().resolve()
    raw = Path(candidate_path).expanduser()
    resolved = (raw if raw.is_absolute() else root / raw).resolve()

    try:
        relative = os.path.relpath(resolved, root)
    except ValueError:
        # Different drives on Windows.
        raise PathEscapeError(str(candidate_path), str(root))

    if relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative):
        raise PathEscapeError(str(candidate_path), str(root))
    return resolved


def is_contained(candidate_path: str | Path, workspace_root: str | Path) -> bool:
    """Return whether ``candidate_path`` resolves inside ``workspace_root``."""
    try:
        ensure_contained(candidate_path, workspace_root)
    except PathEscapeError:
        return False
    return True
