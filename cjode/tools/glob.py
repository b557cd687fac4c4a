"""Glob tool for finding files by pattern."""

import asyncio
import glob
import os
from pathlib import Path
from typing import Any

from pydantic import Field

from cjode.exceptions import SearchError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained, is_contained
from cjode.tools.pagination import paginate
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)


class GlobInput(ToolInput):
    pattern: str = Field(
        min_length=1,
        description="Glob pattern to match files (e.g., '**/*.py', 'src/**/test_*.py')",
    )
    path: str | None = Field(default=None, description="Directory to search in (defaults to the workspace root)")
    limit: int = Field(default=50, ge=1, description="Maximum number of results to return")
    offset: int = Field(default=0, ge=0, description="Number of results to skip (for pagination)")


class GlobOutput(ToolOutput):
    paths: list[str]
    total: int
    search_path: str
    pattern: str


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def find_files(search_dir: Path, pattern: str, workspace_root: Path) -> list[str]:
    """Expand ``pattern`` under ``search_dir``, newest first.

    Files only; wildcards do not match hidden entries; matches that resolve
    outside ``workspace_root`` are dropped.
    """
    matches = glob.glob(pattern, root_dir=str(search_dir), recursive=True)
    files: list[Path] = []
    seen: set[Path] = set()
    for match in matches:
        candidate = Path(match)
        full = (candidate if candidate.is_absolute() else search_dir / candidate).resolve()
        if full in seen or not full.is_file():
            continue
        if not is_contained(full, workspace_root):
            continue
        seen.add(full)
        files.append(full)
    files.sort(key=_mtime, reverse=True)
    return [str(path) for path in files]


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    description = (
        "Find files using glob patterns. Returns file paths sorted by "
        "modification time (newest first)."
    )
    input_model = GlobInput
    output_model = GlobOutput

    async def execute(self, params: GlobInput, **kwargs: Any) -> GlobOutput:
        """Find files matching pattern, one page at a time."""
        workspace_root = self.workspace_root(kwargs).resolve()
        search_dir = ensure_contained(params.path or ".", workspace_root)
        if not search_dir.is_dir():
            raise SearchError(self.name, f"Search path is not a directory: {params.path}")

        try:
            all_paths = await asyncio.to_thread(find_files, search_dir, params.pattern, workspace_root)
        except (OSError, ValueError) as e:
            log.error("Glob failed", pattern=params.pattern, error=str(e))
            raise SearchError(self.name, f"Failed to search files: {e}")

        log.debug("Glob matched", pattern=params.pattern, total=len(all_paths), root=os.fspath(search_dir))
        return GlobOutput(
            paths=paginate(all_paths, params.offset, params.limit),
            total=len(all_paths),
            search_path=str(search_dir),
            pattern=params.pattern,
        )
