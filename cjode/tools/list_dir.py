"""Directory listing tool."""

import asyncio
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import Field

from cjode.exceptions import DirectoryReadError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)


class ListDirInput(ToolInput):
    path: str = Field(default=".", description="Directory to list (absolute or relative to the workspace)")
    ignore: list[str] | None = Field(
        default=None,
        description="Glob patterns (* and ?) for entry names to leave out",
    )


class DirEntry(ToolOutput):
    name: str
    type: Literal["file", "directory"]
    size: int | None = None


class ListDirOutput(ToolOutput):
    path: str
    entries: list[DirEntry]
    total_entries: int


def compile_ignore_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a simple ``*``/``?`` glob into a full-name regex.

    Every other character is matched literally.
    """
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), flags=re.DOTALL)


def is_ignored(name: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(pattern.fullmatch(name) for pattern in patterns)


class ListDirTool(Tool):
    """List immediate entries of a directory."""

    name = "list_dir"
    description = "List the files and directories in a given directory path."
    input_model = ListDirInput
    output_model = ListDirOutput

    @staticmethod
    def _scan(dir_path: Path, ignore: list[str]) -> list[DirEntry]:
        patterns = [compile_ignore_pattern(item) for item in ignore if item]
        entries: list[DirEntry] = []
        for child in sorted(dir_path.iterdir(), key=lambda p: p.name):
            if is_ignored(child.name, patterns):
                continue
            if child.is_dir():
                entries.append(DirEntry(name=child.name, type="directory"))
            else:
                entries.append(DirEntry(name=child.name, type="file", size=child.stat().st_size))
        return entries

    async def execute(self, params: ListDirInput, **kwargs: Any) -> ListDirOutput:
        """List a directory, dropping ignored names."""
        dir_path = ensure_contained(params.path, self.workspace_root(kwargs))

        if not dir_path.exists():
            raise DirectoryReadError(params.path, "directory not found")
        if not dir_path.is_dir():
            raise DirectoryReadError(params.path, "not a directory")

        try:
            entries = await asyncio.to_thread(self._scan, dir_path, params.ignore or [])
        except OSError as e:
            log.error("List directory failed", path=str(dir_path), error=str(e))
            raise DirectoryReadError(params.path, str(e))

        return ListDirOutput(path=str(dir_path), entries=entries, total_entries=len(entries))
