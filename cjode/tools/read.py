"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import Field, model_validator

from cjode.exceptions import FileReadError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)


class ReadInput(ToolInput):
    path: str = Field(description="Path to the file to read (absolute or relative to the workspace)")
    read_range: list[int] | None = Field(
        default=None,
        min_length=2,
        max_length=2,
        description="Optional [start_line, end_line] range (1-indexed, inclusive)",
    )

    @model_validator(mode="after")
    def _check_range(self) -> "ReadInput":
        if self.read_range is not None:
            start, end = self.read_range
            if start < 1:
                raise ValueError("read_range start must be >= 1")
            if end < start:
                raise ValueError("read_range end must be >= start")
        return self


class ReadOutput(ToolOutput):
    path: str
    content: str
    total_lines: int
    read_range: list[int] | None = None
    actual_range: list[int] | None = None


def select_lines(text: str, start: int, end: int) -> tuple[str, int, int, int]:
    """Return the 1-indexed inclusive ``[start, end]`` slice of ``text``.

    The range is clamped to the file; a start beyond the last line yields an
    empty slice whose actual range is ``[total + 1, total]``.

    Returns:
        (selected text, actual start, actual end, total line count)
    """
    lines = text.splitlines(keepends=True)
    total = len(lines)
    start_idx = min(start - 1, total)
    end_idx = max(start_idx, min(total, end))
    selected = "".join(lines[start_idx:end_idx])
    # Line endings stay as in the file, except after the last selected line.
    if end_idx > start_idx:
        last = lines[end_idx - 1]
        selected = selected[: len(selected) - len(last)] + last.rstrip("\r\n")
    return selected, start_idx + 1, end_idx, total


class ReadTool(Tool):
    """Read file contents."""

    name = "read"
    description = (
        "Read a file from the file system. Returns file contents with an "
        "optional 1-indexed line range."
    )
    input_model = ReadInput
    output_model = ReadOutput

    @staticmethod
    def _read_text(file_path: Path) -> str:
        with open(file_path, encoding="utf-8", newline="") as f:
            return f.read()

    async def execute(self, params: ReadInput, **kwargs: Any) -> ReadOutput:
        """Read a file, optionally restricted to a line range."""
        file_path = ensure_contained(params.path, self.workspace_root(kwargs))

        if not file_path.exists():
            raise FileReadError(params.path, "file not found")
        if not file_path.is_file():
            raise FileReadError(params.path, "not a file")

        try:
            text = await asyncio.to_thread(self._read_text, file_path)
        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=str(file_path), error=str(e))
            raise FileReadError(params.path, str(e))

        if params.read_range is None:
            return ReadOutput(
                path=str(file_path),
                content=text,
                total_lines=len(text.splitlines()),
            )

        start, end = params.read_range
        content, actual_start, actual_end, total = select_lines(text, start, end)
        return ReadOutput(
            path=str(file_path),
            content=content,
            total_lines=total,
            read_range=[start, end],
            actual_range=[actual_start, actual_end],
        )
