"""Find-and-replace editing tool."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import Field

from cjode.exceptions import FileEditError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)

PREVIEW_CHARS = 200


class EditFileInput(ToolInput):
    path: str = Field(description="Path to the file to edit (absolute or relative to the workspace)")
    find: str = Field(min_length=1, description="Exact text to find in the file")
    replace: str = Field(description="Text to replace the found text with")
    replace_all: bool = Field(
        default=False,
        description="Replace all occurrences (true) or just the first one (false)",
    )


class EditFileOutput(ToolOutput):
    path: str
    replacements: int
    success: bool = True
    preview: str


def apply_edit(text: str, find: str, replace: str, replace_all: bool = False) -> tuple[str, int]:
    """Literal find/replace; returns the new text and the replacement count."""
    count = text.count(find)
    if count == 0:
        return text, 0
    if replace_all:
        return text.replace(find, replace), count
    return text.replace(find, replace, 1), 1


def make_preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class EditFileTool(Tool):
    """Edit a file by literal find and replace."""

    name = "edit_file"
    description = "Edit a file by finding and replacing text content."
    input_model = EditFileInput
    output_model = EditFileOutput

    @staticmethod
    def _edit(file_path: Path, params: EditFileInput) -> tuple[str, int]:
        # newline="" keeps CRLF and lone CR endings byte-for-byte.
        with open(file_path, encoding="utf-8", newline="") as f:
            original = f.read()
        updated, replacements = apply_edit(original, params.find, params.replace, params.replace_all)
        if replacements:
            with open(file_path, "w", encoding="utf-8", newline="") as f:
                f.write(updated)
        return updated, replacements

    async def execute(self, params: EditFileInput, **kwargs: Any) -> EditFileOutput:
        """Apply the edit and report how many occurrences were replaced."""
        file_path = ensure_contained(params.path, self.workspace_root(kwargs))

        if not file_path.is_file():
            raise FileEditError(params.path, "file not found")

        try:
            updated, replacements = await asyncio.to_thread(self._edit, file_path, params)
        except (OSError, UnicodeDecodeError) as e:
            log.error("Edit failed", path=str(file_path), error=str(e))
            raise FileEditError(params.path, str(e))

        log.info("File edited", path=str(file_path), replacements=replacements)
        return EditFileOutput(
            path=str(file_path),
            replacements=replacements,
            preview=make_preview(updated),
        )
