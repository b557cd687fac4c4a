"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import Field

from cjode.exceptions import FileWriteError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)


class WriteFileInput(ToolInput):
    path: str = Field(description="Path to the file to write (absolute or relative to the workspace)")
    content: str = Field(description="Content to write to the file")
    create_dirs: bool = Field(default=True, description="Create missing parent directories")


class WriteFileOutput(ToolOutput):
    path: str
    bytes_written: int
    success: bool = True


class WriteFileTool(Tool):
    """Create or overwrite a file."""

    name = "write_file"
    description = "Write content to a file, creating it (and its parent directories) if needed."
    input_model = WriteFileInput
    output_model = WriteFileOutput

    @staticmethod
    def _write(file_path: Path, content: str, create_dirs: bool) -> int:
        if create_dirs:
            file_path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        file_path.write_bytes(data)
        return len(data)

    async def execute(self, params: WriteFileInput, **kwargs: Any) -> WriteFileOutput:
        """Write content to a file."""
        file_path = ensure_contained(params.path, self.workspace_root(kwargs))

        if file_path.is_dir():
            raise FileWriteError(params.path, "path is a directory")
        if not params.create_dirs and not file_path.parent.is_dir():
            raise FileWriteError(params.path, "parent directory does not exist")

        try:
            written = await asyncio.to_thread(self._write, file_path, params.content, params.create_dirs)
        except OSError as e:
            log.error("Write failed", path=str(file_path), error=str(e))
            raise FileWriteError(params.path, str(e))

        log.info("File written", path=str(file_path), bytes=written)
        return WriteFileOutput(path=str(file_path), bytes_written=written)
