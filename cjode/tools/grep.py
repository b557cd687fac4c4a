"""Content search tool backed by ripgrep."""

import asyncio
import re
from pathlib import Path
from typing import Any

from pydantic import Field

from cjode.config import get_config
from cjode.exceptions import SearchError
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.tools.pagination import paginate
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)

_RG_LINE_RE = re.compile(r"^(.+?):(\d+):(.*)$")


class GrepInput(ToolInput):
    pattern: str = Field(min_length=1, description="Regex pattern to search for")
    path: str | None = Field(default=None, description="Directory to search in (defaults to the workspace root)")
    include: str | list[str] | None = Field(
        default=None,
        description="Glob pattern(s) of files to include in the search",
    )
    exclude: str | list[str] | None = Field(
        default=None,
        description="Glob pattern(s) of files/directories to exclude from the search",
    )
    case_sensitive: bool = Field(default=False, description="Whether to perform a case-sensitive search")
    limit: int = Field(default=250, ge=1, description="Maximum number of matches to return across all files")
    offset: int = Field(default=0, ge=0, description="Number of matches to skip (for pagination)")


class GrepMatch(ToolOutput):
    file: str
    line: int
    content: str


class GrepOutput(ToolOutput):
    matches: list[GrepMatch]
    total: int
    search_path: str
    pattern: str


def _as_list(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [item for item in value if item]


def build_rg_args(params: GrepInput, search_dir: Path) -> list[str]:
    """Build ripgrep arguments for a search restricted to ``search_dir``."""
    args = ["-n", "--no-heading", "--with-filename", "--color", "never"]
    if not params.case_sensitive:
        args.append("-i")
    for pattern in _as_list(params.include):
        args.extend(["-g", pattern])
    for pattern in _as_list(params.exclude):
        args.extend(["-g", f"!{pattern}"])
    args.extend(["-e", params.pattern, "--", str(search_dir)])
    return args


def parse_rg_output(output: str, search_dir: Path) -> list[GrepMatch]:
    """Parse ``file:line:content`` lines; relative file names anchor at ``search_dir``."""
    matches: list[GrepMatch] = []
    for raw_line in output.splitlines():
        if not raw_line:
            continue
        match = _RG_LINE_RE.match(raw_line)
        if not match:
            raise SearchError("grep", f"Failed to parse ripgrep output line: {raw_line}")
        file_name, line_number, content = match.groups()
        file_path = Path(file_name)
        if not file_path.is_absolute():
            file_path = search_dir / file_path
        matches.append(GrepMatch(file=str(file_path), line=int(line_number), content=content))
    return matches


class GrepTool(Tool):
    """Search file contents with ripgrep."""

    name = "grep"
    description = (
        "Search for regex patterns in files using ripgrep. Returns matching "
        "lines with file paths and line numbers."
    )
    input_model = GrepInput
    output_model = GrepOutput

    def __init__(self, binary: str | None = None, timeout: float | None = None):
        cfg = get_config().tools.grep
        self.binary = binary or cfg.binary
        self.search_timeout = float(timeout or cfg.timeout)
        self.timeout_seconds = self.search_timeout + 5.0

    async def _run_rg(self, args: list[str]) -> tuple[int | None, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise SearchError(
                self.name,
                f"ripgrep ({self.binary}) is not installed. "
                "Install it: https://github.com/BurntSushi/ripgrep#installation",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.search_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SearchError(self.name, f"ripgrep timed out after {int(self.search_timeout)}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def execute(self, params: GrepInput, **kwargs: Any) -> GrepOutput:
        """Run ripgrep and return one page of matches."""
        search_dir = ensure_contained(params.path or ".", self.workspace_root(kwargs))
        if not search_dir.exists():
            raise SearchError(self.name, f"Search path does not exist: {params.path}")

        returncode, stdout, stderr = await self._run_rg(build_rg_args(params, search_dir))

        if returncode == 1:
            all_matches: list[GrepMatch] = []
        elif returncode != 0:
            message = f"ripgrep failed with exit code {returncode}"
            if stderr:
                message += f": {stderr}"
            raise SearchError(self.name, message)
        else:
            all_matches = parse_rg_output(stdout, search_dir)

        log.debug("Grep finished", pattern=params.pattern, total=len(all_matches))
        return GrepOutput(
            matches=paginate(all_matches, params.offset, params.limit),
            total=len(all_matches),
            search_path=str(search_dir),
            pattern=params.pattern,
        )
