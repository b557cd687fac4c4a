"""Tools package for cjode."""

from pathlib import Path

from cjode.config import Config, get_config
from cjode.logging import get_logger
from cjode.safety import CommandClassifier
from cjode.tools.registry import (
    Tool,
    ToolInput,
    ToolOutput,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)
from cjode.tools.read import ReadTool
from cjode.tools.list_dir import ListDirTool
from cjode.tools.write import WriteFileTool
from cjode.tools.edit import EditFileTool
from cjode.tools.glob import GlobTool
from cjode.tools.grep import GrepTool
from cjode.tools.shell import ShellTool

log = get_logger(__name__)


def build_default_registry(
    config: Config | None = None,
    workspace_root: Path | str | None = None,
    classifier: CommandClassifier | None = None,
) -> ToolRegistry:
    """Create a registry holding every tool enabled in ``tools.enabled``.

    Args:
        config: Config to read (global config when omitted)
        workspace_root: Override for the configured workspace root
        classifier: Command classifier for the shell tool (built lazily from
            config when omitted)
    """
    cfg = config or get_config()
    root = Path(workspace_root) if workspace_root is not None else cfg.resolved_workspace_path()
    registry = ToolRegistry(workspace_root=root)

    factories = {
        "read": ReadTool,
        "list_dir": ListDirTool,
        "write_file": WriteFileTool,
        "edit_file": EditFileTool,
        "glob": GlobTool,
        "grep": GrepTool,
        "bash": lambda: ShellTool(classifier=classifier),
    }
    for name in cfg.tools.enabled:
        factory = factories.get(name)
        if factory is None:
            log.warning("Unknown tool in tools.enabled", tool=name)
            continue
        registry.register(factory())
    return registry


__all__ = [
    "Tool",
    "ToolInput",
    "ToolOutput",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
    "get_tool_registry",
    "set_tool_registry",
    "ReadTool",
    "ListDirTool",
    "WriteFileTool",
    "EditFileTool",
    "GlobTool",
    "GrepTool",
    "ShellTool",
]
