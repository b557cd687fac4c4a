import asyncio
from pathlib import Path

import pytest

from cjode.config import Config, set_config
from cjode.exceptions import (
    CommandFailedError,
    CommandOutputTooLargeError,
    CommandTimeoutError,
    PathEscapeError,
    ToolExecutionError,
    UnsafeCommandError,
)
from cjode.safety import CommandClassifier, CommandVerdict
from cjode.tools.shell import ShellInput, ShellTool


class _FixedClassifier(CommandClassifier):
    name = "fixed"

    def __init__(self, verdict: CommandVerdict):
        self.verdict = verdict
        self.seen: list[str] = []

    async def classify(self, command: str) -> CommandVerdict:
        self.seen.append(command)
        return self.verdict


@pytest.fixture(autouse=True)
def _default_config():
    set_config(Config())


def _safe_tool(**kwargs) -> ShellTool:
    return ShellTool(classifier=_FixedClassifier(CommandVerdict.SAFE), **kwargs)


@pytest.mark.asyncio
async def test_runs_command_in_workspace_root(tmp_path: Path):
    result = await _safe_tool().execute(ShellInput(cmd="pwd"), _workspace_root=tmp_path)

    assert result.stdout.strip() == str(tmp_path.resolve())
    assert result.cwd == str(tmp_path.resolve())
    assert result.cmd == "pwd"


@pytest.mark.asyncio
async def test_runs_command_in_subdirectory(tmp_path: Path):
    (tmp_path / "sub").mkdir()

    result = await _safe_tool().execute(ShellInput(cmd="pwd", cwd="sub"), _workspace_root=tmp_path)

    assert result.stdout.strip() == str((tmp_path / "sub").resolve())


@pytest.mark.asyncio
async def test_destructive_command_never_spawns(tmp_path: Path, monkeypatch):
    async def _fail_spawn(*args, **kwargs):
        raise AssertionError("process must not be spawned")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fail_spawn)
    classifier = _FixedClassifier(CommandVerdict.DESTRUCTIVE)
    tool = ShellTool(classifier=classifier)

    with pytest.raises(UnsafeCommandError, match="potentially destructive"):
        await tool.execute(ShellInput(cmd="rm -rf ."), _workspace_root=tmp_path)

    assert classifier.seen == ["rm -rf ."]


@pytest.mark.asyncio
async def test_cwd_outside_workspace_is_rejected(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()

    with pytest.raises(PathEscapeError):
        await _safe_tool().execute(ShellInput(cmd="ls", cwd=".."), _workspace_root=root)


@pytest.mark.asyncio
async def test_non_zero_exit_reports_stderr(tmp_path: Path):
    with pytest.raises(CommandFailedError) as exc_info:
        await _safe_tool().execute(ShellInput(cmd="echo boom >&2; exit 3"), _workspace_root=tmp_path)

    assert exc_info.value.exit_code == 3
    assert exc_info.value.stderr == "boom"
    assert "exit code 3" in str(exc_info.value)


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path: Path):
    tool = _safe_tool(timeout=0.5)

    with pytest.raises(CommandTimeoutError, match="timed out after 0.5s"):
        await tool.execute(ShellInput(cmd="sleep 10"), _workspace_root=tmp_path)


@pytest.mark.asyncio
async def test_timeout_covers_command_that_closes_its_pipes(tmp_path: Path):
    tool = _safe_tool(timeout=0.5)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(CommandTimeoutError):
        await tool.execute(ShellInput(cmd="exec >/dev/null 2>&1; sleep 5"), _workspace_root=tmp_path)

    assert loop.time() - started < 4


@pytest.mark.asyncio
async def test_output_cap_counts_combined_streams(tmp_path: Path):
    tool = _safe_tool(max_output_bytes=1000)

    with pytest.raises(CommandOutputTooLargeError):
        await tool.execute(
            ShellInput(cmd="head -c 600 /dev/zero; head -c 600 /dev/zero >&2"),
            _workspace_root=tmp_path,
        )


@pytest.mark.asyncio
async def test_abort_event_stops_command(tmp_path: Path):
    abort_event = asyncio.Event()
    tool = _safe_tool(timeout=10)

    async def _abort_soon():
        await asyncio.sleep(0.2)
        abort_event.set()

    aborter = asyncio.create_task(_abort_soon())
    with pytest.raises(ToolExecutionError, match="aborted"):
        await tool.execute(ShellInput(cmd="sleep 10"), _workspace_root=tmp_path, _abort_event=abort_event)
    await aborter


def test_registry_timeout_leaves_room_for_review():
    tool = _safe_tool(timeout=5)

    assert tool.command_timeout == 5.0
    assert tool.timeout_seconds > tool.command_timeout


@pytest.mark.asyncio
async def test_review_happens_before_cwd_resolution(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    tool = ShellTool(classifier=_FixedClassifier(CommandVerdict.DESTRUCTIVE))

    with pytest.raises(UnsafeCommandError):
        await tool.execute(ShellInput(cmd="rm -rf /", cwd="../.."), _workspace_root=root)
