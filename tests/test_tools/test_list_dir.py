from pathlib import Path

import pytest

from cjode.exceptions import DirectoryReadError
from cjode.tools.list_dir import ListDirInput, ListDirTool, compile_ignore_pattern


@pytest.mark.asyncio
async def test_list_dir_reports_types_and_sizes_sorted(tmp_path: Path):
    (tmp_path / "b.txt").write_text("hello", encoding="utf-8")
    (tmp_path / "a_dir").mkdir()

    result = await ListDirTool().execute(ListDirInput(path="."), _workspace_root=tmp_path)

    assert [entry.name for entry in result.entries] == ["a_dir", "b.txt"]
    assert result.entries[0].type == "directory"
    assert result.entries[0].size is None
    assert result.entries[1].type == "file"
    assert result.entries[1].size == 5
    assert result.total_entries == 2


@pytest.mark.asyncio
async def test_list_dir_drops_ignored_names(tmp_path: Path):
    for name in ("keep.py", "drop.pyc", "node_modules", "x1.log"):
        (tmp_path / name).write_text("", encoding="utf-8")

    result = await ListDirTool().execute(
        ListDirInput(path=".", ignore=["*.pyc", "node_modules", "x?.log"]),
        _workspace_root=tmp_path,
    )

    assert [entry.name for entry in result.entries] == ["keep.py"]


def test_ignore_pattern_is_literal_apart_from_wildcards():
    pattern = compile_ignore_pattern("a.b*")

    assert pattern.fullmatch("a.bc")
    assert not pattern.fullmatch("axbc")
    assert not compile_ignore_pattern("log").fullmatch("catalog")


@pytest.mark.asyncio
async def test_ignore_glob_must_match_whole_name(tmp_path: Path):
    (tmp_path / "app.log").write_text("", encoding="utf-8")
    (tmp_path / "app.log.1").write_text("", encoding="utf-8")

    result = await ListDirTool().execute(ListDirInput(path=".", ignore=["*.log"]), _workspace_root=tmp_path)

    assert [entry.name for entry in result.entries] == ["app.log.1"]


@pytest.mark.asyncio
async def test_list_dir_on_file_raises(tmp_path: Path):
    (tmp_path / "f.txt").write_text("x", encoding="utf-8")

    with pytest.raises(DirectoryReadError, match="not a directory"):
        await ListDirTool().execute(ListDirInput(path="f.txt"), _workspace_root=tmp_path)
