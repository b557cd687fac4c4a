from pathlib import Path

import pytest

from cjode.exceptions import FileReadError, PathEscapeError
from cjode.tools.read import ReadInput, ReadTool


def _five_line_file(root: Path) -> Path:
    path = root / "five.txt"
    path.write_text("one\ntwo\nthree\nfour\nfive\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_read_whole_file(tmp_path: Path):
    _five_line_file(tmp_path)

    result = await ReadTool().execute(ReadInput(path="five.txt"), _workspace_root=tmp_path)

    assert result.content == "one\ntwo\nthree\nfour\nfive\n"
    assert result.total_lines == 5
    assert result.actual_range is None


@pytest.mark.asyncio
async def test_read_range_returns_exact_lines(tmp_path: Path):
    _five_line_file(tmp_path)

    result = await ReadTool().execute(ReadInput(path="five.txt", read_range=[2, 3]), _workspace_root=tmp_path)

    assert result.content == "two\nthree"
    assert result.actual_range == [2, 3]
    assert result.read_range == [2, 3]
    assert result.total_lines == 5


@pytest.mark.asyncio
async def test_read_range_end_clamps_to_last_line(tmp_path: Path):
    _five_line_file(tmp_path)

    result = await ReadTool().execute(ReadInput(path="five.txt", read_range=[4, 99]), _workspace_root=tmp_path)

    assert result.content == "four\nfive"
    assert result.actual_range == [4, 5]


@pytest.mark.asyncio
async def test_read_range_past_end_is_empty(tmp_path: Path):
    _five_line_file(tmp_path)

    result = await ReadTool().execute(ReadInput(path="five.txt", read_range=[9, 12]), _workspace_root=tmp_path)

    assert result.content == ""
    assert result.actual_range == [6, 5]


@pytest.mark.asyncio
async def test_read_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileReadError, match="file not found"):
        await ReadTool().execute(ReadInput(path="missing.txt"), _workspace_root=tmp_path)


@pytest.mark.asyncio
async def test_read_outside_workspace_raises(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")

    with pytest.raises(PathEscapeError):
        await ReadTool().execute(ReadInput(path="../secret.txt"), _workspace_root=root)


def test_read_input_rejects_inverted_range():
    with pytest.raises(ValueError):
        ReadInput(path="a.txt", read_range=[3, 2])


@pytest.mark.asyncio
async def test_read_returns_crlf_endings_unchanged(tmp_path: Path):
    (tmp_path / "win.txt").write_bytes(b"alpha\r\nbeta\r\ngamma\r\n")

    whole = await ReadTool().execute(ReadInput(path="win.txt"), _workspace_root=tmp_path)
    ranged = await ReadTool().execute(ReadInput(path="win.txt", read_range=[1, 2]), _workspace_root=tmp_path)

    assert whole.content == "alpha\r\nbeta\r\ngamma\r\n"
    assert whole.total_lines == 3
    assert ranged.content == "alpha\r\nbeta"
