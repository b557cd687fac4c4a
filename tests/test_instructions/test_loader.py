from pathlib import Path

import pytest

from cjode.instructions import (
    COMMAND_REVIEWER_PROMPT,
    SYSTEM_PROMPT,
    TASK_SYSTEM_PROMPT,
    InstructionLoader,
)


def test_packaged_templates_load(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")

    for name in (SYSTEM_PROMPT, TASK_SYSTEM_PROMPT, COMMAND_REVIEWER_PROMPT):
        assert loader.load(name)
    assert '"result"' in loader.load(COMMAND_REVIEWER_PROMPT)


def test_personal_override_wins(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (personal / SYSTEM_PROMPT).write_text("  custom prompt\n", encoding="utf-8")

    loader = InstructionLoader(personal_dir=personal)

    assert loader.load(SYSTEM_PROMPT) == "custom prompt"


def test_base_dir_from_environment(tmp_path: Path, monkeypatch):
    (tmp_path / "extra.md").write_text("from env", encoding="utf-8")
    monkeypatch.setenv("CJODE_INSTRUCTIONS_DIR", str(tmp_path))

    loader = InstructionLoader(personal_dir=tmp_path / "none")

    assert loader.load("extra.md") == "from env"


def test_missing_template_raises(tmp_path: Path):
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")

    with pytest.raises(FileNotFoundError):
        loader.load("absent.md")
