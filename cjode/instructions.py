"""Load LLM instruction templates from disk.

Supports a two-layer override system:
  1. Personal overrides in ``~/.cjode/instructions/`` (highest priority)
  2. Packaged defaults in ``cjode/prompts/``
"""

from __future__ import annotations

import os
from pathlib import Path


_PERSONAL_DIR = Path("~/.cjode/instructions").expanduser()

SYSTEM_PROMPT = "system_prompt.md"
TASK_SYSTEM_PROMPT = "task_system_prompt.md"
COMMAND_REVIEWER_PROMPT = "command_reviewer_prompt.md"


class InstructionLoader:
    """Read instruction templates with personal-override support.

    Resolution order for every template:
      1. ``personal_dir / name``  (``~/.cjode/instructions/``)
      2. ``base_dir / name``      (packaged ``prompts/``)
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("CJODE_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    """Get the global instruction loader."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader


def set_instruction_loader(loader: InstructionLoader | None) -> None:
    """Set the global instruction loader."""
    global _loader
    _loader = loader
