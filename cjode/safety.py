"""Second-opinion safety gate for shell commands."""

import json
import re
import shlex
from abc import ABC, abstractmethod
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ValidationError

from cjode.config import Config, get_config
from cjode.instructions import COMMAND_REVIEWER_PROMPT, get_instruction_loader
from cjode.llm import LLMProvider, Message
from cjode.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


class CommandVerdict(str, Enum):
    """Safety classification of a shell command."""

    SAFE = "safe"
    DESTRUCTIVE = "destructive"


class SafetyVerdict(BaseModel):
    """Structured reply expected from the reviewer model."""

    result: Literal["safe", "destructive"]


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract base command token from each shell segment."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return []
    base_commands: list[str] = []
    for segment in segments:
        base = _extract_segment_base_command(segment)
        if base:
            base_commands.append(base)
    return base_commands


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching.

    Patterns containing whitespace are searched in each whole segment
    (``rm -rf /``); single-word patterns are matched against the base command
    of each segment (``mkfs`` matches ``sudo mkfs.ext4 /dev/sda``).
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    if not segments:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


def parse_safety_verdict(raw_text: str) -> CommandVerdict:
    """Parse reviewer output into a verdict; anything unparseable is destructive."""
    text = (raw_text or "").strip()
    if not text:
        return CommandVerdict.DESTRUCTIVE

    payload: dict | None = None
    try:
        value = json.loads(text)
        if isinstance(value, dict):
            payload = value
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, flags=re.DOTALL)
        if match:
            try:
                value = json.loads(match.group(0))
                if isinstance(value, dict):
                    payload = value
            except json.JSONDecodeError:
                payload = None

    if payload is None:
        return CommandVerdict.DESTRUCTIVE

    try:
        verdict = SafetyVerdict.model_validate(payload)
    except ValidationError:
        return CommandVerdict.DESTRUCTIVE
    return CommandVerdict(verdict.result)


class CommandClassifier(ABC):
    """Decides whether a shell command may run."""

    name: str = ""

    @abstractmethod
    async def classify(self, command: str) -> CommandVerdict:
        pass


class LLMCommandClassifier(CommandClassifier):
    """Asks a fast auxiliary model to review the command."""

    name = "llm"

    def __init__(self, provider: LLMProvider, instructions: str | None = None):
        self.provider = provider
        self.instructions = instructions or get_instruction_loader().load(COMMAND_REVIEWER_PROMPT)

    async def classify(self, command: str) -> CommandVerdict:
        messages = [
            Message(role="system", content=self.instructions),
            Message(role="user", content=command),
        ]
        try:
            response = await self.provider.complete(messages, temperature=0.0, max_tokens=64)
        except Exception as e:
            log.warning("Command reviewer call failed; treating as destructive", command=command, error=str(e))
            return CommandVerdict.DESTRUCTIVE

        verdict = parse_safety_verdict(response.content)
        log.info("Command reviewed", command=command, verdict=verdict.value, reviewer="llm")
        return verdict


class PatternCommandClassifier(CommandClassifier):
    """Deterministic deny-list over parsed shell segments."""

    name = "patterns"

    def __init__(self, blocked_patterns: list[str]):
        self.blocked_patterns = list(blocked_patterns or [])

    async def classify(self, command: str) -> CommandVerdict:
        blocked, matched = is_blocked_shell_command(command, self.blocked_patterns)
        if blocked:
            log.info("Command blocked by pattern", command=command, pattern=matched)
            return CommandVerdict.DESTRUCTIVE
        return CommandVerdict.SAFE


class ChainedCommandClassifier(CommandClassifier):
    """Destructive as soon as any member classifier says so."""

    name = "hybrid"

    def __init__(self, classifiers: list[CommandClassifier]):
        if not classifiers:
            raise ValueError("ChainedCommandClassifier needs at least one classifier")
        self.classifiers = list(classifiers)

    async def classify(self, command: str) -> CommandVerdict:
        for classifier in self.classifiers:
            if await classifier.classify(command) is CommandVerdict.DESTRUCTIVE:
                return CommandVerdict.DESTRUCTIVE
        return CommandVerdict.SAFE


def build_command_classifier(
    config: Config | None = None,
    provider: LLMProvider | None = None,
) -> CommandClassifier:
    """Build the classifier selected by ``tools.shell.safety``.

    Args:
        config: Config to read (global config when omitted)
        provider: Reviewer provider; the global reviewer provider when omitted

    Returns:
        Classifier for the configured mode
    """
    cfg = config or get_config()
    mode = cfg.tools.shell.safety
    patterns = PatternCommandClassifier(cfg.tools.shell.blocked)
    if mode == "patterns":
        return patterns

    if provider is None:
        from cjode.llm import get_reviewer_provider
        provider = get_reviewer_provider()
    reviewer = LLMCommandClassifier(provider)
    if mode == "hybrid":
        return ChainedCommandClassifier([patterns, reviewer])
    return reviewer
