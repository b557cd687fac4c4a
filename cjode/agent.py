"""Agent orchestration: the tool-calling loop and its run state machine."""

import asyncio
import json
import os
from contextlib import aclosing, contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator

from cjode.config import Config, get_config
from cjode.exceptions import AgentRunError, CjodeError, LLMError
from cjode.instructions import TASK_SYSTEM_PROMPT, get_instruction_loader
from cjode.llm import LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition, get_provider
from cjode.logging import get_logger
from cjode.session import ConversationStore, get_conversation_store
from cjode.tools import ToolRegistry, build_default_registry, get_tool_registry

log = get_logger(__name__)


class RunState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXCEEDED = "budget_exceeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.BUDGET_EXCEEDED, RunState.FAILED})


@dataclass(frozen=True)
class AgentRun:
    """Bookkeeping for one loop execution. Never persisted."""

    max_steps: int
    token_budget_remaining: int
    step_count: int = 0
    state: RunState = RunState.INIT
    termination_reason: str | None = None
    text: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# Pure transitions. Each returns a new AgentRun; the input is never mutated.

def _require_active(run: AgentRun, event: str) -> None:
    if run.is_terminal:
        raise ValueError(f"Cannot apply {event} to a run in state {run.state.value}")


def start_run(max_steps: int, max_output_tokens: int) -> AgentRun:
    return AgentRun(max_steps=max_steps, token_budget_remaining=max_output_tokens)


def on_start(run: AgentRun) -> AgentRun:
    _require_active(run, "start")
    return replace(run, state=RunState.RUNNING)


def on_tool_calls(run: AgentRun, text: str = "", completion_tokens: int = 0) -> AgentRun:
    """A model round requested tools and their results were folded back."""
    _require_active(run, "tool_calls")
    updated = replace(
        run,
        state=RunState.RUNNING,
        step_count=run.step_count + 1,
        token_budget_remaining=run.token_budget_remaining - max(0, completion_tokens),
        text=run.text + text,
    )
    if updated.step_count >= updated.max_steps:
        return on_budget_exceeded(updated, "max_steps")
    if updated.token_budget_remaining <= 0:
        return on_budget_exceeded(updated, "token_budget")
    return updated


def on_final_text(run: AgentRun, text: str = "", completion_tokens: int = 0) -> AgentRun:
    """A model round produced no tool calls."""
    _require_active(run, "final_text")
    return replace(
        run,
        state=RunState.COMPLETED,
        token_budget_remaining=run.token_budget_remaining - max(0, completion_tokens),
        text=run.text + text,
        termination_reason="completed",
    )


def on_budget_exceeded(run: AgentRun, reason: str) -> AgentRun:
    _require_active(run, "budget_exceeded")
    return replace(run, state=RunState.BUDGET_EXCEEDED, termination_reason=reason)


def on_failure(run: AgentRun, reason: str, text: str = "") -> AgentRun:
    _require_active(run, "failure")
    return replace(run, state=RunState.FAILED, termination_reason=reason, text=run.text + text)


def message_tokens(message: Message, count_tokens: Callable[[str], int]) -> int:
    """Estimate the tokens a message occupies in the model context."""
    total = count_tokens(message.content or "")
    for call in message.tool_calls:
        total += count_tokens(call.name) + count_tokens(json.dumps(call.arguments))
    return total + 4


def trim_history(
    messages: list[Message],
    max_tokens: int,
    count_tokens: Callable[[str], int],
) -> list[Message]:
    """Drop the oldest non-system turns until ``messages`` fit ``max_tokens``.

    System messages are always kept, in front. Trimming never leaves an
    assistant or tool message as the first non-system turn.
    """
    system = [message for message in messages if message.role == "system"]
    rest = [message for message in messages if message.role != "system"]

    budget = max_tokens - sum(message_tokens(m, count_tokens) for m in system)
    sizes = [message_tokens(m, count_tokens) for m in rest]
    total = sum(sizes)

    start = 0
    while start < len(rest) and total > budget:
        total -= sizes[start]
        start += 1
    while start < len(rest) and rest[start].role in {"assistant", "tool"}:
        total -= sizes[start]
        start += 1

    if start:
        log.debug("Trimmed conversation history", dropped=start, kept=len(rest) - start)
    return system + rest[start:]


@contextmanager
def working_directory(path: str | Path | None) -> Iterator[Path]:
    """Change the process cwd for the duration of the block and always restore it."""
    original = Path.cwd()
    if path is None:
        yield original
        return
    target = Path(path).expanduser().resolve()
    os.chdir(target)
    try:
        yield target
    finally:
        os.chdir(original)


def _tool_definitions(tools: ToolRegistry) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name=definition["name"],
            description=definition["description"],
            parameters=definition["parameters"],
        )
        for definition in tools.get_definitions()
    ]


class ToolCallingLoop:
    """Runs model turns and tool calls until the run reaches a terminal state.

    Text is yielded as it streams in. After iteration ``self.run`` holds the
    terminal ``AgentRun``. A FAILED run raises ``AgentRunError``.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        max_steps: int,
        max_output_tokens: int,
        context_max_tokens: int | None = None,
    ):
        self.provider = provider
        self.tools = tools
        self.context_max_tokens = context_max_tokens
        self.run = start_run(max_steps, max_output_tokens)
        self.last_usage: dict[str, int] = {}

    def _build_context(self, prior: list[Message], current: list[Message]) -> list[Message]:
        if not self.context_max_tokens:
            return prior + current
        current_tokens = sum(message_tokens(m, self.provider.count_tokens) for m in current)
        budget = max(0, self.context_max_tokens - current_tokens)
        return trim_history(prior, budget, self.provider.count_tokens) + current

    async def _execute_tool_call(self, call: ToolCall, abort_event: asyncio.Event | None) -> Message:
        """Run one tool call; failures become error results for the model."""
        try:
            result = await self.tools.execute(call.name, call.arguments, abort_event=abort_event)
            return Message(
                role="tool",
                content=result.content,
                tool_call_id=call.id,
                tool_name=call.name,
            )
        except CjodeError as e:
            log.info("Tool call failed", tool=call.name, error=str(e))
            return Message(
                role="tool",
                content=f"Error: {e}",
                tool_call_id=call.id,
                tool_name=call.name,
                is_error=True,
            )

    async def iter_text(
        self,
        prior: list[Message],
        user_message: Message,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Drive the loop, yielding final-answer text chunks as they arrive."""
        current: list[Message] = [user_message]
        definitions = _tool_definitions(self.tools)
        self.run = on_start(self.run)
        log.info("Agent run started", max_steps=self.run.max_steps, token_budget=self.run.token_budget_remaining)

        try:
            while not self.run.is_terminal:
                if abort_event is not None and abort_event.is_set():
                    self.run = on_failure(self.run, "aborted")
                    break

                response: LLMResponse | None = None
                turn_text: list[str] = []
                stream = self.provider.complete_streaming(
                    self._build_context(prior, current),
                    tools=definitions or None,
                    max_tokens=max(1, self.run.token_budget_remaining),
                )
                async with aclosing(stream):
                    async for chunk in stream:
                        if chunk.text:
                            turn_text.append(chunk.text)
                            yield chunk.text
                        if chunk.response is not None:
                            response = chunk.response
                        if abort_event is not None and abort_event.is_set():
                            break

                if abort_event is not None and abort_event.is_set():
                    self.run = on_failure(self.run, "aborted", "".join(turn_text))
                    break
                if response is None:
                    raise LLMError("Model stream ended without a final response")

                self.last_usage = dict(response.usage)
                completion_tokens = int(response.usage.get("completion_tokens", 0))
                text = "".join(turn_text) or response.content

                if not response.tool_calls:
                    self.run = on_final_text(self.run, text, completion_tokens)
                    break

                current.append(Message(role="assistant", content=text, tool_calls=list(response.tool_calls)))
                for call in response.tool_calls:
                    current.append(await self._execute_tool_call(call, abort_event))

                self.run = on_tool_calls(self.run, text, completion_tokens)
                log.debug("Agent step finished", step=self.run.step_count, tools=[c.name for c in response.tool_calls])

        except LLMError as e:
            log.error("Model call failed", error=str(e))
            self.run = on_failure(self.run, "model_error")
            raise AgentRunError(str(e), reason="model_error") from e
        except CjodeError as e:
            log.error("Agent run failed", error=str(e))
            self.run = on_failure(self.run, "error")
            raise AgentRunError(str(e)) from e
        except Exception as e:
            log.exception("Unexpected error in agent run", error=str(e))
            self.run = on_failure(self.run, "error")
            raise AgentRunError(str(e)) from e

        log.info(
            "Agent run finished",
            state=self.run.state.value,
            reason=self.run.termination_reason,
            steps=self.run.step_count,
        )
        if self.run.state is RunState.FAILED:
            raise AgentRunError("Agent run aborted", reason=self.run.termination_reason or "error")


class Agent:
    """Conversation-level orchestrator on top of ``ToolCallingLoop``."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        store: ConversationStore | None = None,
        config: Config | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider or get_provider()
        self.tools = tools or get_tool_registry()
        self.store = store or get_conversation_store()

    def _make_loop(self, max_steps: int | None = None) -> ToolCallingLoop:
        return ToolCallingLoop(
            provider=self.provider,
            tools=self.tools,
            max_steps=max_steps or self.config.agent.max_steps,
            max_output_tokens=self.config.agent.resolved_max_output_tokens(),
            context_max_tokens=self.config.context.max_tokens,
        )

    async def stream(
        self,
        conversation_id: str,
        message: str,
        abort_event: asyncio.Event | None = None,
        on_run: Callable[[AgentRun], None] | None = None,
    ) -> AsyncIterator[str]:
        """Append the user turn, run the loop and append the assistant turn.

        The assistant turn is stored only when the run completes or exceeds
        its budget; text of a failed run is not stored. ``on_run`` receives
        the final run of this call, whatever its outcome.
        """
        await self.store.create_if_absent(conversation_id)
        prior = await self.store.get(conversation_id) or []
        user_message = Message(role="user", content=message)
        await self.store.append(conversation_id, user_message)

        loop = self._make_loop()
        try:
            async for chunk in loop.iter_text(prior, user_message, abort_event):
                yield chunk
        finally:
            if on_run is not None:
                on_run(loop.run)

        await self.store.append(conversation_id, Message(role="assistant", content=loop.run.text))

    async def complete(
        self,
        conversation_id: str,
        message: str,
        abort_event: asyncio.Event | None = None,
        on_run: Callable[[AgentRun], None] | None = None,
    ) -> str:
        """Buffered variant of ``stream``."""
        parts = [chunk async for chunk in self.stream(conversation_id, message, abort_event, on_run)]
        return "".join(parts)


@dataclass
class TaskResult:
    response: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"response": self.response, "success": self.success, "error": self.error}


async def run_task(
    prompt: str,
    working_dir: str | Path | None = None,
    system_prompt: str | None = None,
    max_steps: int | None = None,
    provider: LLMProvider | None = None,
    tools: ToolRegistry | None = None,
    config: Config | None = None,
) -> TaskResult:
    """Run one prompt to completion against a repository.

    The process cwd is switched to ``working_dir`` for the run and restored
    afterwards; tools are confined to it.
    """
    cfg = config or get_config()
    loader = get_instruction_loader()
    instructions = system_prompt or loader.load(TASK_SYSTEM_PROMPT)
    steps = max_steps or cfg.agent.long_horizon_max_steps

    try:
        with working_directory(working_dir) as root:
            registry = tools or build_default_registry(cfg, workspace_root=root)
            loop = ToolCallingLoop(
                provider=provider or get_provider(),
                tools=registry,
                max_steps=steps,
                max_output_tokens=cfg.agent.resolved_max_output_tokens(),
                context_max_tokens=cfg.context.max_tokens,
            )
            parts = [
                chunk
                async for chunk in loop.iter_text(
                    [Message(role="system", content=instructions)],
                    Message(role="user", content=prompt),
                )
            ]
        return TaskResult(response="".join(parts), success=True)
    except (CjodeError, OSError) as e:
        log.error("Task failed", error=str(e))
        return TaskResult(response="", success=False, error=str(e))
