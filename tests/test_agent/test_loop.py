import asyncio
import os
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
from pydantic import Field

from cjode.agent import Agent, AgentRun, RunState, ToolCallingLoop, run_task
from cjode.config import Config
from cjode.exceptions import AgentRunError, LLMAPIError
from cjode.llm import LLMProvider, LLMResponse, Message, StreamChunk, ToolCall
from cjode.session import InMemoryConversationStore
from cjode.tools.registry import Tool, ToolInput, ToolOutput, ToolRegistry


class ScriptedProvider(LLMProvider):
    """Replays canned responses and records the context of every call."""

    model = "scripted"

    def __init__(self, responses: list[LLMResponse | Exception], repeat_last: bool = False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls: list[list[Message]] = []
        self.max_tokens_seen: list[int | None] = []

    def _next(self) -> LLMResponse:
        if len(self.responses) > 1 or not self.repeat_last:
            item = self.responses.pop(0)
        else:
            item = self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.calls.append(list(messages))
        return self._next()

    async def complete_streaming(
        self, messages, tools=None, temperature=None, max_tokens=None
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(list(messages))
        self.max_tokens_seen.append(max_tokens)
        response = self._next()
        if response.content:
            yield StreamChunk(text=response.content)
        yield StreamChunk(response=response)

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


class NoteInput(ToolInput):
    note: str = Field(description="Note to record")


class NoteOutput(ToolOutput):
    recorded: str


class NoteTool(Tool):
    name = "note"
    description = "Record a note"
    input_model = NoteInput
    output_model = NoteOutput

    def __init__(self):
        self.notes: list[str] = []

    async def execute(self, params: NoteInput, **kwargs: Any) -> NoteOutput:
        self.notes.append(params.note)
        return NoteOutput(recorded=params.note)


def _final(text: str, completion_tokens: int = 5) -> LLMResponse:
    return LLMResponse(content=text, usage={"prompt_tokens": 10, "completion_tokens": completion_tokens})


def _call(text: str, name: str, arguments: dict[str, Any], completion_tokens: int = 5) -> LLMResponse:
    return LLMResponse(
        content=text,
        tool_calls=[ToolCall(id=f"call_{name}", name=name, arguments=arguments)],
        usage={"prompt_tokens": 10, "completion_tokens": completion_tokens},
    )


def _registry(tmp_path: Path) -> tuple[ToolRegistry, NoteTool]:
    registry = ToolRegistry(workspace_root=tmp_path)
    tool = NoteTool()
    registry.register(tool)
    return registry, tool


async def _drain(loop: ToolCallingLoop, prior: list[Message], text: str, abort_event=None) -> str:
    chunks = [chunk async for chunk in loop.iter_text(prior, Message(role="user", content=text), abort_event)]
    return "".join(chunks)


SYSTEM = [Message(role="system", content="be helpful")]


@pytest.mark.asyncio
async def test_plain_answer_completes_in_one_round(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    provider = ScriptedProvider([_final("hello there")])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100)

    text = await _drain(loop, SYSTEM, "hi")

    assert text == "hello there"
    assert loop.run.state is RunState.COMPLETED
    assert loop.run.step_count == 0
    assert [m.role for m in provider.calls[0]] == ["system", "user"]


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_to_the_model(tmp_path: Path):
    registry, tool = _registry(tmp_path)
    provider = ScriptedProvider([
        _call("Let me note that. ", "note", {"note": "remember"}),
        _final("Done."),
    ])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100)

    text = await _drain(loop, SYSTEM, "note something")

    assert text == "Let me note that. Done."
    assert tool.notes == ["remember"]
    second_context = provider.calls[1]
    assert [m.role for m in second_context] == ["system", "user", "assistant", "tool"]
    assert second_context[2].tool_calls[0].name == "note"
    assert second_context[3].tool_call_id == "call_note"
    assert '"recorded":"remember"' in second_context[3].content
    assert second_context[3].is_error is False
    assert loop.run.step_count == 1


@pytest.mark.asyncio
async def test_tool_failures_become_error_results(tmp_path: Path):
    registry, tool = _registry(tmp_path)
    provider = ScriptedProvider([
        _call("", "missing_tool", {}),
        _call("", "note", {"wrong": "field"}),
        _final("recovered"),
    ])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100)

    text = await _drain(loop, SYSTEM, "go")

    assert text == "recovered"
    assert tool.notes == []
    not_found = provider.calls[1][-1]
    invalid = provider.calls[2][-1]
    assert not_found.is_error and "Tool not found: missing_tool" in not_found.content
    assert invalid.is_error and "Invalid input for tool 'note'" in invalid.content


@pytest.mark.asyncio
async def test_step_budget_returns_accumulated_text(tmp_path: Path):
    registry, tool = _registry(tmp_path)
    provider = ScriptedProvider([_call("step. ", "note", {"note": "again"})], repeat_last=True)
    loop = ToolCallingLoop(provider, registry, max_steps=3, max_output_tokens=1000)

    text = await _drain(loop, SYSTEM, "loop forever")

    assert text == "step. step. step. "
    assert loop.run.state is RunState.BUDGET_EXCEEDED
    assert loop.run.termination_reason == "max_steps"
    assert len(provider.calls) == 3
    assert len(tool.notes) == 3


@pytest.mark.asyncio
async def test_token_budget_bounds_the_run(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    provider = ScriptedProvider([_call("x", "note", {"note": "n"}, completion_tokens=6)], repeat_last=True)
    loop = ToolCallingLoop(provider, registry, max_steps=50, max_output_tokens=10)

    await _drain(loop, SYSTEM, "spend tokens")

    assert loop.run.state is RunState.BUDGET_EXCEEDED
    assert loop.run.termination_reason == "token_budget"
    assert provider.max_tokens_seen == [10, 4]


@pytest.mark.asyncio
async def test_model_failure_fails_the_run(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    provider = ScriptedProvider([LLMAPIError("overloaded", status_code=529)])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100)

    with pytest.raises(AgentRunError) as exc_info:
        await _drain(loop, SYSTEM, "hi")

    assert exc_info.value.reason == "model_error"
    assert loop.run.state is RunState.FAILED


@pytest.mark.asyncio
async def test_abort_before_first_round_fails_the_run(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    provider = ScriptedProvider([_final("never")])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100)
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(AgentRunError) as exc_info:
        await _drain(loop, SYSTEM, "hi", abort_event)

    assert exc_info.value.reason == "aborted"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_long_history_is_trimmed_but_current_turns_kept(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    provider = ScriptedProvider([_final("ok")])
    loop = ToolCallingLoop(provider, registry, max_steps=5, max_output_tokens=100, context_max_tokens=60)
    prior = SYSTEM + [
        Message(role="user", content="old question " * 20),
        Message(role="assistant", content="old answer " * 20),
    ]

    await _drain(loop, prior, "new question")

    assert [m.content for m in provider.calls[0]] == ["be helpful", "new question"]


def _config() -> Config:
    config = Config()
    config.agent.max_steps = 5
    config.agent.max_output_tokens = 1000
    return config


@pytest.mark.asyncio
async def test_agent_stores_user_and_assistant_turns(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    store = InMemoryConversationStore("system prompt")
    provider = ScriptedProvider([_call("a", "note", {"note": "n"}), _final("b")])
    agent = Agent(provider=provider, tools=registry, store=store, config=_config())

    runs: list[AgentRun] = []

    response = await agent.complete("conv-1", "hello", on_run=runs.append)

    messages = await store.get("conv-1")
    assert response == "ab"
    assert [(m.role, m.content) for m in messages] == [
        ("system", "system prompt"),
        ("user", "hello"),
        ("assistant", "ab"),
    ]
    assert [run.state for run in runs] == [RunState.COMPLETED]


@pytest.mark.asyncio
async def test_agent_passes_previous_turns_to_the_model(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    store = InMemoryConversationStore("system prompt")
    provider = ScriptedProvider([_final("first"), _final("second")])
    agent = Agent(provider=provider, tools=registry, store=store, config=_config())

    await agent.complete("conv-1", "one")
    await agent.complete("conv-1", "two")

    assert [m.content for m in provider.calls[1]] == ["system prompt", "one", "first", "two"]


@pytest.mark.asyncio
async def test_concurrent_chats_each_receive_their_own_run(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    store = InMemoryConversationStore("system prompt")
    provider = ScriptedProvider([_final("one"), _final("two")])
    agent = Agent(provider=provider, tools=registry, store=store, config=_config())
    runs_a: list[AgentRun] = []
    runs_b: list[AgentRun] = []

    response_a, response_b = await asyncio.gather(
        agent.complete("conv-a", "hi", on_run=runs_a.append),
        agent.complete("conv-b", "hi", on_run=runs_b.append),
    )

    assert sorted([response_a, response_b]) == ["one", "two"]
    assert [run.text for run in runs_a] == [response_a]
    assert [run.text for run in runs_b] == [response_b]

@pytest.mark.asyncio
async def test_failed_run_keeps_user_turn_only(tmp_path: Path):
    registry, _ = _registry(tmp_path)
    store = InMemoryConversationStore("system prompt")
    provider = ScriptedProvider([LLMAPIError("boom")])
    agent = Agent(provider=provider, tools=registry, store=store, config=_config())
    runs: list[AgentRun] = []

    with pytest.raises(AgentRunError):
        await agent.complete("conv-1", "hello", on_run=runs.append)

    messages = await store.get("conv-1")
    assert [m.role for m in messages] == ["system", "user"]
    assert [run.state for run in runs] == [RunState.FAILED]


@pytest.mark.asyncio
async def test_run_task_works_inside_repo_and_restores_cwd(tmp_path: Path):
    (tmp_path / "README.md").write_text("line one\nline two\n", encoding="utf-8")
    provider = ScriptedProvider([
        _call("", "read", {"path": "README.md", "read_range": [2, 2]}),
        _final("The second line is 'line two'."),
    ])
    config = _config()
    config.tools.enabled = ["read"]
    original_cwd = os.getcwd()

    result = await run_task("What is on line 2?", working_dir=tmp_path, provider=provider, config=config)

    assert result.success is True
    assert result.error is None
    assert result.response == "The second line is 'line two'."
    assert '"content":"line two"' in provider.calls[1][-1].content
    assert provider.calls[0][0].role == "system"
    assert os.getcwd() == original_cwd


@pytest.mark.asyncio
async def test_run_task_reports_failure(tmp_path: Path):
    provider = ScriptedProvider([LLMAPIError("rate limited", status_code=429)])
    registry, _ = _registry(tmp_path)

    result = await run_task("anything", working_dir=tmp_path, provider=provider, tools=registry, config=_config())

    assert result.success is False
    assert result.response == ""
    assert "rate limited" in result.error
    assert result.to_dict() == {"response": "", "success": False, "error": "rate limited"}


@pytest.mark.asyncio
async def test_run_task_missing_directory(tmp_path: Path):
    provider = ScriptedProvider([_final("unused")])

    result = await run_task("anything", working_dir=tmp_path / "nope", provider=provider, config=_config())

    assert result.success is False
    assert provider.calls == []
