import os
from pathlib import Path

import pytest

from cjode.agent import (
    RunState,
    on_budget_exceeded,
    on_failure,
    on_final_text,
    on_start,
    on_tool_calls,
    start_run,
    trim_history,
    working_directory,
)
from cjode.llm import Message, ToolCall


def _count(text: str) -> int:
    return len(text.split())


def test_new_run_starts_in_init():
    run = start_run(max_steps=3, max_output_tokens=100)

    assert run.state is RunState.INIT
    assert run.step_count == 0
    assert run.token_budget_remaining == 100
    assert on_start(run).state is RunState.RUNNING


def test_transitions_do_not_mutate_input():
    run = on_start(start_run(3, 100))

    updated = on_tool_calls(run, "partial", completion_tokens=10)

    assert run.step_count == 0
    assert run.text == ""
    assert updated.step_count == 1
    assert updated.token_budget_remaining == 90
    assert updated.text == "partial"


def test_final_text_completes():
    run = on_final_text(on_start(start_run(3, 100)), "answer", completion_tokens=5)

    assert run.state is RunState.COMPLETED
    assert run.termination_reason == "completed"
    assert run.text == "answer"
    assert run.is_terminal


def test_reaching_max_steps_exceeds_budget():
    run = on_start(start_run(2, 100))

    run = on_tool_calls(run, "a")
    assert run.state is RunState.RUNNING
    run = on_tool_calls(run, "b")

    assert run.state is RunState.BUDGET_EXCEEDED
    assert run.termination_reason == "max_steps"
    assert run.text == "ab"


def test_spending_tokens_exceeds_budget():
    run = on_tool_calls(on_start(start_run(10, 50)), completion_tokens=50)

    assert run.state is RunState.BUDGET_EXCEEDED
    assert run.termination_reason == "token_budget"


@pytest.mark.parametrize(
    "finish",
    [
        lambda run: on_final_text(run, "done"),
        lambda run: on_budget_exceeded(run, "max_steps"),
        lambda run: on_failure(run, "aborted"),
    ],
)
def test_terminal_runs_reject_further_transitions(finish):
    terminal = finish(on_start(start_run(3, 100)))

    assert terminal.is_terminal
    with pytest.raises(ValueError):
        on_tool_calls(terminal, "more")
    with pytest.raises(ValueError):
        on_final_text(terminal, "more")
    with pytest.raises(ValueError):
        on_failure(terminal, "error")


def test_trim_history_keeps_system_and_recent_turns():
    messages = [
        Message(role="system", content="rules"),
        Message(role="user", content="one two three four five six"),
        Message(role="assistant", content="seven eight nine ten"),
        Message(role="user", content="latest"),
    ]

    trimmed = trim_history(messages, max_tokens=12, count_tokens=_count)

    assert [m.content for m in trimmed] == ["rules", "latest"]


def test_trim_history_never_starts_with_tool_output():
    messages = [
        Message(role="system", content="rules"),
        Message(role="user", content="a b c d e f g h"),
        Message(role="assistant", content="", tool_calls=[ToolCall(id="1", name="read", arguments={})]),
        Message(role="tool", content="result", tool_call_id="1", tool_name="read"),
        Message(role="assistant", content="summary"),
        Message(role="user", content="next"),
    ]

    trimmed = trim_history(messages, max_tokens=26, count_tokens=_count)

    assert trimmed[0].role == "system"
    assert trimmed[1].role == "user"
    assert trimmed[-1].content == "next"


def test_trim_history_is_noop_when_it_fits():
    messages = [Message(role="system", content="rules"), Message(role="user", content="hi")]

    assert trim_history(messages, max_tokens=1000, count_tokens=_count) == messages


def test_working_directory_restores_after_error(tmp_path: Path):
    original = os.getcwd()

    with pytest.raises(RuntimeError):
        with working_directory(tmp_path) as target:
            assert os.getcwd() == str(target)
            raise RuntimeError("boom")

    assert os.getcwd() == original
