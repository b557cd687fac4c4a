import json
from pathlib import Path

import pytest

from cjode.agent import TaskResult
from cjode.benchmark import (
    BenchmarkResult,
    BenchmarkTask,
    GitChanges,
    SuiteResults,
    build_scorecard,
    load_tasks,
    parse_numstat,
    run_benchmark_task,
    select_tasks,
    summarize,
)
from cjode.exceptions import ConfigurationError


def test_load_tasks_accepts_json_array_and_numbers_missing_ids(tmp_path: Path):
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps([{"repo": "a", "prompt": "one"}, {"id": "named", "repo": "b", "prompt": "two"}]),
        encoding="utf-8",
    )

    tasks = load_tasks(path)

    assert [t.id for t in tasks] == ["1", "named"]
    assert tasks[0].test_command is None


def test_load_tasks_missing_file_is_configuration_error(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_tasks(tmp_path / "missing.jsonl")


def test_select_tasks_filters_then_limits():
    tasks = [
        BenchmarkTask(id="1", repo="/work/django", prompt="a"),
        BenchmarkTask(id="2", repo="/work/flask", prompt="b"),
        BenchmarkTask(id="3", repo="/work/django-rest", prompt="c"),
    ]

    assert [t.id for t in select_tasks(tasks, repo_filter="django")] == ["1", "3"]
    assert [t.id for t in select_tasks(tasks, repo_filter="django", limit=1)] == ["1"]


def test_parse_numstat_counts_binary_files():
    changes = parse_numstat("3\t1\tsrc/a.py\n-\t-\timage.png\n10\t0\tREADME.md\n")

    assert changes == GitChanges(additions=13, deletions=1, files_changed=3)


def test_scorecard_quality_follows_test_outcome():
    changed = GitChanges(additions=1, files_changed=1)

    passed = build_scorecard(True, SuiteResults(tests_run=True, tests_passed=True), changed)
    failed = build_scorecard(True, SuiteResults(tests_run=True), GitChanges())
    untested = build_scorecard(False, SuiteResults(), changed)

    assert (passed.solution_quality, passed.task_completed) == ("correct", True)
    assert (failed.solution_quality, failed.task_completed) == ("incorrect", False)
    assert (untested.solution_quality, untested.task_completed) == ("untested", False)


def test_summarize_empty_result_set():
    summary = summarize([])

    assert summary.total_tasks == 0
    assert summary.success_rate == 0.0
    assert summary.average_duration_ms == 0.0


def test_summarize_averages_durations():
    task = BenchmarkTask(id="t", repo=".", prompt="p")
    results = [
        BenchmarkResult(task=task, success=True, duration_ms=100),
        BenchmarkResult(task=task, success=False, duration_ms=300),
    ]

    summary = summarize(results)

    assert summary.average_duration_ms == 200.0
    assert summary.success_rate == 50.0
    assert summary.test_pass_rate == 0.0


@pytest.mark.asyncio
async def test_missing_repo_is_recorded_without_running_agent(tmp_path: Path):
    async def _runner(prompt, working_dir=None, **kwargs):
        raise AssertionError("agent must not run")

    task = BenchmarkTask(id="t", repo=str(tmp_path / "absent"), prompt="p")

    result = await run_benchmark_task(task, runner=_runner)

    assert result.success is False
    assert result.error.startswith("Setup failed")


@pytest.mark.asyncio
async def test_task_output_of_test_command_is_captured(tmp_path: Path):
    async def _runner(prompt, working_dir=None, **kwargs):
        return TaskResult(response="ok", success=True)

    task = BenchmarkTask(id="t", repo=str(tmp_path), prompt="p", test_command="echo suite-ran; exit 1")

    result = await run_benchmark_task(task, runner=_runner)

    assert result.success is True
    assert result.test_results.tests_run is True
    assert result.test_results.tests_passed is False
    assert "suite-ran" in result.test_results.test_output
    assert result.scorecard.git_changes == GitChanges()
