"""Benchmark runner: a task set through ``run_task`` with a JSON scorecard."""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from cjode import agent
from cjode.agent import TaskResult
from cjode.exceptions import ConfigurationError
from cjode.logging import get_logger

log = get_logger(__name__)

TEST_OUTPUT_CHARS = 5000
DEFAULT_TEST_TIMEOUT = 300.0


class BenchmarkTask(BaseModel):
    """One benchmark entry read from a task file."""

    id: str = ""
    repo: str
    prompt: str = Field(min_length=1)
    test_command: str | None = None


class SuiteResults(BaseModel):
    tests_run: bool = False
    tests_passed: bool = False
    test_output: str = ""
    error_message: str | None = None


class GitChanges(BaseModel):
    additions: int = 0
    deletions: int = 0
    files_changed: int = 0


class Scorecard(BaseModel):
    task_completed: bool = False
    git_changes: GitChanges = Field(default_factory=GitChanges)
    solution_quality: Literal["correct", "incorrect", "untested"] = "untested"


class BenchmarkResult(BaseModel):
    task: BenchmarkTask
    success: bool
    response: str = ""
    error: str | None = None
    duration_ms: int = 0
    test_results: SuiteResults = Field(default_factory=SuiteResults)
    scorecard: Scorecard = Field(default_factory=Scorecard)


class BenchmarkSummary(BaseModel):
    total_tasks: int
    successful_tasks: int
    failed_tasks: int
    success_rate: float
    tests_passed_count: int
    tests_failed_count: int
    test_pass_rate: float
    average_duration_ms: float
    results: list[BenchmarkResult]
    timestamp: str


TaskRunner = Callable[..., Awaitable[TaskResult]]


def load_tasks(path: Path | str) -> list[BenchmarkTask]:
    """Load tasks from a JSON array or a JSONL file.

    Raises:
        ConfigurationError: The file is missing or an entry is malformed
    """
    task_path = Path(path).expanduser()
    try:
        text = task_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read task file {task_path}: {e}")

    try:
        stripped = text.lstrip()
        if stripped.startswith("["):
            entries = json.loads(stripped)
        else:
            entries = [json.loads(line) for line in text.splitlines() if line.strip()]
        tasks = [BenchmarkTask.model_validate(entry) for entry in entries]
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid task file {task_path}: {e}")

    for index, task in enumerate(tasks, start=1):
        if not task.id:
            task.id = str(index)
    return tasks


def select_tasks(
    tasks: list[BenchmarkTask],
    repo_filter: str = "",
    limit: int | None = None,
) -> list[BenchmarkTask]:
    if repo_filter:
        tasks = [task for task in tasks if repo_filter in task.repo]
    if limit:
        tasks = tasks[:limit]
    return tasks


async def _run_shell(command: str, cwd: Path, timeout: float) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        "sh",
        "-c",
        command,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, output.decode("utf-8", errors="replace")


async def run_tests(task: BenchmarkTask, repo_path: Path, timeout: float = DEFAULT_TEST_TIMEOUT) -> SuiteResults:
    """Run the task's test command, if any, in the repository."""
    if not task.test_command:
        return SuiteResults()

    log.info("Running benchmark tests", task=task.id, command=task.test_command)
    try:
        code, output = await _run_shell(task.test_command, repo_path, timeout)
    except asyncio.TimeoutError:
        return SuiteResults(tests_run=True, error_message=f"Tests timed out after {timeout}s")
    except OSError as e:
        return SuiteResults(error_message=f"Test execution error: {e}")

    passed = code == 0
    return SuiteResults(
        tests_run=True,
        tests_passed=passed,
        test_output=output[:TEST_OUTPUT_CHARS],
        error_message=None if passed else "Tests failed",
    )


def parse_numstat(output: str) -> GitChanges:
    """Sum ``git diff --numstat`` lines; binary files count as changed only."""
    additions = deletions = files = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        files += 1
        if parts[0].isdigit():
            additions += int(parts[0])
        if parts[1].isdigit():
            deletions += int(parts[1])
    return GitChanges(additions=additions, deletions=deletions, files_changed=files)


async def git_changes(repo_path: Path) -> GitChanges:
    try:
        code, output = await _run_shell("git diff --numstat HEAD", repo_path, 60)
    except (OSError, asyncio.TimeoutError):
        return GitChanges()
    if code != 0:
        return GitChanges()
    return parse_numstat(output)


def build_scorecard(success: bool, tests: SuiteResults, changes: GitChanges) -> Scorecard:
    if tests.tests_run:
        quality = "correct" if tests.tests_passed else "incorrect"
    else:
        quality = "untested"
    return Scorecard(
        task_completed=success and changes.files_changed > 0,
        git_changes=changes,
        solution_quality=quality,
    )


async def run_benchmark_task(task: BenchmarkTask, runner: TaskRunner | None = None) -> BenchmarkResult:
    """Run one task, then its tests, and score the repository changes."""
    runner = runner or agent.run_task
    repo_path = Path(task.repo).expanduser().resolve()
    if not repo_path.is_dir():
        return BenchmarkResult(task=task, success=False, error=f"Setup failed: {repo_path} is not a directory")

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await runner(task.prompt, str(repo_path))
    duration_ms = int((loop.time() - started) * 1000)

    tests = await run_tests(task, repo_path)
    changes = await git_changes(repo_path)
    return BenchmarkResult(
        task=task,
        success=result.success,
        response=result.response,
        error=result.error,
        duration_ms=duration_ms,
        test_results=tests,
        scorecard=build_scorecard(result.success, tests, changes),
    )


def summarize(results: list[BenchmarkResult]) -> BenchmarkSummary:
    total = len(results)
    successful = sum(1 for r in results if r.success)
    tests_run = sum(1 for r in results if r.test_results.tests_run)
    tests_passed = sum(1 for r in results if r.test_results.tests_passed)
    return BenchmarkSummary(
        total_tasks=total,
        successful_tasks=successful,
        failed_tasks=total - successful,
        success_rate=(successful / total) * 100 if total else 0.0,
        tests_passed_count=tests_passed,
        tests_failed_count=tests_run - tests_passed,
        test_pass_rate=(tests_passed / tests_run) * 100 if tests_run else 0.0,
        average_duration_ms=sum(r.duration_ms for r in results) / total if total else 0.0,
        results=results,
        timestamp=datetime.now(UTC).isoformat(),
    )


async def run_benchmark(
    tasks: list[BenchmarkTask],
    runner: TaskRunner | None = None,
    on_result: Callable[[int, BenchmarkResult], None] | None = None,
) -> BenchmarkSummary:
    """Run tasks one after another; each run switches the process cwd."""
    results: list[BenchmarkResult] = []
    for index, task in enumerate(tasks, start=1):
        log.info("Benchmark task started", task=task.id, position=index, total=len(tasks))
        result = await run_benchmark_task(task, runner)
        results.append(result)
        if on_result is not None:
            on_result(index, result)
    return summarize(results)


def write_summary(summary: BenchmarkSummary, output: Path | str) -> None:
    data: dict[str, Any] = summary.model_dump()
    Path(output).write_text(json.dumps(data, indent=2), encoding="utf-8")
