"""Command-line entry point for cjode."""

import asyncio
import json
import os
import sys
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Iterator

import httpx
import typer

from cjode.config import Config, set_config
from cjode.logging import configure_logging, log

app = typer.Typer(help="cjode - a coding agent that works inside your repository")


def _load_config(config: str = "", verbose: bool = False) -> Config:
    """Load config (explicit file or default lookup), set it globally, configure logging."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            print(f"Failed to load config {config}: {e}", file=sys.stderr)
            raise typer.Exit(code=1)
    else:
        cfg = Config.load()
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


class SSEDecoder:
    """Incremental Server-Sent Events decoder producing ``(event, data)`` pairs."""

    def __init__(self) -> None:
        self.event = "message"
        self.data_lines: list[str] = []

    def feed(self, raw_line: str) -> tuple[str, dict[str, Any]] | None:
        line = raw_line.rstrip("\r")
        if line:
            if line.startswith("event:"):
                self.event = line[6:].strip()
            elif line.startswith("data:"):
                self.data_lines.append(line[5:].lstrip())
            return None

        event, text = self.event, "\n".join(self.data_lines)
        self.event = "message"
        self.data_lines = []
        if not text:
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = {"raw": text}
        return event, payload if isinstance(payload, dict) else {"value": payload}


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Decode a complete sequence of SSE lines."""
    decoder = SSEDecoder()
    for line in [*lines, ""]:
        parsed = decoder.feed(line)
        if parsed is not None:
            yield parsed


async def stream_chat(server: str, message: str, conversation_id: str) -> AsyncIterator[tuple[str, dict[str, Any]]]:
    """POST one message to ``/chat`` and yield SSE events as they arrive."""
    decoder = SSEDecoder()
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream(
            "POST",
            f"{server.rstrip('/')}/chat",
            json={"message": message, "conversationId": conversation_id},
            headers={"Accept": "text/event-stream"},
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                parsed = decoder.feed(line)
                if parsed is not None:
                    yield parsed
    parsed = decoder.feed("")
    if parsed is not None:
        yield parsed


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind address (default from config)"),
    port: int = typer.Option(0, "--port", help="Port (default from config)"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the chat server."""
    from cjode.web_server import run_web_server

    cfg = _load_config(config, verbose)
    run_web_server(cfg, host=host or None, port=port or None)


@app.command("eval")
def eval_command(
    prompt: str = typer.Argument(..., help="Task description for the agent"),
    repo: str = typer.Option(..., "--repo", help="Repository to work in"),
    output: str = typer.Option("", "-o", "--output", help="Write the JSON result to this file"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one task against a repository and report the result."""
    from cjode.agent import run_task

    _load_config(config, verbose)
    repo_path = str(Path(repo).expanduser().resolve())
    print("Running cjode agent evaluation...")
    print(f"Repository: {repo_path}")
    print(f"Prompt: {prompt[:100] + '...' if len(prompt) > 100 else prompt}\n")

    start = time.monotonic()
    result = asyncio.run(run_task(prompt, repo_path))
    duration_ms = int((time.monotonic() - start) * 1000)

    payload = {
        "success": result.success,
        "prompt": prompt,
        "response": result.response,
        "error": result.error,
        "duration_ms": duration_ms,
        "timestamp": datetime.now(UTC).isoformat(),
        "repo_path": repo_path,
    }

    if output:
        Path(output).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"Results saved to {output}")
    else:
        print("--- AGENT RESPONSE ---")
        print(result.response)
        if result.error:
            print("--- ERROR ---")
            print(result.error)

    print(f"Duration: {duration_ms}ms")
    print(f"Success: {'yes' if result.success else 'no'}")
    raise typer.Exit(code=0 if result.success else 1)


@app.command()
def benchmark(
    tasks_file: str = typer.Argument(..., help="JSON array or JSONL file of {id, repo, prompt, test_command}"),
    output: str = typer.Option("benchmark-results.json", "-o", "--output", help="Where to write the summary JSON"),
    limit: int = typer.Option(0, "--limit", help="Run at most this many tasks"),
    repo_filter: str = typer.Option("", "--filter", help="Only tasks whose repo path contains this text"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run a task set through the agent and write per-task results plus a summary."""
    from cjode.benchmark import load_tasks, run_benchmark, select_tasks, write_summary
    from cjode.exceptions import ConfigurationError

    _load_config(config, verbose)
    try:
        tasks = select_tasks(load_tasks(tasks_file), repo_filter=repo_filter, limit=limit or None)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise typer.Exit(code=1)

    print(f"Running {len(tasks)} benchmark tasks...")

    def _report(index: int, result) -> None:
        status = "SUCCESS" if result.success else "FAILED"
        if not result.test_results.tests_run:
            tests = "no tests run"
        elif result.test_results.tests_passed:
            tests = "tests passed"
        else:
            tests = "tests failed"
        print(
            f"[{index}/{len(tasks)}] {result.task.id}: {status} | {tests} "
            f"({result.duration_ms / 1000:.1f}s, {result.scorecard.git_changes.files_changed} files changed)"
        )

    summary = asyncio.run(run_benchmark(tasks, on_result=_report))
    write_summary(summary, output)

    tests_run = summary.tests_passed_count + summary.tests_failed_count
    print(f"Agent success: {summary.successful_tasks}/{summary.total_tasks} ({summary.success_rate:.1f}%)")
    print(f"Tests passed: {summary.tests_passed_count}/{tests_run} ({summary.test_pass_rate:.1f}%)")
    print(f"Average duration: {summary.average_duration_ms / 1000:.1f}s")
    print(f"Results saved to {output}")


async def _chat_loop(server: str) -> None:
    conversation_id = str(uuid.uuid4())
    print("cjode chat (Ctrl+C to exit)")
    while True:
        try:
            message = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            return
        if not message.strip():
            continue
        try:
            async for event, data in stream_chat(server, message, conversation_id):
                if event == "token":
                    print(data.get("content", ""), end="", flush=True)
                elif event == "error":
                    print(f"\n[error] {data.get('error', 'unknown error')}")
                elif event == "done":
                    print()
        except httpx.HTTPError as e:
            log.error("Chat request failed", error=str(e))
            print(f"\n[error] could not reach {server}: {e}")


@app.command()
def chat(
    server: str = typer.Option(
        os.environ.get("CJODE_SERVER_URL", "http://127.0.0.1:3001"),
        "--server",
        help="Server base URL",
    ),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat with a running cjode server."""
    _load_config("", verbose)
    try:
        asyncio.run(_chat_loop(server))
    except KeyboardInterrupt:
        print()


@app.command()
def version() -> None:
    """Show version information."""
    from cjode import __version__
    print(f"cjode v{__version__}")


if __name__ == "__main__":
    app()
