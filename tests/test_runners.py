from __future__ import annotations

import io
import json
import subprocess
import threading
import time
from pathlib import Path

import pytest

import orbital.runners as runners
from orbital.config import LoopConfig
from orbital.constants import OUTPUT_TRUNCATION_MARKER
from orbital.models import ExecutorError, IterationTimeoutError, RunCancelledError
from orbital.utils import _log_path


class _StaticStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = list(lines)

    def readline(self) -> str:
        if self._lines:
            return self._lines.pop(0)
        time.sleep(0.005)
        return ""

    def close(self) -> None:
        return None


class _FinishedProcess:
    stdout_lines: list[str] = []
    returncode = 0
    launched: list[list[str]] = []

    def __init__(self, argv, **_kwargs) -> None:
        type(self).launched.append(list(argv))
        self.stdout = _StaticStream(type(self).stdout_lines)
        self.stderr = _StaticStream(["warning: slow network\n"])
        self.pid = 999999

    def wait(self, timeout: float | None = None) -> int:
        return type(self).returncode

    def terminate(self) -> None:
        return None

    def kill(self) -> None:
        return None


class _HangingProcess:
    def __init__(self, *_args, **_kwargs) -> None:
        self.stdout = _StaticStream(
            [json.dumps({"type": "result", "total_cost_usd": 0.02, "usage": {"input_tokens": 5, "output_tokens": 1}}) + "\n"]
        )
        self.stderr = _StaticStream([])
        self.pid = 999999
        self.terminated = False

    def wait(self, timeout: float | None = None) -> int:
        if self.terminated:
            return -15
        time.sleep(min(timeout or 0.01, 0.01))
        raise subprocess.TimeoutExpired(cmd="claude", timeout=timeout or 0.0)

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.terminated = True


def _stream_lines() -> list[str]:
    return [
        json.dumps({"type": "system", "message": "init"}) + "\n",
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "<promise>COMPLETE</promise>"}]}}) + "\n",
        json.dumps(
            {
                "type": "result",
                "total_cost_usd": 0.05,
                "duration_ms": 1200,
                "usage": {"input_tokens": 100, "cache_read_input_tokens": 20, "output_tokens": 30},
            }
        )
        + "\n",
    ]


@pytest.fixture
def fake_claude(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(runners.shutil, "which", lambda name: f"/usr/local/bin/{name}")
    _FinishedProcess.stdout_lines = _stream_lines()
    _FinishedProcess.returncode = 0
    _FinishedProcess.launched = []
    monkeypatch.setattr(runners.subprocess, "Popen", _FinishedProcess)
    return _FinishedProcess


def test_build_args_orders_optional_flags_before_prompt() -> None:
    config = LoopConfig(
        model="sonnet",
        max_budget=12.5,
        dangerously_skip_permissions=True,
        session_id="sess-1",
        system_prompt="be careful",
        max_turns=4,
    )
    args = runners.ClaudeExecutor(config).build_args("do the thing")

    assert args == [
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "sonnet",
        "--max-budget-usd",
        "12.50",
        "--dangerously-skip-permissions",
        "--resume",
        "sess-1",
        "--append-system-prompt",
        "be careful",
        "--max-turns",
        "4",
        "do the thing",
    ]


def test_build_args_omits_unset_options() -> None:
    args = runners.ClaudeExecutor(LoopConfig()).build_args("go")
    assert "--dangerously-skip-permissions" not in args
    assert "--resume" not in args
    assert "--max-turns" not in args
    assert args[-1] == "go"


def test_get_command_quotes_arguments_with_spaces() -> None:
    command = runners.ClaudeExecutor(LoopConfig()).get_command("fix the bug")
    assert command.startswith("claude -p --output-format stream-json")
    assert command.endswith('"fix the bug"')


def test_execute_collects_output_and_usage(fake_claude, tmp_path: Path) -> None:
    echo = io.StringIO()
    executor = runners.ClaudeExecutor(LoopConfig(), repo_root=tmp_path, stream=echo)

    result = executor.execute("implement spec.md")

    assert result.error is None
    assert result.completed
    assert result.exit_code == 0
    assert "<promise>COMPLETE</promise>" in result.output
    assert result.cost_usd == pytest.approx(0.05)
    assert result.tokens_in == 120
    assert result.tokens_out == 30
    assert echo.getvalue() == "".join(_stream_lines())
    assert fake_claude.launched[0][0] == "/usr/local/bin/claude"
    assert fake_claude.launched[0][-1] == "implement spec.md"

    log_text = _log_path(tmp_path).read_text(encoding="utf-8")
    assert "agent start model=opus" in log_text
    assert "agent stderr: warning: slow network" in log_text
    assert "agent exit returncode=0" in log_text


def test_non_zero_exit_is_not_an_error(fake_claude) -> None:
    fake_claude.returncode = 1

    result = runners.ClaudeExecutor(LoopConfig()).execute("go")

    assert result.error is None
    assert not result.completed
    assert result.exit_code == 1
    assert result.cost_usd == pytest.approx(0.05)


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runners.shutil, "which", lambda _name: None)
    with pytest.raises(ExecutorError, match="claude not found in PATH"):
        runners.ClaudeExecutor(LoopConfig()).execute("go")


def test_timeout_terminates_and_keeps_partial_stats(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(runners.shutil, "which", lambda name: f"/bin/{name}")
    monkeypatch.setattr(runners.subprocess, "Popen", _HangingProcess)
    executor = runners.ClaudeExecutor(LoopConfig(iteration_timeout_seconds=0.2), repo_root=tmp_path)

    result = executor.execute("go")

    assert isinstance(result.error, IterationTimeoutError)
    assert not result.completed
    assert result.cost_usd == pytest.approx(0.02)
    assert "exceeded timeout" in str(result.error)


def test_cancel_event_terminates_process(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runners.shutil, "which", lambda name: f"/bin/{name}")
    monkeypatch.setattr(runners.subprocess, "Popen", _HangingProcess)
    cancel_event = threading.Event()
    cancel_event.set()

    result = runners.ClaudeExecutor(LoopConfig()).execute("go", cancel_event)

    assert isinstance(result.error, RunCancelledError)
    assert not result.completed


def test_truncate_output_keeps_recent_whole_lines() -> None:
    content = "aaaa\nbbbb\ncccc\n"
    truncated, was_truncated = runners._truncate_output(content, 12)
    assert was_truncated
    assert truncated == OUTPUT_TRUNCATION_MARKER + "cccc\n"
    assert runners._truncate_output(content, 100) == (content, False)
    assert runners._truncate_output(content, 0) == (content, False)


def test_execute_truncates_large_output(fake_claude) -> None:
    fake_claude.stdout_lines = [f"line {index:04d}\n" for index in range(200)]

    result = runners.ClaudeExecutor(LoopConfig(max_output_size=200)).execute("go")

    assert result.output.startswith(OUTPUT_TRUNCATION_MARKER)
    assert result.output.endswith("line 0199\n")
    assert len(result.output) <= 200 + len(OUTPUT_TRUNCATION_MARKER)


def test_redact_sensitive_text() -> None:
    redacted = runners._redact_sensitive_text("claude --token=abc123 sk-ant-abcdefghijklmnop")
    assert "abc123" not in redacted
    assert "token=<redacted>" in redacted
    assert "sk-ant-abcdefghijklmnop" not in redacted
