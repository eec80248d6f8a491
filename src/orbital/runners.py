from __future__ import annotations

import re
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, TextIO

from orbital.config import LoopConfig
from orbital.constants import OUTPUT_TRUNCATION_MARKER
from orbital.models import (
    ExecutionResult,
    ExecutorError,
    IterationTimeoutError,
    RunCancelledError,
)
from orbital.stream import StreamParser
from orbital.utils import _append_log, _compact_log_text

_CANCEL_POLL_SECONDS = 0.2
_TERMINATE_GRACE_SECONDS = 2.0

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


def _truncate_output(content: str, max_size: int) -> tuple[str, bool]:
    """Keep roughly the newest half of ``content`` once it exceeds ``max_size``.

    The cut moves forward to the next line boundary so no line is split.
    """
    if max_size <= 0 or len(content) <= max_size:
        return (content, False)
    cut = len(content) - max_size // 2
    newline = content.find("\n", cut)
    if newline != -1:
        cut = newline + 1
    return (OUTPUT_TRUNCATION_MARKER + content[cut:], True)


def _quote_arg(arg: str) -> str:
    if " " in arg or "\n" in arg:
        escaped = arg.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    return arg


class ClaudeExecutor:
    """Runs the agent CLI once per prompt and collects its stream-json output."""

    def __init__(
        self,
        config: LoopConfig,
        *,
        repo_root: Path | None = None,
        stream: TextIO | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.stream = stream

    def build_args(self, prompt: str) -> list[str]:
        args = [
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            self.config.model,
            "--max-budget-usd",
            f"{self.config.max_budget:.2f}",
        ]
        if self.config.dangerously_skip_permissions:
            args.append("--dangerously-skip-permissions")
        if self.config.session_id:
            args.extend(["--resume", self.config.session_id])
        if self.config.system_prompt:
            args.extend(["--append-system-prompt", self.config.system_prompt])
        if self.config.max_turns > 0:
            args.extend(["--max-turns", str(self.config.max_turns)])
        args.append(prompt)
        return args

    def get_command(self, prompt: str) -> str:
        """Human-readable command line, for dry runs and logs."""
        quoted = [_quote_arg(arg) for arg in self.build_args(prompt)]
        return " ".join([self.config.agent_command, *quoted])

    def _working_dir(self) -> str | None:
        working_dir = self.config.working_dir
        if not working_dir or working_dir == ".":
            return None
        return working_dir

    def execute(
        self,
        prompt: str,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run one agent invocation.

        Returns an ``ExecutionResult`` whose ``error`` is set on timeout or
        cancellation; partial output and usage are kept. A non-zero exit only
        clears ``completed`` so the loop can try again.
        Raises ``ExecutorError`` when the agent binary cannot be started.
        """
        command_path = shutil.which(self.config.agent_command)
        if command_path is None:
            raise ExecutorError(f"{self.config.agent_command} not found in PATH")

        argv = [command_path, *self.build_args(prompt)]
        _append_log(
            self.repo_root,
            (
                f"agent start model={self.config.model} "
                f"timeout_seconds={self.config.iteration_timeout_seconds} "
                f"command={_compact_log_text(_redact_sensitive_text(self.get_command(prompt)))}"
            ),
        )

        parser = StreamParser(repo_root=self.repo_root)
        chunks: list[str] = []
        captured_len = [0]
        truncated = [False]
        stderr_chunks: list[str] = []
        max_output_size = self.config.max_output_size

        def _pump_stdout(stream: Any) -> None:
            try:
                for line in iter(stream.readline, ""):
                    parser.parse_line(line)
                    if self.stream is not None:
                        self.stream.write(line)
                        self.stream.flush()
                    chunks.append(line)
                    captured_len[0] += len(line)
                    if max_output_size > 0 and captured_len[0] > max_output_size:
                        content, _ = _truncate_output("".join(chunks), max_output_size)
                        chunks[:] = [content]
                        captured_len[0] = len(content)
                        if not truncated[0]:
                            truncated[0] = True
                            _append_log(
                                self.repo_root,
                                f"agent output exceeded {max_output_size} bytes, keeping most recent content",
                            )
            finally:
                stream.close()

        def _pump_stderr(stream: Any) -> None:
            try:
                for line in iter(stream.readline, ""):
                    if sum(len(chunk) for chunk in stderr_chunks) < 2400:
                        stderr_chunks.append(line)
            finally:
                stream.close()

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=self._working_dir(),
                shell=False,
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
            )
        except OSError as exc:
            raise ExecutorError(f"failed to start {self.config.agent_command}: {exc}") from exc

        stdout_thread = threading.Thread(target=_pump_stdout, args=(process.stdout,), daemon=True)
        stderr_thread = threading.Thread(target=_pump_stderr, args=(process.stderr,), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        timeout = self.config.iteration_timeout_seconds
        deadline = started + timeout if timeout > 0 else None
        error: BaseException | None = None
        returncode: int | None = None
        try:
            while returncode is None:
                if cancel_event is not None and cancel_event.is_set():
                    error = RunCancelledError("agent run cancelled")
                    break
                wait_for = _CANCEL_POLL_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        error = IterationTimeoutError(f"agent run exceeded timeout of {timeout:g}s")
                        break
                    wait_for = min(wait_for, remaining)
                try:
                    returncode = process.wait(timeout=wait_for)
                except subprocess.TimeoutExpired:
                    continue
        finally:
            if returncode is None:
                process.terminate()
                try:
                    process.wait(timeout=_TERMINATE_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
            stdout_thread.join(timeout=2)
            stderr_thread.join(timeout=2)

        duration = time.monotonic() - started
        output = "".join(chunks)
        captured_stderr = "".join(stderr_chunks).strip()
        if captured_stderr:
            _append_log(
                self.repo_root,
                f"agent stderr: {_compact_log_text(_redact_sensitive_text(captured_stderr))}",
            )

        exit_code = returncode if returncode is not None else -1

        stats = parser.stats
        _append_log(
            self.repo_root,
            (
                f"agent exit returncode={exit_code} duration={duration:.1f}s "
                f"cost={stats.cost_usd:.4f} tokens_in={stats.tokens_in} tokens_out={stats.tokens_out}"
                + (f" error={error}" if error is not None else "")
            ),
        )
        return ExecutionResult(
            output=output,
            cost_usd=stats.cost_usd,
            tokens_in=stats.tokens_in,
            tokens_out=stats.tokens_out,
            exit_code=exit_code,
            duration_seconds=duration,
            completed=error is None and exit_code == 0,
            error=error,
        )
