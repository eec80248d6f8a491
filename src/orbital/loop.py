"""Simple iteration loop and the completion protocol shared by both run modes."""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from orbital.completion import CompletionDetector
from orbital.config import LoopConfig
from orbital.models import (
    BudgetExceededError,
    IterationState,
    MaxIterationsReachedError,
    RunCancelledError,
    StepInfo,
    StepResult,
    VerificationResult,
)
from orbital.utils import _append_log, _notify_observer


@dataclass(frozen=True)
class LoopHooks:
    """Observation-only progress callbacks. Return values are ignored."""

    on_iteration_start: Callable[[int, int], Any] | None = None
    on_iteration: Callable[[IterationState], Any] | None = None
    on_step_start: Callable[[StepInfo], Any] | None = None
    on_step: Callable[[StepInfo, StepResult], Any] | None = None
    on_message: Callable[[str], Any] | None = None


class CompletionOutcome(enum.Enum):
    RETRY = "retry"
    CONTINUE_WITH_QUEUE = "continue_with_queue"
    DONE = "done"


@dataclass(frozen=True)
class CompletionDecision:
    outcome: CompletionOutcome
    queued_files: tuple[str, ...] = ()
    verification: VerificationResult | None = None


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _report(repo_root: Path | None, hooks: LoopHooks, message: str) -> None:
    _append_log(repo_root, message)
    _notify_observer(repo_root, hooks.on_message, message)


def apply_completion_protocol(
    state: IterationState,
    *,
    files: list[str],
    verifier: Any,
    state_manager: Any,
    cancel_event: threading.Event | None = None,
    repo_root: Path | None = None,
    hooks: LoopHooks | None = None,
) -> CompletionDecision:
    """Verify a detected completion and drain the queue.

    Verification cost is charged to ``state`` whatever the verdict. Verifier
    failures and unverified results yield ``RETRY``. Queued files are merged
    into ``files`` in place and yield ``CONTINUE_WITH_QUEUE``. Exceptions from
    the queue collaborator propagate.
    """
    hooks = hooks or LoopHooks()
    if verifier is None:
        verification = None
        _report(repo_root, hooks, "Verification: no verifier configured, accepting completion.")
    else:
        _report(repo_root, hooks, f"Verification: checking {len(files)} spec file(s)...")
        try:
            verification = verifier.verify(list(files), cancel_event=cancel_event)
        except Exception as exc:
            _report(repo_root, hooks, f"Verification error: {exc}. Continuing loop.")
            return CompletionDecision(CompletionOutcome.RETRY)

        state.total_cost += verification.cost
        state.verification_tokens += verification.tokens

        if not verification.verified:
            if verification.parseable:
                _report(
                    repo_root,
                    hooks,
                    f"Verification: {verification.unchecked} unchecked item(s) remain. Continuing loop.",
                )
            else:
                _report(repo_root, hooks, "Verification: could not parse response. Continuing loop.")
            return CompletionDecision(CompletionOutcome.RETRY, verification=verification)

        _report(
            repo_root,
            hooks,
            f"Verification: all items complete ({verification.checked} checked).",
        )

    if state_manager is not None:
        queued = list(state_manager.pop_queue())
        if queued:
            state_manager.merge_files(queued)
            for path in queued:
                if path not in files:
                    files.append(path)
            _report(
                repo_root,
                hooks,
                f"Found {len(queued)} queued file(s), continuing: {', '.join(queued)}",
            )
            return CompletionDecision(
                CompletionOutcome.CONTINUE_WITH_QUEUE,
                queued_files=tuple(queued),
                verification=verification,
            )

    _report(repo_root, hooks, "No queued files. Work complete.")
    return CompletionDecision(CompletionOutcome.DONE, verification=verification)


class LoopController:
    """Repeats one prompt until a verified completion or a limit is hit."""

    def __init__(
        self,
        config: LoopConfig,
        executor: Any,
        detector: CompletionDetector | None = None,
        *,
        verifier: Any = None,
        state_manager: Any = None,
        spec_files: list[str] | tuple[str, ...] = (),
        repo_root: Path | None = None,
        hooks: LoopHooks | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.detector = detector or CompletionDetector(config.completion_promise)
        self.verifier = verifier
        self.state_manager = state_manager
        self.spec_files = list(spec_files)
        self.repo_root = repo_root
        self.hooks = hooks or LoopHooks()

    def run(self, prompt: str, cancel_event: threading.Event | None = None) -> IterationState:
        state = IterationState()
        current_prompt = prompt
        files = list(self.spec_files)
        max_iterations = self.config.max_iterations

        for iteration in range(1, max_iterations + 1):
            if _cancelled(cancel_event):
                state.error = RunCancelledError()
                _append_log(self.repo_root, f"loop cancelled before iteration {iteration}")
                return state
            state.iteration = iteration

            _notify_observer(self.repo_root, self.hooks.on_iteration_start, iteration, max_iterations)
            _append_log(self.repo_root, f"loop iteration start {iteration}/{max_iterations}")

            try:
                result = self.executor.execute(current_prompt, cancel_event=cancel_event)
            except Exception as exc:
                state.error = RunCancelledError(str(exc)) if _cancelled(cancel_event) else exc
                _append_log(self.repo_root, f"loop execution error iteration={iteration}: {exc}")
                return state

            state.add_usage(result.cost_usd, result.tokens_in, result.tokens_out)
            state.last_output = result.output
            if result.error is not None:
                state.error = result.error
                _append_log(self.repo_root, f"loop execution error iteration={iteration}: {result.error}")
                return state

            _notify_observer(self.repo_root, self.hooks.on_iteration, state.snapshot())

            if state.total_cost >= self.config.max_budget:
                state.error = BudgetExceededError(state.total_cost, self.config.max_budget)
                _append_log(self.repo_root, f"loop stop: {state.error}")
                return state

            if not self.detector.check(result.output):
                continue

            _report(self.repo_root, self.hooks, "Completion promise detected. Verifying...")
            try:
                decision = apply_completion_protocol(
                    state,
                    files=files,
                    verifier=self.verifier,
                    state_manager=self.state_manager,
                    cancel_event=cancel_event,
                    repo_root=self.repo_root,
                    hooks=self.hooks,
                )
                if decision.outcome is CompletionOutcome.CONTINUE_WITH_QUEUE:
                    current_prompt = self.state_manager.rebuild_prompt()
            except Exception as exc:
                state.error = exc
                _append_log(self.repo_root, f"loop queue handling failed: {exc}")
                return state

            if decision.outcome is CompletionOutcome.DONE:
                state.completed = True
                return state

        state.error = MaxIterationsReachedError(max_iterations)
        _append_log(self.repo_root, f"loop stop: {state.error}")
        return state
