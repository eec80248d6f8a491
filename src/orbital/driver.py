"""Execution mode dispatch and the outer iteration driver for gated workflows.

Workflows without any gate step run through ``LoopController`` over the
caller's single prompt; their declared step prompts are not used. Gated
workflows run through ``WorkflowLoopDriver``, which re-invokes the runner
from step 0 on every outer iteration under the same iteration and budget
limits as the simple loop.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from orbital.config import LoopConfig
from orbital.loop import (
    CompletionOutcome,
    LoopController,
    LoopHooks,
    _cancelled,
    _report,
    apply_completion_protocol,
)
from orbital.models import (
    BudgetExceededError,
    IterationState,
    MaxGateRetriesExceededError,
    MaxIterationsReachedError,
    RunCancelledError,
    RunResult,
    StepExecutionError,
)
from orbital.utils import _append_log, _notify_observer
from orbital.workflow import Workflow
from orbital.workflow_runner import WorkflowRunner


def _absorb_pass(state: IterationState, result: RunResult | None) -> None:
    if result is None:
        return
    state.add_usage(result.total_cost, result.total_tokens_in, result.total_tokens_out)
    if result.steps:
        state.last_output = result.steps[-1].output


class WorkflowLoopDriver:
    def __init__(
        self,
        config: LoopConfig,
        executor: Any,
        *,
        verifier: Any = None,
        state_manager: Any = None,
        repo_root: Path | None = None,
        hooks: LoopHooks | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.verifier = verifier
        self.state_manager = state_manager
        self.repo_root = repo_root
        self.hooks = hooks or LoopHooks()

    def run(
        self,
        workflow: Workflow,
        file_paths: Sequence[str],
        cancel_event: threading.Event | None = None,
    ) -> IterationState:
        state = IterationState()
        files = list(file_paths)
        runner = WorkflowRunner(
            workflow,
            self.executor,
            file_paths=files,
            promise=self.config.completion_promise,
            repo_root=self.repo_root,
            on_step_start=self.hooks.on_step_start,
            on_step=self.hooks.on_step,
        )
        max_iterations = self.config.max_iterations
        last_gate_error: MaxGateRetriesExceededError | None = None

        for iteration in range(1, max_iterations + 1):
            if _cancelled(cancel_event):
                state.error = RunCancelledError()
                _append_log(self.repo_root, f"workflow loop cancelled before iteration {iteration}")
                return state
            state.iteration = iteration

            _notify_observer(self.repo_root, self.hooks.on_iteration_start, iteration, max_iterations)
            _append_log(
                self.repo_root,
                f"workflow iteration start {iteration}/{max_iterations} workflow={workflow.name}",
            )

            try:
                run_result = runner.run(cancel_event)
            except MaxGateRetriesExceededError as exc:
                _absorb_pass(state, exc.result)
                last_gate_error = exc
                _report(self.repo_root, self.hooks, f"Workflow gate failed too many times: {exc}")
                _notify_observer(self.repo_root, self.hooks.on_iteration, state.snapshot())
                if state.total_cost >= self.config.max_budget:
                    state.error = BudgetExceededError(state.total_cost, self.config.max_budget)
                    _append_log(self.repo_root, f"workflow loop stop: {state.error}")
                    return state
                continue
            except (RunCancelledError, StepExecutionError) as exc:
                _absorb_pass(state, exc.result)
                state.error = exc
                _append_log(self.repo_root, f"workflow loop stop: {exc}")
                return state

            _absorb_pass(state, run_result)
            state.last_output = run_result.combined_output()
            _notify_observer(self.repo_root, self.hooks.on_iteration, state.snapshot())

            if state.total_cost >= self.config.max_budget:
                state.error = BudgetExceededError(state.total_cost, self.config.max_budget)
                _append_log(self.repo_root, f"workflow loop stop: {state.error}")
                return state

            _report(self.repo_root, self.hooks, "Workflow completed. Running verification...")
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
            except Exception as exc:
                state.error = exc
                _append_log(self.repo_root, f"workflow loop queue handling failed: {exc}")
                return state

            if decision.outcome is CompletionOutcome.DONE:
                state.completed = True
                return state
            if decision.outcome is CompletionOutcome.CONTINUE_WITH_QUEUE:
                runner.set_file_paths(files)

        error = MaxIterationsReachedError(max_iterations)
        error.__cause__ = last_gate_error
        state.error = error
        _append_log(self.repo_root, f"workflow loop stop: {error}")
        return state


def run_session(
    workflow: Workflow,
    *,
    config: LoopConfig,
    executor: Any,
    prompt: str,
    file_paths: Sequence[str],
    verifier: Any = None,
    state_manager: Any = None,
    cancel_event: threading.Event | None = None,
    repo_root: Path | None = None,
    hooks: LoopHooks | None = None,
) -> IterationState:
    """Run ``workflow`` in the mode its shape calls for."""
    workflow.validate()
    if workflow.has_gates():
        _append_log(repo_root, f"dispatch mode=gated workflow={workflow.name} steps={len(workflow.steps)}")
        driver = WorkflowLoopDriver(
            config,
            executor,
            verifier=verifier,
            state_manager=state_manager,
            repo_root=repo_root,
            hooks=hooks,
        )
        return driver.run(workflow, file_paths, cancel_event)

    _append_log(repo_root, f"dispatch mode=simple workflow={workflow.name}")
    controller = LoopController(
        config,
        executor,
        verifier=verifier,
        state_manager=state_manager,
        spec_files=list(file_paths),
        repo_root=repo_root,
        hooks=hooks,
    )
    return controller.run(prompt, cancel_event)
