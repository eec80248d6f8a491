"""Gated workflow runner -- one pass over a workflow's steps.

The runner walks the steps with an integer cursor. Gate steps that fail (or
emit no signal) bump a per-step retry counter and either jump to their
``on_fail`` target or repeat in place. Counters live only for the duration
of one ``run()`` call.

Steps flagged ``deferred`` are not skipped during forward progression; the
flag only participates in validation.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from orbital.gate import check_gate
from orbital.models import (
    GateResult,
    MaxGateRetriesExceededError,
    RunCancelledError,
    RunResult,
    StepExecutionError,
    StepInfo,
    StepResult,
    WorkflowError,
)
from orbital.prompts import render_step_prompt
from orbital.utils import _append_log, _notify_observer
from orbital.workflow import Workflow

StepStartCallback = Callable[[StepInfo], Any]
StepCallback = Callable[[StepInfo, StepResult], Any]


class WorkflowRunner:
    def __init__(
        self,
        workflow: Workflow,
        executor: Any,
        *,
        file_paths: Sequence[str] = (),
        promise: str = "",
        repo_root: Path | None = None,
        on_step_start: StepStartCallback | None = None,
        on_step: StepCallback | None = None,
    ) -> None:
        workflow.validate()
        if not workflow.steps:
            raise WorkflowError(f"workflow {workflow.name or workflow.preset!r} has no steps to run")
        self.workflow = workflow
        self.executor = executor
        self.file_paths: list[str] = list(file_paths)
        self.promise = promise
        self.repo_root = repo_root
        self.on_step_start = on_step_start
        self.on_step = on_step

    def set_file_paths(self, paths: Sequence[str]) -> None:
        self.file_paths = list(paths)

    def _step_info(self, index: int, retries: int) -> StepInfo:
        return StepInfo(
            name=self.workflow.steps[index].name,
            position=index + 1,
            total=len(self.workflow.steps),
            gate_retries=retries,
            max_retries=self.workflow.effective_max_gate_retries(),
        )

    def run(self, cancel_event: threading.Event | None = None) -> RunResult:
        """Execute the workflow from step 0 until every step has been passed.

        Raises ``MaxGateRetriesExceededError``, ``StepExecutionError`` or
        ``RunCancelledError`` with the partial ``RunResult`` attached.
        """
        steps = self.workflow.steps
        max_retries = self.workflow.effective_max_gate_retries()
        result = RunResult()
        gate_retries: dict[str, int] = {}
        index = 0

        while index < len(steps):
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(result=result)

            step = steps[index]
            retries = gate_retries.get(step.name, 0)
            _notify_observer(self.repo_root, self.on_step_start, self._step_info(index, retries))

            prompt = render_step_prompt(step.prompt, self.file_paths, promise=self.promise)
            _append_log(self.repo_root, f"workflow step start name={step.name} position={index + 1}/{len(steps)} retries={retries}")
            try:
                execution = self.executor.execute(prompt, cancel_event=cancel_event)
            except Exception as exc:
                raise StepExecutionError(step.name, exc, result) from exc

            result.total_cost += execution.cost_usd
            result.total_tokens_in += execution.tokens_in
            result.total_tokens_out += execution.tokens_out
            if execution.error is not None:
                if isinstance(execution.error, RunCancelledError):
                    raise RunCancelledError(str(execution.error), result=result) from execution.error
                raise StepExecutionError(step.name, execution.error, result) from execution.error

            gate_result = check_gate(execution.output) if step.gate else None
            step_result = StepResult(
                step_name=step.name,
                output=execution.output,
                cost_usd=execution.cost_usd,
                tokens_in=execution.tokens_in,
                tokens_out=execution.tokens_out,
                gate_result=gate_result,
                retry_count=retries,
            )
            result.steps.append(step_result)
            _notify_observer(self.repo_root, self.on_step, self._step_info(index, retries), step_result)

            if not step.gate or gate_result is GateResult.PASSED:
                if step.gate:
                    _append_log(self.repo_root, f"workflow gate passed name={step.name}")
                index += 1
                continue

            attempts = retries + 1
            gate_retries[step.name] = attempts
            _append_log(
                self.repo_root,
                f"workflow gate {gate_result} name={step.name} attempts={attempts}/{max_retries}",
            )
            if attempts >= max_retries:
                raise MaxGateRetriesExceededError(
                    step.name,
                    attempts,
                    signal_missing=gate_result is GateResult.NOT_FOUND,
                    result=result,
                )
            if step.on_fail:
                index = self.workflow.get_step_index(step.on_fail)

        result.completed_all_steps = True
        return result
