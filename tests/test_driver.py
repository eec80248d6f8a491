from __future__ import annotations

import threading

import pytest

from orbital.config import LoopConfig
from orbital.driver import WorkflowLoopDriver, run_session
from orbital.loop import LoopHooks
from orbital.models import (
    BudgetExceededError,
    ExecutionResult,
    ExecutorError,
    MaxGateRetriesExceededError,
    MaxIterationsReachedError,
    RunCancelledError,
    StepExecutionError,
    VerificationResult,
    WorkflowError,
)
from orbital.presets import PRESET_SPEC_DRIVEN, get_preset
from orbital.workflow import Step, Workflow

PROMISE = "<promise>COMPLETE</promise>"
PASS = "<gate>PASS</gate>"
FAIL = "<gate>FAIL</gate>"


class _StepExecutor:
    def __init__(self, replies: dict[str, list[str]] | None = None, *, cost: float = 0.01) -> None:
        self.replies = {name: list(outputs) for name, outputs in (replies or {}).items()}
        self.cost = cost
        self.prompts: list[str] = []

    def execute(self, prompt: str, cancel_event=None) -> ExecutionResult:
        self.prompts.append(prompt)
        step = prompt.split()[0] if prompt.split() else ""
        queue = self.replies.get(step, [])
        output = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else f"{step} done")
        return ExecutionResult(output=output, cost_usd=self.cost, tokens_in=10, tokens_out=5)


class _Verifier:
    def __init__(self, verdicts: list[bool] | None = None) -> None:
        self.verdicts = list(verdicts or [True])
        self.calls: list[list[str]] = []

    def verify(self, files, cancel_event=None) -> VerificationResult:
        self.calls.append(list(files))
        verified = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        if verified:
            return VerificationResult(verified=True, unchecked=0, checked=3, cost=0.001, tokens=12)
        return VerificationResult(verified=False, unchecked=1, checked=2, cost=0.001, tokens=12)


class _Queue:
    def __init__(self, batches: list[list[str]] | None = None) -> None:
        self.batches = list(batches or [])
        self.merged: list[str] = []

    def check_queue(self) -> list[str]:
        return list(self.batches[0]) if self.batches else []

    def pop_queue(self) -> list[str]:
        return self.batches.pop(0) if self.batches else []

    def merge_files(self, files: list[str]) -> None:
        self.merged.extend(files)

    def rebuild_prompt(self) -> str:
        return "rebuilt"


def _reviewed(max_gate_retries: int = 3) -> Workflow:
    return Workflow(
        name="reviewed",
        steps=(
            Step(name="implement", prompt="implement {{files}}"),
            Step(name="review", prompt="review the change", gate=True, on_fail="implement"),
        ),
        max_gate_retries=max_gate_retries,
    )


def _config(**overrides) -> LoopConfig:
    values = {"max_iterations": 5, "max_budget": 100.0, "completion_promise": PROMISE}
    values.update(overrides)
    return LoopConfig(**values)


def test_ungated_workflow_runs_simple_loop_over_caller_prompt() -> None:
    executor = _StepExecutor({"caller": [f"finished {PROMISE}"]})

    state = run_session(
        get_preset(PRESET_SPEC_DRIVEN),
        config=_config(),
        executor=executor,
        prompt="caller prompt for spec.md",
        file_paths=["spec.md"],
        verifier=_Verifier(),
    )

    assert state.completed
    assert executor.prompts == ["caller prompt for spec.md"]


def test_gated_workflow_completes_after_verified_pass() -> None:
    executor = _StepExecutor({"review": [PASS]})
    verifier = _Verifier()

    state = run_session(
        _reviewed(),
        config=_config(),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
        verifier=verifier,
        state_manager=_Queue(),
    )

    assert state.error is None
    assert state.completed
    assert state.iteration == 1
    assert state.last_output == f"implement done\n{PASS}"
    assert state.total_cost == pytest.approx(0.021)
    assert state.verification_tokens == 12
    assert verifier.calls == [["spec.md"]]
    assert executor.prompts[0] == "implement - spec.md"


def test_gate_retry_exhaustion_is_retried_on_next_outer_iteration() -> None:
    executor = _StepExecutor({"review": [FAIL, FAIL, PASS]})
    messages: list[str] = []

    state = run_session(
        _reviewed(max_gate_retries=2),
        config=_config(),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
        verifier=_Verifier(),
        hooks=LoopHooks(on_message=messages.append),
    )

    assert state.completed
    assert state.iteration == 2
    assert len(executor.prompts) == 6
    assert state.total_cost == pytest.approx(0.061)
    assert any("gate failed too many times" in message for message in messages)


def test_gate_that_never_passes_exhausts_outer_iterations() -> None:
    executor = _StepExecutor({"review": [FAIL]})

    state = run_session(
        _reviewed(max_gate_retries=2),
        config=_config(max_iterations=3),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
    )

    assert isinstance(state.error, MaxIterationsReachedError)
    assert isinstance(state.error.__cause__, MaxGateRetriesExceededError)
    assert state.iteration == 3
    assert len(executor.prompts) == 12
    assert state.total_cost == pytest.approx(0.12)


def test_budget_is_checked_after_gate_abort() -> None:
    executor = _StepExecutor({"review": [FAIL]}, cost=1.0)

    state = run_session(
        _reviewed(max_gate_retries=2),
        config=_config(max_budget=4.0),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
    )

    assert isinstance(state.error, BudgetExceededError)
    assert state.iteration == 1
    assert state.total_cost == pytest.approx(4.0)


def test_step_failure_is_fatal() -> None:
    class _Failing(_StepExecutor):
        def execute(self, prompt: str, cancel_event=None) -> ExecutionResult:
            if prompt.startswith("review"):
                raise ExecutorError("connection reset")
            return super().execute(prompt, cancel_event)

    state = run_session(
        _reviewed(),
        config=_config(),
        executor=_Failing(),
        prompt="ignored",
        file_paths=["spec.md"],
    )

    assert isinstance(state.error, StepExecutionError)
    assert state.iteration == 1
    assert state.total_cost == pytest.approx(0.01)
    assert not state.completed


def test_queued_files_rerun_workflow_with_expanded_file_set() -> None:
    executor = _StepExecutor({"review": [PASS]})
    verifier = _Verifier()
    queue = _Queue([["next.md"]])

    state = run_session(
        _reviewed(),
        config=_config(),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
        verifier=verifier,
        state_manager=queue,
    )

    assert state.completed
    assert state.iteration == 2
    assert queue.merged == ["next.md"]
    assert executor.prompts[2] == "implement - spec.md\n- next.md"
    assert verifier.calls == [["spec.md"], ["spec.md", "next.md"]]


def test_unverified_pass_runs_workflow_again() -> None:
    executor = _StepExecutor({"review": [PASS]})

    state = run_session(
        _reviewed(),
        config=_config(),
        executor=executor,
        prompt="ignored",
        file_paths=["spec.md"],
        verifier=_Verifier([False, True]),
    )

    assert state.completed
    assert state.iteration == 2
    assert len(executor.prompts) == 4


def test_malformed_workflow_is_rejected_before_any_execution() -> None:
    executor = _StepExecutor()
    workflow = Workflow(name="bad", steps=(Step(name="a", prompt="x", on_fail="a"),))

    with pytest.raises(WorkflowError, match="on_fail requires gate"):
        run_session(workflow, config=_config(), executor=executor, prompt="p", file_paths=[])

    assert executor.prompts == []


def test_cancelled_driver_returns_cancellation() -> None:
    cancel_event = threading.Event()
    cancel_event.set()
    executor = _StepExecutor()

    state = WorkflowLoopDriver(_config(), executor).run(_reviewed(), ["spec.md"], cancel_event)

    assert isinstance(state.error, RunCancelledError)
    assert executor.prompts == []
    assert state.iteration == 0
