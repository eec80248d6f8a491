from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

from orbital.config import LoopConfig, _load_loop_config
from orbital.constants import (
    EXIT_BUDGET_EXCEEDED,
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_MAX_GATE_RETRIES,
    EXIT_MAX_ITERATIONS,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
)
from orbital.driver import run_session
from orbital.loop import LoopHooks
from orbital.models import (
    BudgetExceededError,
    IterationState,
    IterationTimeoutError,
    MaxGateRetriesExceededError,
    MaxIterationsReachedError,
    OrbitalError,
    RunCancelledError,
    StepInfo,
    StepResult,
)
from orbital.presets import get_preset, preset_descriptions, valid_presets
from orbital.prompts import build_prompt, build_system_prompt
from orbital.registry import resolve_workflow
from orbital.runners import ClaudeExecutor
from orbital.state import FileQueue, SessionState, StateManager, _state_dir
from orbital.utils import _append_log
from orbital.verification import AgentVerifier
from orbital.workflow import Workflow


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _resolve_working_dir(raw: str | None) -> Path:
    return Path(raw or ".").expanduser().resolve()


def _resolve_spec_files(raw_paths: list[str], working_dir: Path) -> list[str]:
    resolved: list[str] = []
    for raw in raw_paths:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = working_dir / path
        if not path.is_file():
            raise OrbitalError(f"spec file not found: {raw}")
        value = str(path.resolve())
        if value not in resolved:
            resolved.append(value)
    return resolved


def _resolve_notes_file(raw: str, working_dir: Path) -> str:
    """Absolute notes path, which must stay inside ``working_dir``."""
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = working_dir / path
    path = path.parent.resolve() / path.name
    try:
        path.relative_to(working_dir)
    except ValueError as exc:
        raise OrbitalError(
            f"notes file path must be within working directory: {raw} is outside {working_dir}"
        ) from exc
    return str(path)


def _config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "max_iterations": getattr(args, "max_iterations", None),
        "max_budget": getattr(args, "max_budget", None),
        "completion_promise": getattr(args, "promise", None),
        "model": getattr(args, "model", None),
        "checker_model": getattr(args, "checker_model", None),
        "iteration_timeout_seconds": getattr(args, "timeout", None),
        "max_turns": getattr(args, "max_turns", None),
        "dangerously_skip_permissions": True if getattr(args, "dangerous", False) else None,
        "verbose": True if getattr(args, "verbose", False) else None,
    }


def _exit_code_for(state: IterationState) -> int:
    error = state.error
    if error is None:
        return EXIT_SUCCESS if state.completed else EXIT_ERROR
    if isinstance(error, RunCancelledError):
        return EXIT_INTERRUPTED
    if isinstance(error, BudgetExceededError):
        return EXIT_BUDGET_EXCEEDED
    if isinstance(error, MaxIterationsReachedError):
        return EXIT_MAX_ITERATIONS
    if isinstance(error, MaxGateRetriesExceededError):
        return EXIT_MAX_GATE_RETRIES
    if isinstance(error, IterationTimeoutError) or isinstance(error.__cause__, IterationTimeoutError):
        return EXIT_TIMEOUT
    return EXIT_ERROR


def _install_signal_handlers(cancel_event: threading.Event) -> dict[int, Any]:
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handle(signum: int, _frame: Any) -> None:
        print(f"\nReceived signal {signum}, stopping after the current agent call...", file=sys.stderr)
        cancel_event.set()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _build_hooks(session: SessionState) -> LoopHooks:
    def _on_iteration_start(iteration: int, max_iterations: int) -> None:
        print(f"\n=== Iteration {iteration}/{max_iterations} ===")

    def _on_iteration(state: IterationState) -> None:
        session.update_iteration(state.iteration, state.total_cost)
        session.save()
        print(
            f"Iteration {state.iteration}: cost ${state.total_cost:.4f}, "
            f"tokens {state.total_tokens_in} in / {state.total_tokens_out} out"
        )

    def _on_step_start(info: StepInfo) -> None:
        retry = f" (retry {info.gate_retries}/{info.max_retries})" if info.gate_retries else ""
        print(f"--- Step [{info.position}/{info.total}] {info.name}{retry} ---")

    def _on_step(info: StepInfo, result: StepResult) -> None:
        gate = f" gate={result.gate_result}" if result.gate_result is not None else ""
        print(f"Step {info.name} done: cost ${result.cost_usd:.4f}{gate}")

    return LoopHooks(
        on_iteration_start=_on_iteration_start,
        on_iteration=_on_iteration,
        on_step_start=_on_step_start,
        on_step=_on_step,
        on_message=print,
    )


def _print_banner(config: LoopConfig, session: SessionState, workflow: Workflow) -> None:
    print("orbital")
    print(f"session: {session.session_id}")
    print(f"working_dir: {session.working_dir}")
    print(f"spec_files: {', '.join(session.active_files)}")
    if session.context_files:
        print(f"context_files: {', '.join(session.context_files)}")
    print(f"notes_file: {session.notes_file}")
    print(f"workflow: {workflow.name} ({len(workflow.steps)} step(s), gated={workflow.has_gates()})")
    print(f"model: {config.model} (checker: {config.checker_model})")
    print(f"limits: {config.max_iterations} iterations, ${config.max_budget:.2f} budget")
    if config.dangerously_skip_permissions:
        print(
            "WARNING: running with --dangerous. The agent can execute commands without permission prompts.",
            file=sys.stderr,
        )


def _print_summary(state: IterationState) -> None:
    print("\n=== Summary ===")
    if state.completed:
        print("status: complete")
    else:
        print(f"status: stopped ({state.error})")
    print(f"iterations: {state.iteration}")
    print(f"total_cost: ${state.total_cost:.4f}")
    print(
        f"tokens: {state.total_tokens_in} in / {state.total_tokens_out} out "
        f"/ {state.verification_tokens} verification"
    )
    print(f"elapsed: {state.elapsed_seconds:.1f}s")


def _execute_session(
    session: SessionState,
    config: LoopConfig,
    workflow: Workflow,
    *,
    dry_run: bool = False,
) -> int:
    working_dir = session.working_dir
    promise = config.completion_promise
    config = replace(
        config,
        working_dir=str(working_dir),
        system_prompt=build_system_prompt(
            template=config.system_prompt_template,
            promise=promise,
            notes_file=session.notes_file,
        ),
    )
    state_manager = StateManager(session, prompt_template=config.prompt_template, promise=promise)
    prompt = state_manager.rebuild_prompt()
    executor = ClaudeExecutor(config, repo_root=working_dir, stream=sys.stdout if config.verbose else None)

    _print_banner(config, session, workflow)
    if dry_run:
        print("\ndry run: command that would be executed")
        print(executor.get_command(prompt))
        return EXIT_SUCCESS

    session.set_workflow(workflow)
    session.save()
    verifier = AgentVerifier(ClaudeExecutor(config.for_checker(), repo_root=working_dir), repo_root=working_dir)
    cancel_event = threading.Event()
    previous_handlers = _install_signal_handlers(cancel_event)
    _append_log(working_dir, f"session start id={session.session_id} files={len(session.active_files)}")
    try:
        state = run_session(
            workflow,
            config=config,
            executor=executor,
            prompt=prompt,
            file_paths=session.active_files,
            verifier=verifier,
            state_manager=state_manager,
            cancel_event=cancel_event,
            repo_root=working_dir,
            hooks=_build_hooks(session),
        )
    finally:
        _restore_signal_handlers(previous_handlers)

    _print_summary(state)
    exit_code = _exit_code_for(state)
    _append_log(working_dir, f"session end id={session.session_id} exit_code={exit_code} error={state.error}")
    if exit_code == EXIT_SUCCESS:
        session.cleanup()
    else:
        session.update_iteration(state.iteration, state.total_cost)
        session.save()
        print("Session state preserved. Resume with `orbital continue`.")
    return exit_code


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    working_dir = _resolve_working_dir(args.working_dir)
    try:
        config = _load_loop_config(working_dir, overrides=_config_overrides(args))
        if SessionState.exists(working_dir):
            existing = SessionState.load(working_dir)
            if not existing.is_stale():
                raise OrbitalError(
                    f"session {existing.session_id} is already running (pid {existing.pid}); "
                    "use `orbital queue add` to add files to it"
                )
            print(f"Replacing stale session {existing.session_id}.", file=sys.stderr)
        spec_files = _resolve_spec_files(args.files, working_dir)
        context_files = _resolve_spec_files(args.context or [], working_dir)
        workflow = resolve_workflow(args.workflow or "", working_dir)
        notes_file = _resolve_notes_file(args.notes_file or config.notes_file, working_dir)
    except OrbitalError as exc:
        print(f"orbital run: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR

    session = SessionState(
        session_id=uuid.uuid4().hex[:12],
        working_dir=working_dir,
        active_files=spec_files,
        notes_file=notes_file,
        context_files=context_files,
    )
    return _execute_session(session, config, workflow, dry_run=args.dry_run)


def _merge_active_files(session: SessionState, paths: list[str]) -> None:
    for path in paths:
        if path not in session.active_files:
            session.active_files.append(path)


def _cmd_continue(args: argparse.Namespace) -> int:
    working_dir = _resolve_working_dir(args.working_dir)
    try:
        config = _load_loop_config(working_dir, overrides=_config_overrides(args))
        queue = FileQueue.load(_state_dir(working_dir))
        if SessionState.exists(working_dir):
            session = SessionState.load(working_dir)
            if not session.is_stale() and session.pid != os.getpid():
                raise OrbitalError(f"session {session.session_id} is still running (pid {session.pid})")
            session.pid = os.getpid()
            print(f"Resuming session {session.session_id}.")
        elif not queue.is_empty():
            session = SessionState(
                session_id=uuid.uuid4().hex[:12],
                working_dir=working_dir,
                notes_file=_resolve_notes_file(config.notes_file, working_dir),
            )
            print(f"Starting new session {session.session_id} from queued files.")
        else:
            raise OrbitalError("no session to continue in this directory")

        queued = list(queue.queued_files)
        if queued:
            print(f"Found {len(queued)} queued file(s).")
            _merge_active_files(session, queued)
        if not session.active_files:
            raise OrbitalError("no session to continue in this directory (no active or queued files)")
        if not session.notes_file:
            session.notes_file = _resolve_notes_file(config.notes_file, working_dir)
        workflow = session.restore_workflow() or resolve_workflow("", working_dir)
        if not args.dry_run:
            _merge_active_files(session, queue.pop())
            session.save()
    except OrbitalError as exc:
        print(f"orbital continue: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR

    return _execute_session(session, config, workflow, dry_run=args.dry_run)


def _cmd_status(args: argparse.Namespace) -> int:
    working_dir = _resolve_working_dir(args.working_dir)
    try:
        queue = FileQueue.load(_state_dir(working_dir))
        session = SessionState.load(working_dir) if SessionState.exists(working_dir) else None
    except OrbitalError as exc:
        print(f"orbital status: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR

    print("orbital status")
    print(f"working_dir: {working_dir}")
    if session is None:
        print("session: <none>")
    else:
        print(f"session: {session.session_id}")
        print(f"pid: {session.pid} ({'stale' if session.is_stale() else 'running'})")
        print(f"started_at: {session.started_at}")
        print(f"iteration: {session.iteration}")
        print(f"total_cost: ${session.total_cost:.4f}")
        print(f"workflow: {session.workflow_preset or '<default>'}")
        print("active_files:")
        for path in session.active_files:
            print(f"  - {path}")
    print(f"queued_files: {len(queue.queued_files)}")
    for path in queue.queued_files:
        print(f"  - {path} (added {queue.added_at.get(path, '?')})")
    return EXIT_SUCCESS


def _cmd_queue(args: argparse.Namespace) -> int:
    working_dir = _resolve_working_dir(args.working_dir)
    try:
        queue = FileQueue.load(_state_dir(working_dir))
        if args.action == "list":
            if queue.is_empty():
                print("queue is empty")
            for path in queue.queued_files:
                print(path)
            return EXIT_SUCCESS
        if not args.file:
            raise OrbitalError(f"queue {args.action} requires a file argument")
        if args.action == "add":
            path = _resolve_spec_files([args.file], working_dir)[0]
            if not SessionState.exists(working_dir):
                print("No active session; run `orbital continue` to process the queue.", file=sys.stderr)
            queue.add(path)
            print(f"queued: {path}")
        else:
            path = str((working_dir / Path(args.file).expanduser()).resolve())
            queue.remove(path)
            print(f"removed: {path}")
    except OrbitalError as exc:
        print(f"orbital queue: ERROR {exc}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_SUCCESS


def _cmd_presets(args: argparse.Namespace) -> int:
    descriptions = preset_descriptions()
    for name in valid_presets():
        workflow = get_preset(name)
        print(f"{name}: {descriptions.get(name, '')}")
        for step in workflow.steps:
            flags = []
            if step.gate:
                flags.append("gate")
            if step.on_fail:
                flags.append(f"on_fail={step.on_fail}")
            if step.deferred:
                flags.append("deferred")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            print(f"  - {step.name}{suffix}")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _add_loop_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--working-dir", default=".", help="Project directory (default: current directory)")
    parser.add_argument("--max-iterations", type=int, default=None, help="Maximum outer iterations")
    parser.add_argument("--max-budget", type=float, default=None, help="Maximum spend in USD")
    parser.add_argument("--promise", default=None, help="Completion promise string")
    parser.add_argument("--model", default=None, help="Model for the working agent")
    parser.add_argument("--checker-model", default=None, help="Model for completion verification")
    parser.add_argument("--timeout", type=float, default=None, help="Per-call timeout in seconds")
    parser.add_argument("--max-turns", type=int, default=None, help="Agent turn limit per call (0 = unlimited)")
    parser.add_argument(
        "--dangerous",
        action="store_true",
        help="Skip agent permission prompts (also enabled by ORBITAL_DANGEROUS=1)",
    )
    parser.add_argument("--verbose", action="store_true", help="Echo agent stream output")
    parser.add_argument("--dry-run", action="store_true", help="Print the agent command without running it")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="orbital autonomous agent loop")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run the agent loop over one or more spec files")
    run.add_argument("files", nargs="+", help="Spec files with checkbox items")
    run.add_argument(
        "--workflow",
        default=None,
        choices=valid_presets(),
        help="Workflow preset (default: config file, then spec-driven)",
    )
    run.add_argument("--notes-file", default=None, help="Notes file for cross-iteration context")
    run.add_argument("--context", action="append", default=[], help="Additional context file (repeatable)")
    _add_loop_options(run)
    run.set_defaults(handler=_cmd_run)

    resume = subparsers.add_parser("continue", help="Resume a preserved session in this directory")
    _add_loop_options(resume)
    resume.set_defaults(handler=_cmd_continue)

    status = subparsers.add_parser("status", help="Show session state and queued files")
    status.add_argument("--working-dir", default=".", help="Project directory (default: current directory)")
    status.set_defaults(handler=_cmd_status)

    queue = subparsers.add_parser("queue", help="Add, remove or list files queued for a running session")
    queue.add_argument("action", choices=("add", "remove", "list"), help="Queue action")
    queue.add_argument("file", nargs="?", default=None, help="Spec file for add/remove")
    queue.add_argument("--working-dir", default=".", help="Project directory (default: current directory)")
    queue.set_defaults(handler=_cmd_queue)

    presets = subparsers.add_parser("presets", help="List built-in workflow presets")
    presets.set_defaults(handler=_cmd_presets)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
