"""Built-in workflow presets."""

from __future__ import annotations

from orbital.models import WorkflowError
from orbital.workflow import Step, Workflow

PRESET_FAST = "fast"
PRESET_SPEC_DRIVEN = "spec-driven"
PRESET_REVIEWED = "reviewed"
PRESET_TDD = "tdd"

DEFAULT_PRESET = PRESET_SPEC_DRIVEN

_REVIEW_GATE_TAIL = """Write your findings to the notes file with clear action items if any issues found.

If changes are acceptable with no blocking issues, output <gate>PASS</gate>
If changes need work, output <gate>FAIL</gate>"""


def _fast_preset() -> Workflow:
    return Workflow(
        name=PRESET_FAST,
        preset=PRESET_FAST,
        steps=(
            Step(
                name="implement",
                prompt="""Implement as many requirements as possible from {{files}} in this iteration.

Do not work incrementally. Tackle multiple requirements at once:
1. Read all remaining requirements
2. Implement as many as you can with tests
3. Run tests to verify everything works
4. Check off completed items in the spec file

Maximise throughput. Do not stop after one item.
Do not output completion promise yet.""",
            ),
            Step(
                name="review",
                prompt=(
                    "Review all code changes made in this iteration.\n"
                    "Check for: correctness, edge cases, code quality, test coverage.\n\n"
                    + _REVIEW_GATE_TAIL
                ),
                gate=True,
                on_fail="implement",
            ),
        ),
    )


def _spec_driven_preset() -> Workflow:
    return Workflow(
        name=PRESET_SPEC_DRIVEN,
        preset=PRESET_SPEC_DRIVEN,
        steps=(
            Step(
                name="implement",
                prompt="""Read the notes file for any pending feedback to address.
Continue implementing the requirements in {{files}}.
Focus on the next incomplete item.
When all requirements are complete, output {{promise}}""",
            ),
        ),
    )


def _reviewed_preset() -> Workflow:
    return Workflow(
        name=PRESET_REVIEWED,
        preset=PRESET_REVIEWED,
        steps=(
            Step(
                name="implement",
                prompt="""Read the notes file for any review feedback to address.
If there is feedback, address it first before continuing.
Then continue implementing the requirements in {{files}}.
Focus on the next incomplete item.
Do not output completion promise yet.""",
            ),
            Step(
                name="review",
                prompt=(
                    "Review the code changes just made.\n"
                    "Check for: correctness, edge cases, code quality, test coverage.\n\n"
                    + _REVIEW_GATE_TAIL
                ),
                gate=True,
                on_fail="implement",
            ),
        ),
    )


def _tdd_preset() -> Workflow:
    return Workflow(
        name=PRESET_TDD,
        preset=PRESET_TDD,
        steps=(
            Step(
                name="red",
                prompt="""Read the notes file for any feedback from previous review.
Write a failing test for the next requirement in {{files}}.
The test should fail because the functionality doesn't exist yet.
Run the test to confirm it fails.
Write to notes: what test was added and what it tests.""",
            ),
            Step(
                name="green",
                prompt="""Read the notes file to understand what test was just written.
Write the minimal code to make the failing test pass.
Do not add extra functionality beyond what the test requires.
Run the test to confirm it passes.
Update notes: what implementation was added.""",
            ),
            Step(
                name="refactor",
                prompt="""Read the notes file to understand the current TDD cycle.
If there is review feedback from a previous failed gate, address it first.
Refactor the code while keeping tests green.
Improve clarity, remove duplication, apply good design principles.
Run tests to confirm they still pass.
Update notes: what refactoring was done.""",
            ),
            Step(
                name="review",
                prompt="""Read the notes file to understand the TDD cycle just completed.
Review: test quality, implementation correctness, refactoring quality.

Write detailed findings to the notes file.
If issues found, write clear action items for the refactor step.

If acceptable, output <gate>PASS</gate>
If needs work, output <gate>FAIL</gate>""",
                gate=True,
                on_fail="refactor",
            ),
        ),
    )


_PRESET_BUILDERS = {
    PRESET_FAST: _fast_preset,
    PRESET_SPEC_DRIVEN: _spec_driven_preset,
    PRESET_REVIEWED: _reviewed_preset,
    PRESET_TDD: _tdd_preset,
}


def valid_presets() -> tuple[str, ...]:
    return tuple(_PRESET_BUILDERS)


def is_valid_preset(name: str) -> bool:
    return name in _PRESET_BUILDERS


def get_preset(name: str) -> Workflow:
    builder = _PRESET_BUILDERS.get(name)
    if builder is None:
        raise WorkflowError(f"unknown preset: {name}")
    return builder()


def preset_descriptions() -> dict[str, str]:
    return {
        PRESET_FAST: "Maximise work per iteration with review gate",
        PRESET_SPEC_DRIVEN: "Single implement step with completion check (default)",
        PRESET_REVIEWED: "Implement with review gate before completion",
        PRESET_TDD: "Red-green-refactor cycle with review gate",
    }
