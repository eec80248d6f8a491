"""Prompt templates and placeholder rendering."""

from __future__ import annotations

from collections.abc import Sequence

from orbital.utils import _format_file_list

DEFAULT_PROMPT_TEMPLATE = """Implement the next pending user story from the following spec file{{plural}}:

{{files}}"""

DEFAULT_SYSTEM_PROMPT = """# Autonomous Loop

You are operating in an autonomous loop. Each iteration, you receive this prompt with fresh context. You work until you output the completion promise.

## Tenets

**Fresh Context Is Reliability** - Each iteration clears your context. Re-read specs, plan, and code every cycle.

**Backpressure Over Prescription** - Tests, linting, and type-checking reject bad work automatically. Adapt and correct yourself.

**Disk Is State, Git Is Memory** - Files on disk and git commits are your handoff mechanism between iterations.

## Notes File

Maintain notes in: `{{notes_file}}`

Record blockers, decisions that affect future work, and anything the next iteration needs to know. Do not track task status here; that belongs in the spec file.

## Workflow

Each iteration:

1. Read the spec file. Find the next pending item (first `[ ]` checkbox).
2. Read `{{notes_file}}` for context from previous iterations.
3. Plan and implement that single item.
4. Run verification: tests, lint, typecheck, build.
5. If verification passes, mark the item `[x]` in the spec file.
6. Update `{{notes_file}}` with relevant observations.
7. Commit your changes.
8. Exit.

## Stop Condition

Do not output the completion promise until every item in the spec file is marked `[x]`, all verification checks pass, and all changes are committed.

Only then output:

```
{{promise}}
```

Output nothing after the promise.

## If You Get Stuck

Document the blocker in `{{notes_file}}` and exit. Let the next iteration try a different approach."""

VERIFICATION_PROMPT_TEMPLATE = """Read the following spec file(s) and count the checkboxes:

{{files}}

Count all checkbox patterns:
- Unchecked: [ ] (space between brackets)
- Checked: [x] or [X] (x or X between brackets)

Respond with EXACTLY one of these formats (nothing else):
- If zero unchecked boxes: VERIFIED: 0 unchecked, N checked
- If any unchecked boxes: INCOMPLETE: N unchecked, M checked

Replace N and M with the actual counts."""


def render_template(
    template: str,
    *,
    files: Sequence[str] = (),
    promise: str = "",
    notes_file: str = "",
) -> str:
    rendered = template.replace("{{plural}}", "s" if len(files) > 1 else "")
    if files:
        rendered = rendered.replace("{{files}}", _format_file_list(list(files)))
    if promise:
        rendered = rendered.replace("{{promise}}", promise)
    if notes_file:
        rendered = rendered.replace("{{notes_file}}", notes_file)
    return rendered


def build_prompt(files: Sequence[str], *, template: str = "", promise: str = "") -> str:
    return render_template(template or DEFAULT_PROMPT_TEMPLATE, files=files, promise=promise)


def build_system_prompt(*, template: str = "", promise: str = "", notes_file: str = "") -> str:
    return render_template(
        template or DEFAULT_SYSTEM_PROMPT,
        promise=promise,
        notes_file=notes_file,
    )


def build_verification_prompt(files: Sequence[str]) -> str:
    return VERIFICATION_PROMPT_TEMPLATE.replace("{{files}}", _format_file_list(list(files)))


def render_step_prompt(template: str, files: Sequence[str], *, promise: str = "") -> str:
    return render_template(template, files=files, promise=promise)
