from __future__ import annotations

from orbital.prompts import (
    build_prompt,
    build_system_prompt,
    build_verification_prompt,
    render_step_prompt,
    render_template,
)


def test_single_file_prompt_has_no_plural() -> None:
    prompt = build_prompt(["/work/spec.md"])
    assert "following spec file:" in prompt
    assert prompt.endswith("- /work/spec.md")


def test_multiple_files_are_bulleted() -> None:
    prompt = build_prompt(["a.md", "b.md"])
    assert "spec files:" in prompt
    assert "- a.md\n- b.md" in prompt


def test_custom_template_placeholders() -> None:
    rendered = render_template(
        "{{files}} | {{promise}} | {{notes_file}}",
        files=["x.md"],
        promise="DONE",
        notes_file="notes.md",
    )
    assert rendered == "- x.md | DONE | notes.md"


def test_system_prompt_includes_promise_and_notes_file() -> None:
    prompt = build_system_prompt(promise="<promise>COMPLETE</promise>", notes_file=".orbital/notes.md")
    assert "<promise>COMPLETE</promise>" in prompt
    assert "`.orbital/notes.md`" in prompt
    assert "{{" not in prompt


def test_verification_prompt_names_response_formats() -> None:
    prompt = build_verification_prompt(["spec.md"])
    assert "- spec.md" in prompt
    assert "VERIFIED: 0 unchecked, N checked" in prompt
    assert "INCOMPLETE: N unchecked, M checked" in prompt


def test_step_prompt_renders_promise() -> None:
    rendered = render_step_prompt("Do {{files}} then say {{promise}}", ["a.md"], promise="DONE")
    assert rendered == "Do - a.md then say DONE"
