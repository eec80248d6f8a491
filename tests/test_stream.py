from __future__ import annotations

import json

import pytest

from orbital.stream import StreamParser, extract_stats


def _line(payload: dict) -> str:
    return json.dumps(payload) + "\n"


def test_result_event_accumulates_cost_duration_and_tokens() -> None:
    parser = StreamParser()
    parser.parse_line(
        _line(
            {
                "type": "result",
                "subtype": "success",
                "total_cost_usd": 0.07,
                "duration_ms": 2638,
                "usage": {
                    "input_tokens": 3,
                    "cache_creation_input_tokens": 10507,
                    "cache_read_input_tokens": 14155,
                    "output_tokens": 12,
                },
            }
        )
    )

    assert parser.stats.cost_usd == pytest.approx(0.07)
    assert parser.stats.duration_seconds == pytest.approx(2.638)
    assert parser.stats.tokens_in == 24665
    assert parser.stats.tokens_out == 12


def test_result_tokens_replace_intermediate_assistant_counts() -> None:
    parser = StreamParser()
    assistant = {
        "type": "assistant",
        "message": {
            "content": [{"type": "text", "text": "Working on it"}],
            "usage": {"input_tokens": 50, "output_tokens": 7},
        },
    }
    assert parser.parse_line(_line(assistant)) == "assistant"
    assert parser.stats.tokens_in == 50

    parser.parse_line(_line({"type": "result", "usage": {"input_tokens": 40, "output_tokens": 9}}))
    assert parser.stats.tokens_in == 40
    assert parser.stats.tokens_out == 9

    parser.parse_line(_line({**assistant, "message": {**assistant["message"], "usage": {"input_tokens": 5, "output_tokens": 1}}}))
    assert parser.stats.tokens_in == 45
    assert parser.stats.tokens_out == 10


def test_blank_and_malformed_lines_are_ignored() -> None:
    parser = StreamParser()
    assert parser.parse_line("") is None
    assert parser.parse_line("   \n") is None
    assert parser.parse_line("{not json") is None
    assert parser.parse_line("[1, 2, 3]") is None
    assert parser.stats.cost_usd == 0.0


def test_unknown_event_types_are_counted() -> None:
    parser = StreamParser()
    parser.parse_line(_line({"type": "telemetry"}))
    parser.parse_line(_line({"type": "telemetry"}))
    parser.parse_line(_line({"type": "system", "message": "init"}))

    assert parser.unknown_types == {"telemetry": 2}
    assert parser.unknown_event_count == 2
    assert parser.known_event_count == 1


def test_parse_line_reports_event_type_without_touching_stats() -> None:
    parser = StreamParser()
    event_type = parser.parse_line(
        _line(
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "a.md"}}]},
            }
        )
    )
    assert event_type == "assistant"
    assert parser.parse_line(_line({"type": "user", "message": {"content": []}})) == "user"
    assert parser.parse_line(_line({"message": "no type"})) is None
    assert parser.stats.tokens_in == 0
    assert parser.known_event_count == 2


def test_extract_stats_sums_multiple_results() -> None:
    output = "".join(
        [
            _line({"type": "result", "total_cost_usd": 0.5, "usage": {"input_tokens": 10, "output_tokens": 2}}),
            "not json\n",
            _line({"type": "result", "total_cost_usd": 0.25, "usage": {"input_tokens": 4, "output_tokens": 1}}),
        ]
    )
    stats = extract_stats(output)
    assert stats.cost_usd == pytest.approx(0.75)
    assert stats.tokens_in == 14
    assert stats.tokens_out == 3
