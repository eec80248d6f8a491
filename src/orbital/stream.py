"""Stream-json output parsing for agent CLI runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orbital.constants import KNOWN_STREAM_EVENT_TYPES
from orbital.utils import _append_log


@dataclass
class OutputStats:
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    duration_seconds: float = 0.0


def _usage_tokens(usage: Any) -> tuple[int, int] | None:
    if not isinstance(usage, dict):
        return None
    try:
        tokens_in = (
            int(usage.get("input_tokens", 0) or 0)
            + int(usage.get("cache_creation_input_tokens", 0) or 0)
            + int(usage.get("cache_read_input_tokens", 0) or 0)
        )
        tokens_out = int(usage.get("output_tokens", 0) or 0)
    except (TypeError, ValueError):
        return None
    return (tokens_in, tokens_out)


@dataclass
class StreamParser:
    """Accumulates usage and cost across the lines of one or more agent runs.

    Assistant messages carry provisional token counts for the call in flight;
    the next ``result`` event replaces them with its authoritative totals.
    Costs and durations from ``result`` events add up.
    """

    repo_root: Path | None = None
    stats: OutputStats = field(default_factory=OutputStats)
    known_event_count: int = 0
    unknown_types: dict[str, int] = field(default_factory=dict)
    _assistant_in: int = 0
    _assistant_out: int = 0
    _result_in: int = 0
    _result_out: int = 0

    @property
    def unknown_event_count(self) -> int:
        return sum(self.unknown_types.values())

    def parse_line(self, line: str | bytes) -> str | None:
        """Fold one output line into ``stats`` and return its event type.

        Blank, malformed and untyped lines yield ``None``.
        """
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        text = line.strip()
        if not text:
            return None
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(raw, dict):
            return None
        event_type = raw.get("type", "")
        if not isinstance(event_type, str) or not event_type:
            return None

        if event_type in KNOWN_STREAM_EVENT_TYPES:
            self.known_event_count += 1
        else:
            self.unknown_types[event_type] = self.unknown_types.get(event_type, 0) + 1
            if self.unknown_types[event_type] == 1:
                _append_log(
                    self.repo_root,
                    f"stream warning: unrecognised event type {event_type!r} in agent output",
                )

        if event_type == "assistant":
            self._parse_assistant_usage(raw)
        elif event_type == "result":
            self._parse_result_stats(raw)
        return event_type

    def parse_output(self, output: str) -> OutputStats:
        for line in output.splitlines():
            self.parse_line(line)
        return self.stats

    def _parse_assistant_usage(self, raw: dict[str, Any]) -> None:
        message = raw.get("message")
        if not isinstance(message, dict):
            return
        usage = _usage_tokens(message.get("usage"))
        if usage is not None:
            self._assistant_in, self._assistant_out = usage
            self.stats.tokens_in = self._result_in + self._assistant_in
            self.stats.tokens_out = self._result_out + self._assistant_out

    def _parse_result_stats(self, raw: dict[str, Any]) -> None:
        cost = raw.get("total_cost_usd")
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            self.stats.cost_usd += float(cost)
        duration_ms = raw.get("duration_ms")
        if isinstance(duration_ms, (int, float)) and not isinstance(duration_ms, bool):
            self.stats.duration_seconds += float(duration_ms) / 1000.0
        usage = _usage_tokens(raw.get("usage"))
        if usage is not None:
            self._result_in += usage[0]
            self._result_out += usage[1]
            self._assistant_in = 0
            self._assistant_out = 0
            self.stats.tokens_in = self._result_in
            self.stats.tokens_out = self._result_out


def extract_stats(output: str) -> OutputStats:
    """Usage totals for a complete captured stream."""
    return StreamParser().parse_output(output)
