"""Completion promise detection."""

from __future__ import annotations

from orbital.constants import PROMISE_CONTEXT_CHARS
from orbital.models import ConfigError


class CompletionDetector:
    """Case-sensitive substring check for the configured completion promise."""

    def __init__(self, promise: str) -> None:
        if not promise:
            raise ConfigError("completion promise cannot be empty")
        self.promise = promise

    def check(self, output: str) -> bool:
        return self.promise in output

    def extract_context(self, output: str) -> str:
        """Return the text surrounding the first promise occurrence, or ``""``."""
        index = output.find(self.promise)
        if index < 0:
            return ""
        start = max(0, index - PROMISE_CONTEXT_CHARS)
        end = min(len(output), index + len(self.promise) + PROMISE_CONTEXT_CHARS)
        return output[start:end]
