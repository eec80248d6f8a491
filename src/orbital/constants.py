"""Orbital constants -- defaults, signal tags, file layout, and exit codes."""

from __future__ import annotations

import re

ORBITAL_DIR_NAME = ".orbital"
CONFIG_FILE_NAME = "config.yaml"
STATE_DIR_NAME = "state"
STATE_FILE_NAME = "state.json"
QUEUE_FILE_NAME = "queue.json"
QUEUE_LOCK_FILE_NAME = "queue.lock"
LOG_RELATIVE_PATH = ("logs", "orbital.log")

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_COMPLETION_PROMISE = "<promise>COMPLETE</promise>"
DEFAULT_MODEL = "opus"
DEFAULT_CHECKER_MODEL = "haiku"
DEFAULT_MAX_BUDGET = 100.0
DEFAULT_ITERATION_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_OUTPUT_SIZE = 10 * 1024 * 1024
DEFAULT_NOTES_FILE = ".orbital/notes.md"
DEFAULT_AGENT_COMMAND = "claude"

DEFAULT_MAX_GATE_RETRIES = 3

GATE_PASS_TAG = "<gate>PASS</gate>"
GATE_FAIL_TAG = "<gate>FAIL</gate>"

VERIFIED_PATTERN = re.compile(r"VERIFIED:\s*0\s*unchecked,\s*(\d+)\s*checked")
INCOMPLETE_PATTERN = re.compile(r"INCOMPLETE:\s*(\d+)\s*unchecked,\s*(\d+)\s*checked")

PROMISE_CONTEXT_CHARS = 50
OUTPUT_TRUNCATION_MARKER = "[OUTPUT TRUNCATED - SHOWING MOST RECENT CONTENT]\n"

KNOWN_STREAM_EVENT_TYPES = frozenset(
    {
        "assistant",
        "user",
        "result",
        "error",
        "content_block_delta",
        "content_block_start",
        "content_block_stop",
        "system",
    }
)

EXIT_SUCCESS = 0
EXIT_MAX_ITERATIONS = 1
EXIT_BUDGET_EXCEEDED = 2
EXIT_TIMEOUT = 3
EXIT_ERROR = 4
EXIT_MAX_GATE_RETRIES = 5
EXIT_INTERRUPTED = 130
