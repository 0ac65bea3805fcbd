"""Log redaction: scrubs API keys and tokens that the agent may echo into its output."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

REDACTED = "[REDACTED]"


def compile_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    """Compile redaction patterns, skipping any that are not valid regexes."""
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error:
            continue
    return compiled


def redact_string(text: str, patterns: Sequence[str | re.Pattern[str]]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for pattern in patterns:
        try:
            text = re.sub(pattern, REDACTED, text)
        except re.error:
            pass
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts secrets from log records before they are emitted.

    Agent output lines (progress samples, work summaries) are logged verbatim,
    so the filter runs on every handler, including the logs/cralph.log file.
    """

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._patterns:
            record.msg = redact_string(str(record.msg), self._patterns)
            if isinstance(record.args, tuple):
                record.args = tuple(
                    redact_string(a, self._patterns) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


def install_redaction(
    patterns: Sequence[str], handlers: Iterable[logging.Handler] | None = None
) -> RedactingFilter:
    """Attach one shared RedactingFilter to the given handlers (default: root handlers)."""
    redactor = RedactingFilter(patterns)
    for handler in handlers if handlers is not None else logging.root.handlers:
        handler.addFilter(redactor)
    return redactor
