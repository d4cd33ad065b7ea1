"""Credential redaction for gateway log records."""

from __future__ import annotations

import logging
import re

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

REDACTED = "[REDACTED]"

# Order matters: token bodies first, so the header rules only see leftovers.
DEFAULT_RULES: list[tuple[str, str]] = [
    (r"\bFlyV1\s+[A-Za-z0-9._\-+/=,]+", f"FlyV1 {REDACTED}"),
    (r"\bfo1_[A-Za-z0-9_\-]+", f"fo1_{REDACTED}"),
    (r"(?i)\b(authorization)\s*:\s*bearer\s+(?!\[REDACTED\])[a-z0-9._\-+/=]+", rf"\1: Bearer {REDACTED}"),
    (r"(?i)\bbearer\s+(?!\[REDACTED\])(?!FlyV1\b)[a-z0-9._\-+/=]+", f"Bearer {REDACTED}"),
    (
        r'(?i)("?(?:api[-_]?key|api[-_]?token|token|secret|password)"?\s*[:=]\s*)(".*?"|\'.*?\'|[^,\s;}]+)',
        rf"\1{REDACTED}",
    ),
]


class LogRedactor:
    """Scrub Machines API tokens and secret-looking pairs from log text.

    `extra_patterns` is a `||`-separated list of regexes whose matches are
    replaced wholesale. Patterns that fail to compile are ignored.
    """

    def __init__(self, extra_patterns: str = ""):
        self._rules = [(re.compile(pattern), repl) for pattern, repl in DEFAULT_RULES]
        for raw in (extra_patterns or "").split("||"):
            pattern = raw.strip()
            if not pattern:
                continue
            try:
                self._rules.append((re.compile(pattern), REDACTED))
            except re.error:
                logging.getLogger(__name__).warning("Ignoring invalid redaction pattern: %r", pattern)

    def redact(self, text: str) -> str:
        for regex, repl in self._rules:
            text = regex.sub(repl, text)
        return text


class RedactingFilter(logging.Filter):
    """Rewrites each record's final message through a LogRedactor."""

    def __init__(self, redactor: LogRedactor):
        super().__init__()
        self._redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = self._redactor.redact(message)
        record.args = None
        return True


def configure_logging(level: str = "INFO", extra_patterns: str = "") -> None:
    """Configure root logging and attach the redacting filter to every root handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    redactor = LogRedactor(extra_patterns)
    for handler in logging.getLogger().handlers:
        if any(isinstance(f, RedactingFilter) for f in handler.filters):
            continue
        handler.addFilter(RedactingFilter(redactor))
