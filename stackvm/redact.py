"""Secret redaction for log output."""

import logging
import os
import re

# Env vars whose values should be redacted from all output
_SECRET_ENV_VARS = [
    "OS_PASSWORD",
    "OS_AUTH_TOKEN",
    "STACKVM_ADMIN_PASSWORD",
]

_MIN_SECRET_LENGTH = 8  # skip short values to avoid false positives


def _collect_secret_values() -> set[str]:
    values = set()
    for var in _SECRET_ENV_VARS:
        val = os.environ.get(var, "")
        if len(val) >= _MIN_SECRET_LENGTH:
            values.add(val)
    return values


def _build_patterns(values: set[str]) -> list[re.Pattern]:
    # Longer values first so a secret containing another is fully masked
    return [re.compile(re.escape(v)) for v in sorted(values, key=len, reverse=True)]


_patterns: list[re.Pattern] | None = None
_extra_values: set[str] = set()


def _get_patterns() -> list[re.Pattern]:
    global _patterns
    if _patterns is None:
        _patterns = _build_patterns(_collect_secret_values() | _extra_values)
    return _patterns


def register_secret(value: str) -> None:
    """Redact *value* too, e.g. a password read from a config file."""
    global _patterns
    if value and len(value) >= _MIN_SECRET_LENGTH:
        _extra_values.add(value)
        _patterns = None


def _apply(text: str, patterns: list[re.Pattern]) -> str:
    for p in patterns:
        text = p.sub("***", text)
    return text


def redact_secrets(text: str) -> str:
    """Replace known secret values with '***'."""
    return _apply(text, _get_patterns())


class SecretRedactingFilter(logging.Filter):
    """Logging filter that replaces secret values in log records with '***'.

    Handles both f-string messages (msg is pre-formatted) and %-style
    messages (msg + args).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        patterns = _get_patterns()
        if patterns:
            record.msg = _apply(str(record.msg), patterns)
            if record.args:
                if isinstance(record.args, dict):
                    record.args = {k: _apply(v, patterns) if isinstance(v, str) else v for k, v in record.args.items()}
                elif isinstance(record.args, tuple):
                    record.args = tuple(_apply(a, patterns) if isinstance(a, str) else a for a in record.args)
        return True
