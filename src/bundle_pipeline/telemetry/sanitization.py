"""Sanitize error messages before they reach spans and logs.

Platform tokens travel as bearer headers and as environment variables for the
validation harness, so error text from httpx or subprocesses can contain them.
"""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|token|api_key|apikey|authorization|credential)"
    r"\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_BEARER_PATTERN = re.compile(r"(Bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_URL_CREDENTIAL_PATTERN = re.compile(r"://[^@/\s]+:[^@/\s]+@")


def _redact_key_value(match: re.Match[str]) -> str:
    text = match.group(0)
    if "=" in text:
        return text.split("=", 1)[0] + "=<REDACTED>"
    return text.split(":", 1)[0] + ": <REDACTED>"


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials from an error message and truncate it.

    Args:
        msg: Raw error message.
        max_length: Maximum length of the returned message.

    Returns:
        Sanitized, truncated message.

    Example:
        >>> sanitize_error_message("harness failed: token=abc123 rejected")
        'harness failed: token=<REDACTED> rejected'
        >>> sanitize_error_message("sent Bearer abc.def")
        'sent Bearer <REDACTED>'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", msg)
    sanitized = _BEARER_PATTERN.sub(r"\1 <REDACTED>", sanitized)
    sanitized = _SENSITIVE_KEY_PATTERN.sub(_redact_key_value, sanitized)
    return sanitized[:max_length]


def redact_secret(msg: str, secret: str | None) -> str:
    """Remove a known secret value from text."""
    if not secret:
        return msg
    return msg.replace(secret, "<REDACTED>")


__all__ = ["redact_secret", "sanitize_error_message"]
