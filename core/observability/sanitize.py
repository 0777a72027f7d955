"""Log sanitizing helpers.

ERP response bodies and user-supplied values end up in log lines and error
messages. Everything passed through here is stripped of control characters and
ANSI escapes (log injection) and truncated.
"""

import re
from typing import Any, Dict, Optional

MAX_LOG_LENGTH = 200

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

# Keys whose values are never written to logs
SENSITIVE_KEYS = (
    "secret",
    "password",
    "token",
    "authorization",
    "cookie",
    "signature",
    "credential",
)


def sanitize_for_log(value: Optional[str], max_length: int = MAX_LOG_LENGTH) -> str:
    """Make an arbitrary string safe to embed in a single log line.

    Example:
        >>> sanitize_for_log("admin\\nINFO: fake entry")
        'admin INFO: fake entry'
    """
    if value is None:
        return "None"

    text = _ANSI_ESCAPE.sub("", str(value))
    text = text.replace("\r", " ").replace("\n", " ").replace("\t", " ")
    text = "".join(c for c in text if ord(c) >= 0x20 and ord(c) != 0x7F)

    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def redact(value: Optional[str]) -> str:
    """Replace a secret with a length marker, e.g. ``[REDACTED-16]``."""
    if value is None:
        return "[REDACTED]"
    return f"[REDACTED-{len(value)}]"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    # token_endpoint and token_type are configuration, not secrets
    if lowered in ("token_endpoint", "token_type"):
        return False
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def redact_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with sensitive keys redacted (recursively)."""
    cleaned: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            cleaned[key] = redact_mapping(value)
        elif is_sensitive_key(str(key)):
            cleaned[key] = redact(value if isinstance(value, str) else None)
        else:
            cleaned[key] = value
    return cleaned
