"""
Secret redaction for log messages and error text.
"""

from typing import Any
import re


REDACTED = "***REDACTED***"

_OPENAI_KEY = re.compile(r"\bsk-[a-zA-Z0-9]{20,}\b")
_LONG_TOKEN = re.compile(r"\b[A-Za-z0-9]{32,}\b")
_API_KEY_PAIR = re.compile(r"api[_-]?key[\"\s:=]+([a-zA-Z0-9_-]{20,})", re.IGNORECASE)
_SENSITIVE_KEYS = ("key", "secret", "token")


def redact_secrets(value: Any) -> Any:
    """
    Mask things that look like credentials.

    Strings are scrubbed for API keys and long opaque tokens; mappings have
    any key mentioning key/secret/token masked; lists are handled item by item.
    """
    if isinstance(value, str):
        value = _OPENAI_KEY.sub(f"sk-{REDACTED}", value)
        value = _LONG_TOKEN.sub(lambda m: f"{m.group(0)[:8]}{REDACTED}", value)
        return _API_KEY_PAIR.sub(f'api_key="{REDACTED}"', value)
    if isinstance(value, (list, tuple)):
        return [redact_secrets(item) for item in value]
    if isinstance(value, dict):
        return {
            k: REDACTED if any(s in str(k).lower() for s in _SENSITIVE_KEYS) else redact_secrets(v)
            for k, v in value.items()
        }
    return value
