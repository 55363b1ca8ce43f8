"""Log redaction utilities for credentials and image payloads.

Used across sightline so provider keys, bearer tokens and base64 frames never
appear in logs.
"""

import re
from typing import Any, Dict, Iterable, Mapping, Optional


_REDACTION_PATTERNS = [
    # API keys
    (re.compile(r'sk-ant-[a-zA-Z0-9_-]{20,}'), '[REDACTED:anthropic_key]'),
    (re.compile(r'sk-(?:proj-)?[a-zA-Z0-9_-]{20,}'), '[REDACTED:openai_key]'),
    # Generic bearer tokens
    (re.compile(r'Bearer\s+[a-zA-Z0-9._-]{20,}'), 'Bearer [REDACTED]'),
    # Inline images
    (re.compile(r'data:image/[a-z]+;base64,[A-Za-z0-9+/=]+'), '[REDACTED:image]'),
    (re.compile(r'[A-Za-z0-9+/]{200,}={0,2}'), '[REDACTED:base64]'),
]


def redact_string(text: str) -> str:
    """Redact sensitive patterns from a string."""
    if not isinstance(text, str):
        return text
    result = text
    for pattern, replacement in _REDACTION_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


# key fragments whose values are masked outright
SENSITIVE_KEYS = frozenset({
    "credential", "api_key", "apikey", "x-api-key",
    "authorization", "secret", "token",
})


def _is_sensitive(key: Any, fragments: Iterable[str]) -> bool:
    name = str(key).lower()
    return any(fragment in name for fragment in fragments)


def _redact_value(value: Any, fragments: Iterable[str]) -> Any:
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, Mapping):
        return redact_dict(value, fragments)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, fragments) for item in value]
    return value


def redact_dict(data: Mapping[str, Any], sensitive_keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Copy of ``data`` safe to log or return.

    Values under keys containing one of ``sensitive_keys`` become
    ``[REDACTED]``; strings elsewhere go through ``redact_string``, nested
    mappings and lists are walked.
    """
    fragments = tuple(sensitive_keys) if sensitive_keys is not None else tuple(SENSITIVE_KEYS)
    return {
        key: "[REDACTED]" if _is_sensitive(key, fragments) else _redact_value(value, fragments)
        for key, value in data.items()
    }
