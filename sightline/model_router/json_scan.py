"""Tolerant JSON field extraction for free-form model replies.

Vision-language models are asked for JSON but routinely wrap it in markdown
fences, prepend prose, truncate it, or emit almost-JSON (trailing commas,
single stray tokens). ``json.loads`` rejects all of that, so this module
locates the object by bracket-depth counting and pulls individual fields out
by targeted key search. Every extractor returns a default instead of raising:
missing strings are "", numbers 0.0, bools False, arrays [].

Only ``locate_json_object`` can signal failure (returns None) so the caller
can surface a parse error when no object exists at all.
"""

from __future__ import annotations

import json
import re
from typing import List, Optional

_FENCE_RE = re.compile(r"```[A-Za-z]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?|-?\.\d+")

_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block that holds an object."""
    if "```" not in text:
        return text
    for match in _FENCE_RE.finditer(text):
        body = match.group(1).strip()
        if "{" in body:
            return body
    return text


def _string_end(text: str, start: int) -> int:
    """Index of the quote closing the string opened at ``start`` (or len)."""
    i = start + 1
    while i < len(text):
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c == '"':
            return i
        i += 1
    return len(text)


def find_matching(text: str, start: int) -> int:
    """Index of the bracket closing the one at ``start``, or -1.

    Quoted strings are skipped so braces inside values do not count.
    """
    if start < 0 or start >= len(text) or text[start] not in _CLOSERS:
        return -1
    opener = text[start]
    closer = _CLOSERS[opener]
    depth = 0
    i = start
    while i < len(text):
        c = text[i]
        if c == '"':
            i = _string_end(text, i) + 1
            continue
        if c == opener:
            depth += 1
        elif c == closer:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def locate_json_object(text: Optional[str]) -> Optional[str]:
    """Find the first JSON object in free-form text.

    Falls back to the last ``}`` when the object is unbalanced (truncated
    output). Returns None when the text holds no object.
    """
    if not text:
        return None
    body = strip_code_fences(text)
    start = body.find("{")
    if start < 0:
        return None
    end = find_matching(body, start)
    if end < 0:
        end = body.rfind("}")
        if end <= start:
            return None
    return body[start:end + 1]


def _unescape(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except (json.JSONDecodeError, ValueError):
        return (
            raw.replace('\\"', '"')
            .replace("\\n", "\n")
            .replace("\\r", "\r")
            .replace("\\t", "\t")
            .replace("\\\\", "\\")
        )


def _value_start(text: str, key: str) -> int:
    """Position of the first non-space character after ``"key":``, or -1."""
    match = re.search(r'"%s"\s*:\s*' % re.escape(key), text)
    if match is None:
        return -1
    return match.end()


def has_key(text: str, key: str) -> bool:
    return _value_start(text, key) >= 0


def _read_string_at(text: str, pos: int) -> Optional[str]:
    if pos < 0 or pos >= len(text) or text[pos] != '"':
        return None
    end = _string_end(text, pos)
    return _unescape(text[pos + 1:end])


def extract_string(text: str, key: str, default: str = "") -> str:
    pos = _value_start(text, key)
    value = _read_string_at(text, pos)
    return default if value is None else value


def extract_number(text: str, key: str, default: float = 0.0) -> float:
    pos = _value_start(text, key)
    if pos < 0:
        return default
    if pos < len(text) and text[pos] == '"':
        pos += 1
    match = _NUMBER_RE.match(text, pos)
    if match is None:
        return default
    try:
        return float(match.group(0))
    except ValueError:
        return default


def extract_bool(text: str, key: str, default: bool = False) -> bool:
    pos = _value_start(text, key)
    if pos < 0:
        return default
    token = text[pos:pos + 7].lstrip('"').lower()
    if token.startswith("true"):
        return True
    if token.startswith("false"):
        return False
    return default


def extract_string_array(text: str, key: str) -> List[str]:
    """Quoted strings inside the array value of ``key``.

    A bare string value is accepted as a one-element list.
    """
    pos = _value_start(text, key)
    if pos < 0 or pos >= len(text):
        return []
    if text[pos] == '"':
        single = _read_string_at(text, pos)
        return [single] if single else []
    if text[pos] != "[":
        return []
    end = find_matching(text, pos)
    if end < 0:
        end = len(text)
    items: List[str] = []
    i = pos + 1
    while i < end:
        if text[i] == '"':
            close = _string_end(text, i)
            value = _unescape(text[i + 1:close])
            if value:
                items.append(value)
            i = close + 1
            continue
        i += 1
    return items


def extract_object(text: str, key: str) -> Optional[str]:
    """Raw text of the object value of ``key``, or None."""
    pos = _value_start(text, key)
    if pos < 0 or pos >= len(text) or text[pos] != "{":
        return None
    end = find_matching(text, pos)
    if end < 0:
        return None
    return text[pos:end + 1]


def extract_nested_string(text: str, parent: str, child: str) -> str:
    """``parent.child`` as a string; a plain string parent is returned as-is."""
    pos = _value_start(text, parent)
    if pos < 0:
        return ""
    direct = _read_string_at(text, pos)
    if direct is not None:
        return direct
    block = extract_object(text, parent)
    if block is None:
        return ""
    return extract_string(block, child)


def extract_object_blocks(text: str, key: str) -> List[str]:
    """Top-level ``{...}`` elements of the array value of ``key``."""
    pos = _value_start(text, key)
    if pos < 0 or pos >= len(text) or text[pos] != "[":
        return []
    end = find_matching(text, pos)
    if end < 0:
        end = len(text)
    blocks: List[str] = []
    i = pos + 1
    while i < end:
        c = text[i]
        if c == '"':
            i = _string_end(text, i) + 1
            continue
        if c == "{":
            close = find_matching(text, i)
            if close < 0:
                break
            blocks.append(text[i:close + 1])
            i = close + 1
            continue
        i += 1
    return blocks
