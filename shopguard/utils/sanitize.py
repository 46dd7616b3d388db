"""Shared sanitization utilities used across middleware."""

from __future__ import annotations

import html
import re
from typing import Any

import bleach


# Comprehensive control character pattern covering:
# C0 controls (\x00-\x1f), DEL (\x7f), C1 controls (\x80-\x9f),
# Unicode line/paragraph separators (\u2028-\u2029),
# bidi overrides (\u200b-\u200f, \u202a-\u202e, \u2066-\u2069),
# zero-width no-break space / BOM (\ufeff).
CONTROL_CHARS_RE = re.compile(
    r"[\x00-\x1f\x7f-\x9f\u2028\u2029\u200b-\u200f\u202a-\u202e\u2066-\u2069\ufeff]"
)

# <script> elements are removed together with their body, not just unwrapped.
_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)

# Containers nested deeper than this are replaced with None.
MAX_SANITIZE_DEPTH = 32

# Upper bound on strip passes; real payloads settle in two or three.
_MAX_STRIP_PASSES = 10


def strip_control_chars(value: str) -> str:
    """Strip all control characters from a string."""
    return CONTROL_CHARS_RE.sub("", value)


def truncate(value: str, max_length: int) -> str:
    """Strip control chars and truncate."""
    return strip_control_chars(value)[:max_length]


def _drop_script_blocks(value: str) -> str:
    previous = None
    while previous != value:
        previous = value
        value = _SCRIPT_BLOCK_RE.sub("", value)
    return value


def strip_markup(value: str) -> str:
    """Remove every tag from a string, dropping <script> bodies entirely.

    The result is plain text: bleach's entity escaping is undone, so
    ``Tom & Jerry`` and ``a < b`` come back unchanged. Script removal
    repeats until stable so split payloads such as
    ``<scr<script></script>ipt>`` cannot reassemble into a new block, and
    the whole strip repeats so entity-encoded markup (``&lt;script&gt;``)
    is removed once decoded.
    """
    previous = None
    passes = 0
    while previous != value and passes < _MAX_STRIP_PASSES:
        previous = value
        passes += 1
        value = _drop_script_blocks(value)
        value = html.unescape(bleach.clean(value, tags=[], attributes={}, strip=True, strip_comments=True))
    return value


def sanitize_value(value: Any, _depth: int = 0) -> Any:
    """Return ``value`` with markup stripped from every string leaf.

    Mappings keep their keys, lists and tuples keep their length and type,
    and non-string scalars (including None) are returned unchanged.
    Containers nested deeper than MAX_SANITIZE_DEPTH are replaced with None.
    """
    if isinstance(value, str):
        return strip_markup(value)
    if isinstance(value, dict):
        if _depth >= MAX_SANITIZE_DEPTH:
            return None
        return {key: sanitize_value(item, _depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        if _depth >= MAX_SANITIZE_DEPTH:
            return None
        return type(value)(sanitize_value(item, _depth + 1) for item in value)
    return value
