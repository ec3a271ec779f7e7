from __future__ import annotations

import json
import re
from typing import Any


_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
# Valid JSON escapes are \" \\ \/ \b \f \n \r \t \uXXXX
_VALID_ESCAPES = frozenset('"\\/bfnrtu')


_CLOSERS = {"{": "}", "[": "]"}


def extract_json_text(text: str, opener: str = "{") -> str:
    """Pull the JSON payload out of a model reply.

    A code fence wins; otherwise the outermost `opener ... closer` span is
    taken, so brackets of the other kind in surrounding prose are ignored.
    """
    closer = _CLOSERS.get(opener)
    if closer is None:
        raise ValueError(f"opener must be one of {', '.join(_CLOSERS)}")

    t = text.strip()

    m = _CODE_FENCE_RE.search(t)
    if m:
        return m.group(1).strip()

    start = t.find(opener)
    end = t.rfind(closer)
    if start != -1 and end > start:
        return t[start : end + 1]
    return t


def repair_escapes(json_text: str) -> str:
    r"""Turn invalid escapes like `\.` or `\:` into the literal character.

    Escapes are consumed pairwise, so an escaped backslash (`\\`) followed by
    another character is left alone.
    """

    def _fix(m: re.Match[str]) -> str:
        ch = m.group(1)
        return m.group(0) if ch in _VALID_ESCAPES else ch

    return _ESCAPE_RE.sub(_fix, json_text)


def loads_lenient(text: str, opener: str = "{") -> Any:
    """Extract, repair, then `json.loads`. Raises `json.JSONDecodeError`."""
    # strict=False tolerates raw newlines and tabs inside strings.
    return json.loads(repair_escapes(extract_json_text(text, opener)), strict=False)


def parse_json_array(text: str) -> list[str]:
    """Parse a JSON array of strings from a model reply; non-strings are dropped."""
    parsed = loads_lenient(text, opener="[")
    if isinstance(parsed, list):
        return [k for k in parsed if isinstance(k, str)]
    return []
