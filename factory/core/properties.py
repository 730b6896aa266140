"""factory.core.properties

Reader for `key=value` properties files (the secrets file format).

Syntax:
- `#` or `!` as the first non-blank character starts a comment line
- key and value are separated by `=`, `:` or whitespace
- a line ending in an odd number of backslashes continues on the next line
- escapes: `\\t \\n \\r \\f`, `\\uXXXX`, and `\\<c>` for any other literal `c`

Values are literal otherwise: inline `#`, quotes and `${...}` are kept as-is.
"""

from __future__ import annotations

import re
import string
from collections.abc import Iterator
from pathlib import Path

_BLANK = " \t\f"
_SEPARATORS = "=:"
_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


def _logical_lines(text: str) -> Iterator[str]:
    pending: str | None = None
    for natural in _NEWLINE_RE.split(text):
        line = natural.lstrip(_BLANK)
        if pending is None and (not line or line[0] in "#!"):
            continue
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending = (pending or "") + line[:-1]
            continue
        yield (pending or "") + line
        pending = None
    if pending is not None:
        yield pending


def _unescape(text: str) -> str:
    if "\\" not in text:
        return text
    out: list[str] = []
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        i += 1
        if c != "\\":
            out.append(c)
            continue
        if i >= n:
            break
        c = text[i]
        i += 1
        if c == "u":
            digits = text[i : i + 4]
            if len(digits) != 4 or any(d not in string.hexdigits for d in digits):
                raise ValueError("Malformed \\uxxxx encoding")
            out.append(chr(int(digits, 16)))
            i += 4
        else:
            out.append(_ESCAPES.get(c, c))
    return "".join(out)


def _split_entry(line: str) -> tuple[str, str]:
    n = len(line)
    end = 0
    while end < n:
        c = line[end]
        if c == "\\":
            end += 2
            continue
        if c in _SEPARATORS or c in _BLANK:
            break
        end += 1
    end = min(end, n)

    start = end
    while start < n and line[start] in _BLANK:
        start += 1
    if start < n and line[start] in _SEPARATORS:
        start += 1
        while start < n and line[start] in _BLANK:
            start += 1

    return _unescape(line[:end]), _unescape(line[start:])


def parse_properties(text: str) -> dict[str, str]:
    """Parse properties text. Later duplicates win.

    Raises:
        ValueError: a malformed `\\uXXXX` escape.
    """

    entries: dict[str, str] = {}
    for line in _logical_lines(text):
        key, value = _split_entry(line)
        entries[key] = value
    return entries


def load_properties(path: Path) -> dict[str, str]:
    return parse_properties(path.read_text(encoding="utf-8"))
