"""
Glob-style key patterns for cache invalidation.

Syntax:
- ``*`` matches any run of characters (including none)
- ``?`` matches exactly one character
- ``\\*``, ``\\?`` and ``\\\\`` match a literal ``*``, ``?`` and ``\\``
- every other character matches itself

Patterns are anchored: ``"group:1:*"`` matches ``"group:1:"`` and
``"group:1:anything"`` but not ``"xgroup:1:a"``.
"""

from __future__ import annotations

import functools
import re


@functools.lru_cache(maxsize=256)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a glob pattern into an anchored regex."""
    parts: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        char = pattern[i]
        if char == "\\" and i + 1 < n and pattern[i + 1] in "*?\\":
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            # Collapse runs of stars
            while i + 1 < n and pattern[i + 1] == "*":
                i += 1
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


def glob_match(pattern: str, key: str) -> bool:
    return compile_glob(pattern).fullmatch(key) is not None


def is_literal(pattern: str) -> bool:
    """True when the pattern contains no unescaped wildcard."""
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern) and pattern[i + 1] in "*?\\":
            i += 2
            continue
        if char in "*?":
            return False
        i += 1
    return True
