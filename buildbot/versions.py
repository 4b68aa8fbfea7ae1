# buildbot/versions.py
"""
Version token comparator.

Release file names like "lua-5.1.4.tar.gz" or "LuaJIT-2.0.0-beta8.zip" are
split into alternating text and number tokens; digit runs compare as
integers so that 5.1.10 sorts after 5.1.4 and beta10 after beta8.
"""

from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Callable, Iterable, List, Sequence, Union

from buildbot.errors import EmptyInput

Token = Union[int, str]

_DIGITS = re.compile(r"\d+")
_KNOWN_EXTENSIONS = (".gz", ".tar", ".tgz", ".zip")

# A position that only one of two sequences has. Sorts below every token.
_MISSING = object()


def strip_extensions(s: str) -> str:
    """Remove trailing archive suffixes (each one optional, applied in order)."""
    for ext in _KNOWN_EXTENSIONS:
        if s.endswith(ext):
            s = s[: -len(ext)]
    return s


def tokenize(s: str, strip_known_extensions: bool = False) -> List[Token]:
    if strip_known_extensions:
        s = strip_extensions(s)
    tokens: List[Token] = []
    index = 0
    for m in _DIGITS.finditer(s):
        if index < m.start():
            tokens.append(s[index:m.start()])
        tokens.append(int(m.group(0)))
        index = m.end()
    if index < len(s):
        tokens.append(s[index:])
    return tokens


def _compare_tokens(left, right) -> int:
    if left is _MISSING:
        return 0 if right is _MISSING else -1
    if right is _MISSING:
        return 1
    if type(left) is not type(right):
        left, right = str(left), str(right)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def compare(a: Sequence[Token], b: Sequence[Token]) -> int:
    """Return -1, 0 or 1 as token sequence a sorts before, with or after b."""
    for i in range(max(len(a), len(b))):
        left = a[i] if i < len(a) else _MISSING
        right = b[i] if i < len(b) else _MISSING
        order = _compare_tokens(left, right)
        if order:
            return order
    return 0


def compare_versions(a: str, b: str, strip_known_extensions: bool = False) -> int:
    return compare(tokenize(a, strip_known_extensions), tokenize(b, strip_known_extensions))


def version_key(strip_known_extensions: bool = False) -> Callable[[str], object]:
    return cmp_to_key(lambda a, b: compare_versions(a, b, strip_known_extensions))


def sort_versions(candidates: Iterable[str], strip_known_extensions: bool = False) -> List[str]:
    return sorted(candidates, key=version_key(strip_known_extensions))


def select_max(candidates: Iterable[str], strip_known_extensions: bool = False) -> str:
    ordered = sort_versions(candidates, strip_known_extensions)
    if not ordered:
        raise EmptyInput("cannot select the newest version from an empty list")
    return ordered[-1]
