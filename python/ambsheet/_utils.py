"""A1-style address helpers. All row/column indexes here are 0-based."""

from __future__ import annotations

import re

_A1_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")


def column_letter(col: int) -> str:
    """0 -> "A", 25 -> "Z", 26 -> "AA"."""
    if col < 0:
        raise ValueError(f"Negative column index: {col}")
    letters = ""
    n = col + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def column_index(letters: str) -> int:
    """"A" -> 0, "Z" -> 25, "AA" -> 26."""
    n = 0
    for ch in letters.upper():
        if not "A" <= ch <= "Z":
            raise ValueError(f"Invalid column letters: {letters!r}")
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


def a1_to_rowcol(ref: str) -> tuple[int, int]:
    """Convert ``"B3"`` (dollar signs allowed) to ``(2, 1)``."""
    m = _A1_RE.match(ref.strip())
    if not m:
        raise ValueError(f"Invalid cell reference: {ref!r}")
    row = int(m.group(2)) - 1
    if row < 0:
        raise ValueError(f"Invalid cell reference: {ref!r}")
    return row, column_index(m.group(1))


def rowcol_to_a1(row: int, col: int) -> str:
    """Convert ``(2, 1)`` to ``"B3"``."""
    return f"{column_letter(col)}{row + 1}"
