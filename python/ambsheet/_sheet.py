"""Sheet: an in-memory grid of raw cell contents with .xlsx import/export."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from typing import Any

from ambsheet._utils import a1_to_rowcol, rowcol_to_a1


class Sheet:
    """A growable 2-D grid of raw cells (``str | int | float | bool | None``).

    Cells are addressed 0-based by ``(row, col)``, by anything with ``row`` and
    ``col`` attributes, or by an A1 string::

        sheet = Sheet([["={1,2}", "=A1+10"]])
        sheet["A2"] = "=B1*2"
        sheet[1, 1] = "hello"

    The grid never shrinks: rows and columns can be inserted but not removed.
    """

    __slots__ = ("_title", "_rows", "_width")

    def __init__(self, rows: Iterable[Iterable[Any]] = (), title: str = "Sheet") -> None:
        self._title = title
        self._rows: list[list[Any]] = []
        self._width = 0
        for row in rows:
            self.append(row)

    @property
    def title(self) -> str:
        return self._title

    @title.setter
    def title(self, value: str) -> None:
        self._title = value

    @property
    def max_row(self) -> int:
        """Number of rows."""
        return len(self._rows)

    @property
    def max_col(self) -> int:
        """Number of columns."""
        return self._width

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    @staticmethod
    def _key(key: Any) -> tuple[int, int]:
        if isinstance(key, str):
            return a1_to_rowcol(key)
        if isinstance(key, tuple) and len(key) == 2:
            row, col = key
        elif hasattr(key, "row") and hasattr(key, "col"):
            row, col = key.row, key.col
        else:
            raise KeyError(f"Invalid cell key: {key!r}")
        if row < 0 or col < 0:
            raise KeyError(f"Negative cell coordinate: {key!r}")
        return row, col

    def __getitem__(self, key: Any) -> Any:
        """``sheet['A1']`` / ``sheet[0, 0]`` -> raw content, None when unset."""
        row, col = self._key(key)
        if row >= len(self._rows) or col >= self._width:
            return None
        return self._rows[row][col]

    def __setitem__(self, key: Any, value: Any) -> None:
        row, col = self._key(key)
        self._ensure_size(row + 1, col + 1)
        self._rows[row][col] = value

    def _ensure_size(self, n_rows: int, n_cols: int) -> None:
        if n_cols > self._width:
            for r in self._rows:
                r.extend([None] * (n_cols - self._width))
            self._width = n_cols
        while len(self._rows) < n_rows:
            self._rows.append([None] * self._width)

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------

    def append(self, iterable: Iterable[Any]) -> None:
        """Append a row of values starting at column A."""
        row = list(iterable)
        self._ensure_size(len(self._rows), len(row))
        row.extend([None] * (self._width - len(row)))
        self._rows.append(row)

    def insert_rows(self, idx: int, amount: int = 1) -> None:
        """Insert *amount* empty rows before row *idx* (0-based)."""
        if idx < 0 or amount < 0:
            raise ValueError("insert_rows requires non-negative idx and amount")
        self._ensure_size(idx, 0)
        for _ in range(amount):
            self._rows.insert(idx, [None] * self._width)

    def insert_cols(self, idx: int, amount: int = 1) -> None:
        """Insert *amount* empty columns before column *idx* (0-based)."""
        if idx < 0 or amount < 0:
            raise ValueError("insert_cols requires non-negative idx and amount")
        self._ensure_size(0, idx)
        for r in self._rows:
            r[idx:idx] = [None] * amount
        self._width += amount

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def iter_rows(
        self,
        min_row: int | None = None,
        max_row: int | None = None,
        min_col: int | None = None,
        max_col: int | None = None,
    ) -> Iterator[tuple[Any, ...]]:
        """Iterate over rows of raw values; bounds are 0-based and inclusive."""
        r_min = min_row or 0
        r_max = len(self._rows) - 1 if max_row is None else max_row
        c_min = min_col or 0
        c_max = self._width - 1 if max_col is None else max_col
        for r in range(r_min, r_max + 1):
            yield tuple(self[r, c] for c in range(c_min, c_max + 1))

    def to_grid(self) -> list[list[Any]]:
        """Copy of the grid as a list of equally long rows."""
        return [list(r) for r in self._rows]

    # ------------------------------------------------------------------
    # .xlsx interop
    # ------------------------------------------------------------------

    def save(self, filename: str | os.PathLike[str]) -> None:
        """Write the raw grid to an .xlsx file (formulas are stored as text)."""
        import openpyxl

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = self._title
        for r, row in enumerate(self._rows):
            for c, value in enumerate(row):
                if value is not None:
                    ws.cell(row=r + 1, column=c + 1, value=value)
        wb.save(str(filename))

    def __repr__(self) -> str:
        if not self._rows or not self._width:
            return f"<Sheet [{self._title}] empty>"
        corner = rowcol_to_a1(len(self._rows) - 1, self._width - 1)
        return f"<Sheet [{self._title}] A1:{corner}>"


def load_sheet(filename: str | os.PathLike[str], sheet_name: str | None = None) -> Sheet:
    """Read raw cell contents from an .xlsx file.

    Formula strings come back verbatim (``data_only=False``) so amb formulas
    survive a round trip.
    """
    import openpyxl

    wb = openpyxl.load_workbook(str(filename), data_only=False)
    try:
        ws = wb[sheet_name] if sheet_name is not None else wb.active
        return Sheet(ws.iter_rows(values_only=True), title=ws.title)
    finally:
        wb.close()
