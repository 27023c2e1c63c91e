"""Display helpers: value formatting, min/avg/max summaries and value stacks."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Union

import numpy as np

from ambsheet.calc._values import FilteredValue, RawValue, Value

AnyValue = Union[Value, FilteredValue]


def format_raw_value(raw: Any) -> str:
    """Short display text for a raw value."""
    if isinstance(raw, bool):
        return "TRUE" if raw else "FALSE"
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        if math.isnan(raw):
            return "NaN"
        if math.isinf(raw):
            return "Infinity" if raw > 0 else "-Infinity"
        if raw.is_integer() and abs(raw) < 1e15:
            return str(int(raw))
        return f"{raw:.6g}"
    if isinstance(raw, tuple):
        return "[" + ", ".join(format_raw_value(v) for v in raw) + "]"
    return str(raw)


def _included(value: AnyValue) -> bool:
    return value.include if isinstance(value, FilteredValue) else True


def _raw(value: AnyValue) -> RawValue:
    return value.raw_value


@dataclass(frozen=True)
class Summary:
    """Aggregate view of a cell's values. Numeric fields are None without numbers."""

    count: int
    numeric_count: int
    min: float | None = None
    avg: float | None = None
    max: float | None = None


def summarize(values: Sequence[AnyValue], included_only: bool = True) -> Summary:
    """min / avg / max over the numeric raw values (booleans excluded).

    Every branch counts once, so a value repeated ``x N`` weighs N times.
    """
    chosen = [v for v in values if _included(v)] if included_only else list(values)
    numbers = [
        _raw(v) for v in chosen
        if isinstance(_raw(v), (int, float)) and not isinstance(_raw(v), bool)
    ]
    if not numbers:
        return Summary(count=len(chosen), numeric_count=0)
    arr = np.asarray(numbers, dtype=float)
    return Summary(
        count=len(chosen),
        numeric_count=len(numbers),
        min=float(np.min(arr)),
        avg=float(np.mean(arr)),
        max=float(np.max(arr)),
    )


@dataclass(frozen=True)
class ValueGroup:
    """All values of a cell that display the same, with their indexes in the cell."""

    raw_value: RawValue
    indexes: tuple[int, ...]

    @property
    def count(self) -> int:
        return len(self.indexes)


def group_values(values: Sequence[AnyValue]) -> list[ValueGroup]:
    """Group a cell's values by displayed value, in first-occurrence order.

    A group's ``indexes`` can be passed straight to a ``Selection`` to pin
    every branch that produced that value.
    """
    first: dict[str, RawValue] = {}
    members: dict[str, list[int]] = {}
    for i, v in enumerate(values):
        key = format_raw_value(_raw(v))
        if key not in members:
            first[key] = _raw(v)
            members[key] = []
        members[key].append(i)
    return [ValueGroup(first[k], tuple(idx)) for k, idx in members.items()]
