"""Operators, builtin functions and the function registry.

Builtins work on plain raw values: the evaluator has already picked one
possible world per call, so a builtin never sees contexts. Range arguments
arrive as tuples of raw values.

Domain errors follow IEEE float semantics like division does: ``sqrt(-1)``
and ``mod(x, 0)`` give ``nan`` and ``pow(0, -1)`` gives ``inf``, so only the
worlds that hit them are affected.
"""

from __future__ import annotations

import math
from typing import Any, Callable

from ambsheet.calc._values import CellError, EvaluationError

ARITHMETIC_OPERATORS = ("+", "-", "*", "/")
RELATIONAL_OPERATORS = ("=", "<>", ">=", ">", "<=", "<")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float))


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _coerce_string(val: Any) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    return str(val)


def _divide(left: float, right: float) -> float:
    if right != 0:
        return left / right
    # IEEE semantics: only the worlds that divide by zero are affected.
    if left == 0 or math.isnan(left):
        return math.nan
    return math.copysign(math.inf, left) * (math.copysign(1.0, right))


def binary_op(left: Any, op: str, right: Any) -> Any:
    """Evaluate an arithmetic operator on two raw values.

    ``+`` concatenates when either side is a string. Anything else that is
    not numeric is an authoring mistake.
    """
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return _coerce_string(left) + _coerce_string(right)
    if not _is_number(left) or not _is_number(right):
        raise EvaluationError(f"Cannot apply {op!r} to {left!r} and {right!r}")
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op == "/":
        return _divide(left, right)
    raise EvaluationError(f"Unknown operator: {op!r}", code=CellError.NAME)


def compare(left: Any, right: Any, op: str) -> bool:
    """Evaluate a comparison operator.

    Numbers compare numerically (numeric strings are coerced); everything
    else falls back to a case-insensitive string comparison.
    """
    if _is_number(left) and _is_number(right):
        lf, rf = left, right
    else:
        try:
            lf = float(left) if not _is_number(left) else left
            rf = float(right) if not _is_number(right) else right
        except (ValueError, TypeError):
            ls = _coerce_string(left).lower()
            rs = _coerce_string(right).lower()
            return _ordered(ls, rs, op)
    return _ordered(lf, rf, op)


def _ordered(a: Any, b: Any, op: str) -> bool:
    if op == "=":
        return a == b
    if op == "<>":
        return a != b
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    if op == "<=":
        return a <= b
    raise EvaluationError(f"Unknown operator: {op!r}", code=CellError.NAME)


def operator_function(op: str) -> Callable[[Any, Any], Any]:
    """Two-argument callable for an operator token."""
    if op in ARITHMETIC_OPERATORS:
        return lambda left, right: binary_op(left, op, right)
    if op in RELATIONAL_OPERATORS:
        return lambda left, right: compare(left, right, op)
    raise EvaluationError(f"Unknown operator: {op!r}", code=CellError.NAME)


# ---------------------------------------------------------------------------
# Builtin implementations. Each takes the list of raw argument values.
# ---------------------------------------------------------------------------


def _coerce_numeric(values: list[Any]) -> list[int | float]:
    """Flatten range tuples and keep numbers; booleans count as 1/0, text is skipped."""
    result: list[int | float] = []
    for v in values:
        if isinstance(v, tuple):
            result.extend(_coerce_numeric(list(v)))
        elif isinstance(v, bool):
            result.append(int(v))
        elif _is_number(v):
            result.append(v)
    return result


def _flatten(values: list[Any]) -> list[Any]:
    result: list[Any] = []
    for v in values:
        if isinstance(v, tuple):
            result.extend(v)
        else:
            result.append(v)
    return result


def _arity(name: str, args: list[Any], low: int, high: int | None = None) -> None:
    high = low if high is None else high
    if not low <= len(args) <= high:
        if low == high:
            expected = f"exactly {low}"
        else:
            expected = f"{low} to {high}"
        raise EvaluationError(f"{name} requires {expected} argument(s), got {len(args)}")


def _number_arg(name: str, value: Any) -> int | float:
    if isinstance(value, bool) or not _is_number(value):
        raise EvaluationError(f"{name}: non-numeric argument {value!r}")
    return value


def _builtin_sum(args: list[Any]) -> int | float:
    return sum(_coerce_numeric(args))


def _builtin_product(args: list[Any]) -> int | float:
    return math.prod(_coerce_numeric(args))


def _builtin_abs(args: list[Any]) -> int | float:
    _arity("ABS", args, 1)
    return abs(_number_arg("ABS", args[0]))


def _builtin_round(args: list[Any]) -> int | float:
    _arity("ROUND", args, 1, 2)
    value = _number_arg("ROUND", args[0])
    digits = int(_number_arg("ROUND", args[1])) if len(args) > 1 else 0
    if digits <= 0:
        return int(round(value, digits))
    return round(value, digits)


def _builtin_floor(args: list[Any]) -> int:
    _arity("FLOOR", args, 1)
    return math.floor(_number_arg("FLOOR", args[0]))


def _builtin_ceil(args: list[Any]) -> int:
    _arity("CEIL", args, 1)
    return math.ceil(_number_arg("CEIL", args[0]))


def _builtin_sqrt(args: list[Any]) -> float:
    _arity("SQRT", args, 1)
    value = _number_arg("SQRT", args[0])
    if value < 0:
        return math.nan
    return math.sqrt(value)


def _builtin_power(args: list[Any]) -> int | float:
    _arity("POWER", args, 2)
    base = _number_arg("POWER", args[0])
    exponent = _number_arg("POWER", args[1])
    if base == 0 and exponent < 0:
        return math.inf
    if base < 0 and not float(exponent).is_integer():
        return math.nan
    return base ** exponent


def _builtin_mod(args: list[Any]) -> int | float:
    _arity("MOD", args, 2)
    a = _number_arg("MOD", args[0])
    b = _number_arg("MOD", args[1])
    if b == 0:
        return math.nan
    # Result has the sign of the divisor.
    return a - b * math.floor(a / b)


def _builtin_min(args: list[Any]) -> int | float:
    nums = _coerce_numeric(args)
    if not nums:
        raise EvaluationError("MIN: no numeric values")
    return min(nums)


def _builtin_max(args: list[Any]) -> int | float:
    nums = _coerce_numeric(args)
    if not nums:
        raise EvaluationError("MAX: no numeric values")
    return max(nums)


def _builtin_average(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    if not nums:
        raise EvaluationError("AVERAGE: no numeric values")
    return sum(nums) / len(nums)


def _builtin_count(args: list[Any]) -> int:
    """COUNT - counts numeric values only."""
    return sum(1 for v in _flatten(args) if _is_number(v) and not isinstance(v, bool))


def _builtin_and(args: list[Any]) -> bool:
    if not args:
        raise EvaluationError("AND requires at least 1 argument")
    return all(bool(v) for v in _flatten(args))


def _builtin_or(args: list[Any]) -> bool:
    if not args:
        raise EvaluationError("OR requires at least 1 argument")
    return any(bool(v) for v in _flatten(args))


def _builtin_not(args: list[Any]) -> bool:
    _arity("NOT", args, 1)
    return not bool(args[0])


def _builtin_concat(args: list[Any]) -> str:
    return "".join(_coerce_string(v) for v in _flatten(args))


def _builtin_len(args: list[Any]) -> int:
    _arity("LEN", args, 1)
    if isinstance(args[0], tuple):
        return len(args[0])
    return len(_coerce_string(args[0]))


def _builtin_upper(args: list[Any]) -> str:
    _arity("UPPER", args, 1)
    return _coerce_string(args[0]).upper()


def _builtin_lower(args: list[Any]) -> str:
    _arity("LOWER", args, 1)
    return _coerce_string(args[0]).lower()


_BUILTINS: dict[str, Callable[[list[Any]], Any]] = {
    "SUM": _builtin_sum,
    "PRODUCT": _builtin_product,
    "ABS": _builtin_abs,
    "ROUND": _builtin_round,
    "FLOOR": _builtin_floor,
    "CEIL": _builtin_ceil,
    "SQRT": _builtin_sqrt,
    "POW": _builtin_power,
    "POWER": _builtin_power,
    "MOD": _builtin_mod,
    "MIN": _builtin_min,
    "MAX": _builtin_max,
    "AVG": _builtin_average,
    "AVERAGE": _builtin_average,
    "COUNT": _builtin_count,
    "AND": _builtin_and,
    "OR": _builtin_or,
    "NOT": _builtin_not,
    "CONCAT": _builtin_concat,
    "LEN": _builtin_len,
    "UPPER": _builtin_upper,
    "LOWER": _builtin_lower,
}

# Names of the builtin functions, upper-cased.
BUILTIN_FUNCTIONS: frozenset[str] = frozenset(_BUILTINS)


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts with builtins and can be extended with custom functions. A function
    takes the list of raw argument values for one possible world.
    """

    def __init__(self) -> None:
        self._functions: dict[str, Callable[[list[Any]], Any]] = dict(_BUILTINS)

    def register(self, name: str, func: Callable[[list[Any]], Any]) -> None:
        self._functions[name.upper()] = func

    def get(self, name: str) -> Callable[[list[Any]], Any] | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    def resolve(self, name: str) -> Callable[..., Any]:
        """Callable taking one raw value per argument, for an operator or named function.

        Raises :class:`EvaluationError` (``#NAME?``) for unknown names.
        """
        if name in ARITHMETIC_OPERATORS or name in RELATIONAL_OPERATORS:
            return operator_function(name)
        func = self.get(name)
        if func is None:
            raise EvaluationError(f"Unknown function: {name}", code=CellError.NAME)
        return lambda *raws: func(list(raws))

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
