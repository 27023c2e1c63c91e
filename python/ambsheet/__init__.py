"""AmbSheet: spreadsheet cells that hold sets of possible values.

Usage::

    from ambsheet import Sheet, Selection, evaluate_sheet, filter_sheet

    sheet = Sheet()
    sheet["A1"] = "={1, 2, 3}"
    sheet["B1"] = "=A1 * 10"
    results = evaluate_sheet(sheet)
    # results[0][1] -> (Value(10, {A1: 0}), Value(20, {A1: 1}), Value(30, {A1: 2}))

    # Pin the second branch of A1 and see which values of B1 remain.
    shown = filter_sheet(results, [Selection.at("A1", 1)])
    print([fv.include for fv in shown[0][1]])  # [False, True, False]
"""

from ambsheet._sheet import Sheet, load_sheet
from ambsheet.calc import (
    NOT_READY,
    CellError,
    Context,
    FilteredValue,
    Position,
    Selection,
    SheetEvaluator,
    Value,
    evaluate_sheet,
    filter_sheet,
    is_formula,
    parse_formula,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CellError",
    "Context",
    "FilteredValue",
    "NOT_READY",
    "Position",
    "Selection",
    "Sheet",
    "SheetEvaluator",
    "Value",
    "evaluate_sheet",
    "filter_sheet",
    "is_formula",
    "load_sheet",
    "parse_formula",
]
