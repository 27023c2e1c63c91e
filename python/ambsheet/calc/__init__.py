"""ambsheet.calc - Parser, evaluator and selection filter for amb sheets."""

from ambsheet.calc._ast import (
    Amb,
    AmbRange,
    AmbRepeat,
    Ambify,
    Call,
    CellRange,
    Const,
    Deambify,
    If,
    Named,
    NamedCellRef,
    Node,
    Normal,
    PositionalCellRef,
)
from ambsheet.calc._evaluator import (
    SheetEvaluator,
    deambify,
    evaluate_sheet,
    expand_amb_parts,
    normal_samples,
)
from ambsheet.calc._filter import Selection, filter_contexts, filter_sheet, is_included
from ambsheet.calc._functions import BUILTIN_FUNCTIONS, FunctionRegistry
from ambsheet.calc._graph import CircularReferenceError, DependencyGraph
from ambsheet.calc._parser import (
    FormulaParser,
    FormulaSyntaxError,
    coerce_literal,
    is_formula,
    parse_formula,
    parse_literal,
    references,
)
from ambsheet.calc._protocol import CalcEngine, CellDelta, RecalcResult
from ambsheet.calc._summary import Summary, ValueGroup, format_raw_value, group_values, summarize
from ambsheet.calc._values import (
    EMPTY_CONTEXT,
    NOT_READY,
    CellError,
    Context,
    EvaluationError,
    FilteredValue,
    Position,
    Value,
    contexts_compatible,
    cross_join,
    join_values,
    merge_contexts,
)

__all__ = [
    "Amb",
    "AmbRange",
    "AmbRepeat",
    "Ambify",
    "BUILTIN_FUNCTIONS",
    "CalcEngine",
    "Call",
    "CellDelta",
    "CellError",
    "CellRange",
    "CircularReferenceError",
    "Const",
    "Context",
    "Deambify",
    "DependencyGraph",
    "EMPTY_CONTEXT",
    "EvaluationError",
    "FilteredValue",
    "FormulaParser",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "If",
    "NOT_READY",
    "Named",
    "NamedCellRef",
    "Node",
    "Normal",
    "Position",
    "PositionalCellRef",
    "RecalcResult",
    "Selection",
    "SheetEvaluator",
    "Summary",
    "Value",
    "ValueGroup",
    "coerce_literal",
    "contexts_compatible",
    "cross_join",
    "deambify",
    "evaluate_sheet",
    "expand_amb_parts",
    "filter_contexts",
    "filter_sheet",
    "format_raw_value",
    "group_values",
    "is_formula",
    "is_included",
    "join_values",
    "merge_contexts",
    "normal_samples",
    "parse_formula",
    "parse_literal",
    "references",
    "summarize",
]
