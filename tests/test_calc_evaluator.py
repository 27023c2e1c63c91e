"""Tests for ambsheet.calc evaluator."""

from __future__ import annotations

import logging
import math

import pytest

from ambsheet._sheet import Sheet
from ambsheet.calc._ast import AmbRange, AmbRepeat
from ambsheet.calc._evaluator import (
    SheetEvaluator,
    deambify,
    evaluate_sheet,
    expand_amb_parts,
    normal_samples,
)
from ambsheet.calc._functions import FunctionRegistry
from ambsheet.calc._values import (
    EMPTY_CONTEXT,
    NOT_READY,
    CellError,
    Context,
    EvaluationError,
    Position,
    Value,
)

A1 = Position(0, 0)
B1 = Position(0, 1)
C1 = Position(0, 2)
D1 = Position(0, 3)


def raws(result: tuple[Value, ...]) -> list[object]:
    return [v.raw_value for v in result]


def ctxs(result: tuple[Value, ...]) -> list[dict[str, int]]:
    return [v.context.to_dict() for v in result]


class TestAmbBuildingBlocks:
    def test_expand_singles_and_repeats(self) -> None:
        parts = [AmbRepeat(1, 1), AmbRepeat("a", 3)]
        assert list(expand_amb_parts(parts)) == [1, "a", "a", "a"]

    def test_expand_range_inclusive(self) -> None:
        assert list(expand_amb_parts([AmbRange(2, 5, 1)])) == [2, 3, 4, 5]

    def test_expand_range_descending(self) -> None:
        assert list(expand_amb_parts([AmbRange(5, 2, -1)])) == [5, 4, 3, 2]

    def test_expand_fractional_step(self) -> None:
        assert list(expand_amb_parts([AmbRange(0, 1, 0.1)])) == pytest.approx(
            [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
        )

    def test_expand_step_not_reaching_end(self) -> None:
        assert list(expand_amb_parts([AmbRange(1, 6, 2)])) == [1, 3, 5]

    def test_expand_single_point_range(self) -> None:
        assert list(expand_amb_parts([AmbRange(3, 3, 1)])) == [3]

    @pytest.mark.parametrize("part", [AmbRange(1, 5, 0), AmbRange(1, 5, -1), AmbRange(5, 1, 1)])
    def test_bad_steps(self, part: AmbRange) -> None:
        with pytest.raises(EvaluationError) as info:
            list(expand_amb_parts([part]))
        assert info.value.code == CellError.AMB

    def test_normal_samples_symmetric(self) -> None:
        samples = normal_samples(0.0, 1.0, 3)
        assert samples[1] == pytest.approx(0.0, abs=1e-12)
        assert samples[0] == pytest.approx(-samples[2])
        assert samples[0] < samples[1] < samples[2]

    def test_normal_samples_quantiles(self) -> None:
        samples = normal_samples(10.0, 2.0, 4)
        assert len(samples) == 4
        assert sum(samples) / 4 == pytest.approx(10.0)
        assert samples == sorted(samples)

    def test_normal_zero_stdev(self) -> None:
        assert normal_samples(5.0, 0.0, 3) == [5.0, 5.0, 5.0]

    def test_normal_bad_arguments(self) -> None:
        with pytest.raises(EvaluationError):
            normal_samples(0.0, 1.0, 0)
        with pytest.raises(EvaluationError):
            normal_samples(0.0, -1.0, 3)

    def test_deambify_policy(self) -> None:
        values = (Value(5, Context({A1: 0})), Value(6, Context({A1: 1})))
        assert deambify(values) == Value(5, EMPTY_CONTEXT)

    def test_deambify_empty(self) -> None:
        with pytest.raises(EvaluationError):
            deambify(())


class TestAmbCells:
    def test_singles(self) -> None:
        result = evaluate_sheet([["{1,2,3}"]])[0][0]
        assert raws(result) == [1, 2, 3]
        assert ctxs(result) == [{"A1": 0}, {"A1": 1}, {"A1": 2}]

    def test_ascending_range(self) -> None:
        result = evaluate_sheet([["{2 to 5}"]])[0][0]
        assert raws(result) == [2, 3, 4, 5]
        assert ctxs(result) == [{"A1": i} for i in range(4)]

    def test_descending_range(self) -> None:
        assert raws(evaluate_sheet([["{5 to 2}"]])[0][0]) == [5, 4, 3, 2]

    def test_repeat_keeps_separate_branches(self) -> None:
        result = evaluate_sheet([["{3 x 4}"]])[0][0]
        assert raws(result) == [3, 3, 3, 3]
        assert ctxs(result) == [{"A1": i} for i in range(4)]

    def test_mixed_parts_index_across_parts(self) -> None:
        result = evaluate_sheet([['={0 to 2, "x" x 2}']])[0][0]
        assert raws(result) == [0, 1, 2, "x", "x"]
        assert ctxs(result)[-1] == {"A1": 4}

    def test_site_is_the_cell(self) -> None:
        result = evaluate_sheet([[None], [None, "{7, 8}"]])[1][1]
        assert result[1].context == {Position(1, 1): 1}

    def test_literal_cell(self) -> None:
        assert evaluate_sheet([["hello", 4, "2.5"]])[0] == [
            (Value("hello"),),
            (Value(4),),
            (Value(2.5),),
        ]

    def test_malformed_formula_is_text(self) -> None:
        assert evaluate_sheet([["=1+"]])[0][0] == (Value("=1+"),)

    def test_empty_cell_is_none(self) -> None:
        assert evaluate_sheet([[None, "", "5"]])[0][:2] == [None, None]


class TestCrossCellEvaluation:
    def test_reference_carries_context(self) -> None:
        result = evaluate_sheet([["={1,2}", "=A1+10"]])[0][1]
        assert result == (
            Value(11, Context({A1: 0})),
            Value(12, Context({A1: 1})),
        )

    def test_same_site_twice_is_not_cross_product(self) -> None:
        result = evaluate_sheet([["={1,2}", "=A1+A1"]])[0][1]
        assert raws(result) == [2, 4]
        assert ctxs(result) == [{"A1": 0}, {"A1": 1}]

    def test_contradiction_pruning(self) -> None:
        result = evaluate_sheet([["={1,2}", "={10,20}", "=A1+B1+A1"]])[0][2]
        assert raws(result) == [12, 22, 14, 24]
        assert ctxs(result) == [
            {"A1": 0, "B1": 0},
            {"A1": 0, "B1": 1},
            {"A1": 1, "B1": 0},
            {"A1": 1, "B1": 1},
        ]

    def test_independent_sites_cross(self) -> None:
        result = evaluate_sheet([["={1,2,3}", "={1,2}", "=A1*B1"]])[0][2]
        assert len(result) == 6

    def test_shared_upstream_through_two_paths(self) -> None:
        grid = [["={1,2}", "=A1*10", "=A1*100", "=B1+C1"]]
        assert raws(evaluate_sheet(grid)[0][3]) == [110, 220]

    def test_relative_reference(self) -> None:
        grid = [[1, None], [None, "=A1"]]
        assert evaluate_sheet(grid)[1][1] == (Value(1),)

    def test_formula_text_copied_down_keeps_offset(self) -> None:
        grid = [
            [1, "=A1*2"],
            [2, "=A2*2"],
        ]
        results = evaluate_sheet(grid)
        assert raws(results[0][1]) == [2]
        assert raws(results[1][1]) == [4]

    def test_absolute_reference(self) -> None:
        grid = [[5, None], [None, "=$A$1+1"]]
        assert raws(evaluate_sheet(grid)[1][1]) == [6]

    def test_arithmetic_precedence(self) -> None:
        assert raws(evaluate_sheet([["=2+3*4-(1+1)/2"]])[0][0]) == [13.0]

    def test_unary_minus(self) -> None:
        assert raws(evaluate_sheet([["={1,2}", "=-A1"]])[0][1]) == [-1, -2]

    def test_comparison(self) -> None:
        assert raws(evaluate_sheet([["={1,2,3}", "=A1>=2"]])[0][1]) == [False, True, True]

    def test_string_concat(self) -> None:
        assert raws(evaluate_sheet([["={1,2}", '="n" + A1']])[0][1]) == ["n1", "n2"]

    def test_division_by_zero_is_per_world(self) -> None:
        result = evaluate_sheet([["={0,2}", "=1/A1"]])[0][1]
        assert result[0].raw_value == math.inf
        assert result[1].raw_value == 0.5


class TestDeterminism:
    GRID = [
        ["={1 to 3}", "={10, 20}", "=A1*B1"],
        ["=normal(100, 15, 5)", "=sum(A1:B1)", "=if(C1 > 30, A2, 0)"],
    ]

    def test_evaluation_is_repeatable(self) -> None:
        assert evaluate_sheet(self.GRID) == evaluate_sheet(self.GRID)

    def test_calculate_twice_is_stable(self) -> None:
        ev = SheetEvaluator()
        ev.load(self.GRID)
        first = ev.calculate()
        assert ev.calculate() == first


class TestIf:
    def test_selective_branches(self) -> None:
        result = evaluate_sheet([["={1,2}", "={10,20}", "=if(A1>1, B1, 0)"]])[0][2]
        assert raws(result) == [0, 10, 20]
        assert ctxs(result) == [{"A1": 0}, {"A1": 1, "B1": 0}, {"A1": 1, "B1": 1}]

    def test_condition_prunes_branch_contexts(self) -> None:
        result = evaluate_sheet([["={1,2}", "=if(A1=1, A1, A1*100)"]])[0][1]
        assert raws(result) == [1, 200]

    def test_truthiness_of_numbers(self) -> None:
        assert raws(evaluate_sheet([["={0,3}", '=if(A1, "yes", "no")']])[0][1]) == ["no", "yes"]

    def test_guard_keeps_valid_worlds(self) -> None:
        result = evaluate_sheet([["={4,-1}", "=if(A1>0, sqrt(A1), 0)"]])[0][1]
        assert raws(result) == [2.0, 0]
        assert ctxs(result) == [{"A1": 0}, {"A1": 1}]


class TestRanges:
    def test_sum_over_range(self) -> None:
        grid = [["={1,2}"], [10], ["=sum(A1:A2)"]]
        result = evaluate_sheet(grid)[2][0]
        assert raws(result) == [11, 12]
        assert ctxs(result) == [{"A1": 0}, {"A1": 1}]

    def test_range_skips_empty_cells(self) -> None:
        grid = [[1, None, 3, "=count(A1:C1)"]]
        assert raws(evaluate_sheet(grid)[0][3]) == [2]

    def test_range_corners_any_order(self) -> None:
        grid = [[1, 2, "=sum(B1:A1)"]]
        assert raws(evaluate_sheet(grid)[0][2]) == [3]

    def test_max_over_ambiguous_range(self) -> None:
        grid = [["={1,5}", "={3,4}", "=max(A1:B1)"]]
        assert raws(evaluate_sheet(grid)[0][2]) == [3, 4, 5, 5]


class TestNames:
    def test_named_cell(self) -> None:
        ev = SheetEvaluator()
        ev.load([["price = {10, 12}", "=price * 2"]])
        results = ev.calculate()
        assert raws(results[0][0]) == [10, 12]
        assert raws(results[0][1]) == [20, 24]
        assert ev.names == {"price": A1}

    def test_named_formula(self) -> None:
        grid = [[3, "double = A1 * 2", "=double + 1"]]
        assert raws(evaluate_sheet(grid)[0][2]) == [7]

    def test_names_are_case_sensitive(self) -> None:
        assert evaluate_sheet([["rate = 2", "=Rate"]])[0][1] is NOT_READY

    def test_first_definition_wins(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="ambsheet.calc._evaluator"):
            results = evaluate_sheet([["v = 1", "v = 2", "=v"]])
        assert raws(results[0][2]) == [1]
        assert "defined in both" in caplog.text

    def test_named_range(self) -> None:
        grid = [["lo = 1", 2, "hi = 3", "=sum(lo:hi)"]]
        assert raws(evaluate_sheet(grid)[0][3]) == [6]


class TestAmbifyAndDeambify:
    def test_ambify_reads_raw_contents(self) -> None:
        grid = [[1, "hello", "={1,2}", "=ambify(A1:C1)"]]
        result = evaluate_sheet(grid)[0][3]
        assert raws(result) == [1, "hello", "={1,2}"]
        assert ctxs(result) == [{"D1": 0}, {"D1": 1}, {"D1": 2}]

    def test_ambify_row_major_skipping_empty(self) -> None:
        grid = [
            ["1", None],
            ["2.5", "true"],
            ["=ambify(A1:B2)"],
        ]
        assert raws(evaluate_sheet(grid)[2][0]) == [1, 2.5, True]

    def test_ambify_of_empty_range(self) -> None:
        result = evaluate_sheet([[None, "=ambify(A1:A1)"]])[0][1]
        assert isinstance(result, CellError)
        assert result.code == CellError.AMB

    def test_deambify_drops_context(self) -> None:
        grid = [["={5,6}", "=deambify(A1)", "=B1 + A1"]]
        results = evaluate_sheet(grid)
        assert results[0][1] == (Value(5),)
        assert raws(results[0][2]) == [10, 11]
        assert ctxs(results[0][2]) == [{"A1": 0}, {"A1": 1}]

    def test_deambify_of_empty(self) -> None:
        assert evaluate_sheet([[None, "=deambify(A1)"]])[0][1] is NOT_READY


class TestNormal:
    def test_normal_cell(self) -> None:
        result = evaluate_sheet([["=normal(10, 2, 5)"]])[0][0]
        assert len(result) == 5
        assert raws(result)[2] == pytest.approx(10.0)
        assert ctxs(result) == [{"A1": i} for i in range(5)]

    def test_normal_zero_stdev_cell(self) -> None:
        assert raws(evaluate_sheet([["=normal(4, 0, 2)"]])[0][0]) == [4.0, 4.0]

    def test_normal_repeatable(self) -> None:
        grid = [["=normal(0, 1, 25)"]]
        assert evaluate_sheet(grid) == evaluate_sheet(grid)


class TestNotReady:
    def test_cycle(self) -> None:
        results = evaluate_sheet([["=B1", "=A1"]])
        assert results[0] == [NOT_READY, NOT_READY]

    def test_self_reference(self) -> None:
        assert evaluate_sheet([["=A1+1"]])[0][0] is NOT_READY

    def test_downstream_of_cycle(self) -> None:
        results = evaluate_sheet([["=B1", "=A1", "=A1+1", "=5"]])
        assert results[0][2] is NOT_READY
        assert results[0][3] == (Value(5),)

    def test_reference_to_empty_cell(self) -> None:
        assert evaluate_sheet([["=B1", None]])[0][0] is NOT_READY

    def test_reference_outside_grid(self) -> None:
        assert evaluate_sheet([["=Z99"]])[0][0] is NOT_READY

    def test_unknown_name(self) -> None:
        assert evaluate_sheet([["=missing + 1"]])[0][0] is NOT_READY

    def test_not_ready_beats_error(self) -> None:
        grid = [["=nope()", "=C1", None, "=A1+B1"]]
        assert evaluate_sheet(grid)[0][3] is NOT_READY

    def test_becomes_ready_when_filled(self) -> None:
        ev = SheetEvaluator()
        ev.load([["=B1*2", None]])
        assert ev.calculate()[0][0] is NOT_READY
        ev.recalculate({"B1": 4})
        assert raws(ev.value_at("A1")) == [8]


class TestCellErrors:
    def test_unknown_function(self) -> None:
        result = evaluate_sheet([["=nope(1)"]])[0][0]
        assert isinstance(result, CellError)
        assert result.code == CellError.NAME

    def test_error_propagates_through_reference(self) -> None:
        results = evaluate_sheet([["=nope(1)", "=A1+1"]])
        assert results[0][1] == results[0][0]

    def test_error_is_local(self) -> None:
        results = evaluate_sheet([["=nope(1)", "={1,2}"]])
        assert raws(results[0][1]) == [1, 2]

    def test_non_numeric_arithmetic(self) -> None:
        result = evaluate_sheet([['="a" * 2']])[0][0]
        assert result.code == CellError.VALUE

    def test_bad_amb_step(self) -> None:
        assert evaluate_sheet([["{1 to 5 by -1}"]])[0][0].code == CellError.AMB
        assert evaluate_sheet([["{1 to 5 by 0}"]])[0][0].code == CellError.AMB

    def test_empty_amb(self) -> None:
        assert evaluate_sheet([["{}"]])[0][0].code == CellError.AMB

    def test_function_domain_is_per_world(self) -> None:
        result = evaluate_sheet([["={4,-1}", "=sqrt(A1)"]])[0][1]
        assert result[0].raw_value == 2.0
        assert math.isnan(result[1].raw_value)

    def test_value_limit(self) -> None:
        result = evaluate_sheet([["{1 to 100}"]], max_values=10)[0][0]
        assert result.code == CellError.LIMIT

    def test_value_limit_on_cross_join(self) -> None:
        grid = [["{1 to 5}", "{1 to 5}", "=A1*B1"]]
        results = evaluate_sheet(grid, max_values=10)
        assert len(results[0][0]) == 5
        assert results[0][2].code == CellError.LIMIT


class TestLongFormulas:
    def test_long_sum(self) -> None:
        terms = [f"A{i % 9 + 1}" for i in range(500)]
        grid = [[1], ["={0,1}"]] + [[1]] * 7 + [["=" + "+".join(terms)]]
        result = evaluate_sheet(grid)[9][0]
        repeats = terms.count("A2")
        assert raws(result) == [500 - repeats, 500]
        assert ctxs(result) == [{"A2": 0}, {"A2": 1}]

    def test_operator_runs_fold_left(self) -> None:
        assert raws(evaluate_sheet([["=10-2-3+1"]])[0][0]) == [6]
        assert raws(evaluate_sheet([["=64/4/2*3"]])[0][0]) == [24.0]

    def test_long_chain_keeps_pruning(self) -> None:
        formula = "=" + "+".join(["A1", "B1"] * 200)
        result = evaluate_sheet([["={1,2}", "={10,20}", formula]])[0][2]
        assert raws(result) == [2200, 4200, 2400, 4400]

    def test_deep_parentheses_become_text(self) -> None:
        text = "=" + "(" * 200 + "1" + ")" * 200
        results = evaluate_sheet([[text, "={1,2}", "=B1+1"]])
        assert results[0][0] == (Value(text),)
        assert raws(results[0][2]) == [2, 3]

    def test_runaway_recursion_is_local(self) -> None:
        def runaway(args: list[object]) -> object:
            return runaway(args)

        registry = FunctionRegistry()
        registry.register("runaway", runaway)
        results = evaluate_sheet([["=runaway(1)", "={1,2}"]], functions=registry)
        assert results[0][0].code == CellError.LIMIT
        assert raws(results[0][1]) == [1, 2]


class TestSheetEvaluator:
    def test_calculate_before_load(self) -> None:
        with pytest.raises(RuntimeError):
            SheetEvaluator().calculate()

    def test_ragged_rows_are_padded(self) -> None:
        results = evaluate_sheet([[1], [1, 2, 3]])
        assert results[0] == [(Value(1),), None, None]

    def test_loads_sheet_object(self) -> None:
        sheet = Sheet()
        sheet["A1"] = "={1,2}"
        sheet["B1"] = "=A1*3"
        assert raws(evaluate_sheet(sheet)[0][1]) == [3, 6]

    def test_value_at(self) -> None:
        ev = SheetEvaluator()
        ev.load([["={1,2}", "=A1+10"]])
        ev.calculate()
        assert raws(ev.value_at("B1")) == [11, 12]
        assert ev.value_at(Position(5, 5)) is None

    def test_custom_function(self) -> None:
        registry = FunctionRegistry()
        registry.register("twice", lambda args: args[0] * 2)
        results = evaluate_sheet([["={1,2}", "=twice(A1)"]], functions=registry)
        assert raws(results[0][1]) == [2, 4]

    def test_graph_exposed(self) -> None:
        ev = SheetEvaluator()
        ev.load([["={1,2}", "=A1+10"]])
        assert ev.graph.dependencies[B1] == {A1}


class TestRecalculate:
    def test_edit_reports_deltas(self) -> None:
        ev = SheetEvaluator()
        ev.load([["={1,2}", "=A1+10", 7]])
        ev.calculate()
        recalc = ev.recalculate({"A1": "={5,6}"})
        changed = [d.position for d in recalc.deltas]
        assert changed == [A1, B1]
        assert recalc.changed_cells == 2
        assert recalc.affected_cells == 1
        assert recalc.total_formula_cells == 2
        assert raws(recalc.deltas[1].new_result) == [15, 16]
        assert recalc.deltas[1].formula == "=A1+10"

    def test_edit_grows_grid(self) -> None:
        ev = SheetEvaluator()
        ev.load([[1]])
        ev.calculate()
        ev.recalculate({Position(2, 3): "=A1+1"})
        results = ev.results
        assert len(results) == 3
        assert len(results[0]) == 4
        assert raws(results[2][3]) == [2]

    def test_clearing_a_cell(self) -> None:
        ev = SheetEvaluator()
        ev.load([[1, "=A1+1"]])
        ev.calculate()
        recalc = ev.recalculate({"A1": None})
        assert ev.value_at("B1") is NOT_READY
        assert recalc.deltas[0].new_result is None

    def test_change_ratio(self) -> None:
        ev = SheetEvaluator()
        ev.load([[1, "=A1+1", "=5"]])
        ev.calculate()
        recalc = ev.recalculate({"A1": 2})
        assert recalc.change_ratio == pytest.approx(0.5)

    def test_recalculate_before_load(self) -> None:
        with pytest.raises(RuntimeError):
            SheetEvaluator().recalculate({"A1": 1})
