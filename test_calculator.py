import math

import pytest

from engine.calc_script import (
    CalculationScript, ScriptBudgetExceeded, ScriptSyntaxError, number_to_string, parse_script, to_fixed_string,
)
from engine.calculator import Calculator
from engine.errors import CalculationError


ROWS = [[1.0, 2.0], [2.0, 4.0], [3.0, 6.0]]


def run(source, rows=ROWS, **kwargs):
    return CalculationScript(source).run(rows, **kwargs)


def test_simple_slope():
    assert run("return { slope: rows[1][1] / rows[1][0] };") == {"slope": 2.0}


def test_loops_and_functions():
    source = """
    function mean(values) {
      let total = 0;
      for (const v of values) { total += v; }
      return total / values.length;
    }
    const xs = rows.map(r => r[0]);
    let count = 0;
    for (let i = 0; i < rows.length; i++) {
      if (rows[i][1] > 3) count++;
    }
    return { meanX: mean(xs), count, label: `n=${rows.length}` };
    """
    assert run(source) == {"meanX": 2.0, "count": 2.0, "label": "n=3"}


def test_spread_in_calls_and_objects():
    source = """
    const ys = rows.map(function (r) { return r[1]; });
    const base = { unit: 'm' };
    return { ...base, max: Math.max(...ys), min: Math.min(...ys) };
    """
    assert run(source) == {"unit": "m", "max": 6.0, "min": 2.0}


def test_builtins():
    source = """
    const ys = rows.map(r => r[1]);
    return {
      max: Math.max(ys[0], ys[1], ys[2]),
      total: ys.reduce((a, b) => a + b, 0),
      root: Math.sqrt(16),
      fixed: (Math.PI).toFixed(2),
      parsed: parseFloat("2.5kg"),
      positive: ys.every(y => y > 0),
      joined: ys.join("|"),
    };
    """
    assert run(source) == {
        "max": 6.0, "total": 12.0, "root": 4.0, "fixed": "3.14",
        "parsed": 2.5, "positive": True, "joined": "2|4|6",
    }


def test_javascript_arithmetic():
    result = run("return { a: 1 / 0, b: 0 / 0, c: 7 % 3, d: 2 ** 10, e: '3' * '4', f: 1 + '1' };")
    assert result["a"] == math.inf
    assert math.isnan(result["b"])
    assert result["c"] == 1.0
    assert result["d"] == 1024.0
    assert result["e"] == 12.0
    assert result["f"] == "11"


def test_to_fixed_rounds_ties_away_from_zero():
    result = run("""
    return {
      a: (2.5).toFixed(0), b: (-2.5).toFixed(0), c: (0.03125).toFixed(4),
      d: (1.005).toFixed(2), e: (0).toFixed(2), f: (1e21).toFixed(2),
    };
    """)
    # 1.005 is stored just below the tie, so it rounds down
    assert result == {"a": "3", "b": "-3", "c": "0.0313", "d": "1.00", "e": "0.00", "f": "1e+21"}


def test_to_fixed_string_matches_number_formatting():
    assert to_fixed_string(0.5, 0) == "1"
    assert to_fixed_string(123.456, 1) == "123.5"
    assert to_fixed_string(-0.0, 3) == "0.000"
    assert to_fixed_string(float("nan"), 2) == "NaN"


def test_let_loop_closures_capture_each_iteration():
    source = """
    const fs = [];
    for (let i = 0; i < 3; i++) { fs.push(() => i); }
    const gs = [];
    for (var k = 0; k < 3; k++) { gs.push(() => k); }
    return { a: fs[0](), b: fs[2](), c: gs[0]() };
    """
    assert run(source) == {"a": 0.0, "b": 2.0, "c": 3.0}


def test_loop_counter_updates_still_visible_to_test():
    source = """
    let n = 0;
    for (let i = 0; i < 5; i++) { if (i === 1) { i = 3; } n++; }
    return { n };
    """
    assert run(source) == {"n": 3.0}


def test_non_scalar_results_are_stringified():
    assert run("return { list: [1, 2.5, 3], obj: {a: 1} };") == {"list": "1,2.5,3", "obj": "[object Object]"}


def test_script_gets_a_copy_of_rows():
    rows = [[1.0, 2.0]]
    run("rows[0][0] = 99; rows.push([0, 0]); return {};", rows=rows)
    assert rows == [[1.0, 2.0]]


def test_non_object_return_is_an_error():
    with pytest.raises(CalculationError):
        run("return 42;")
    with pytest.raises(CalculationError):
        run("const x = 1;")


def test_runtime_errors_are_calculation_errors():
    with pytest.raises(CalculationError):
        run("return { v: rows[10][0] };")
    with pytest.raises(CalculationError):
        run("return { v: notDefined + 1 };")
    with pytest.raises(CalculationError):
        run("throw new Error('boom');")


def test_infinite_loop_hits_budget():
    with pytest.raises(ScriptBudgetExceeded):
        run("while (true) {} return {};", max_steps=5000)


def test_unbounded_recursion_hits_budget():
    with pytest.raises(CalculationError):
        run("function f(n) { return f(n + 1); } return { v: f(0) };")


def test_prototype_properties_read_as_undefined():
    assert run("return { a: rows.constructor, b: rows.__proto__ };") == {
        "a": "undefined", "b": "undefined",
    }


def test_host_escape_routes_are_closed():
    for source in (
        "return { v: __import__('os') };",
        "return { v: rows.constructor('x') };",
        "return { v: eval('1') };",
    ):
        with pytest.raises(CalculationError):
            run(source)


def test_syntax_error():
    with pytest.raises(ScriptSyntaxError):
        parse_script("return { a: ;")


@pytest.mark.parametrize("value, text", [
    (2.0, "2"), (0.1 + 0.2, "0.30000000000000004"), (1e21, "1e+21"), (1.5e-7, "1.5e-7"), (-0.0, "0"),
    (float("nan"), "NaN"), (float("-inf"), "-Infinity"),
])
def test_number_to_string(value, text):
    assert number_to_string(value) == text


def test_calculator_evaluates():
    calculator = Calculator("return { slope: rows[1][1] / rows[1][0] };")
    assert calculator.compiled
    assert calculator.evaluate(ROWS) == {"slope": 2.0}


def test_calculator_keeps_compile_error():
    calculator = Calculator("return {")
    assert not calculator.compiled
    with pytest.raises(CalculationError):
        calculator.evaluate(ROWS)
    with pytest.raises(CalculationError):
        calculator.evaluate(ROWS)


def test_calculator_budget():
    calculator = Calculator("while(true){}", max_steps=1000)
    with pytest.raises(CalculationError):
        calculator.evaluate(ROWS)
