import pytest

from engine.calculator import Calculator
from engine.template_engine import (
    ANALYSIS_FALLBACK, AnalysisView, format_value, render_analysis, render_analysis_html, render_static_analysis,
)


@pytest.mark.parametrize("value, text", [
    (2.0, "2.0000"), (9.80666, "9.8067"), (3, "3.0000"), (True, "true"), (False, "false"),
    (0.03125, "0.0313"), (-0.03125, "-0.0313"), (-0.00001, "-0.0000"),
    ("n/a", "n/a"), (float("nan"), "NaN"), (float("inf"), "Infinity"), (float("-inf"), "-Infinity"),
])
def test_format_value(value, text):
    assert format_value(value) == text


def test_render_substitutes_known_names():
    assert render_analysis("slope={{slope}}", {"slope": 2.0}) == "slope=2.0000"


def test_unknown_placeholders_stay_verbatim():
    assert render_analysis("{{g}} and {{missing}}", {"g": 9.8}) == "9.8000 and {{missing}}"


def test_placeholder_names_are_not_trimmed():
    assert render_analysis("{{ g }}", {"g": 9.8}) == "{{ g }}"


def test_repeated_placeholders_all_replaced():
    assert render_analysis("{{a}}-{{a}}", {"a": 1}) == "1.0000-1.0000"


def test_newlines_preserved_in_text():
    assert render_analysis("a={{a}}\nb", {"a": 1.5}) == "a=1.5000\nb"


def test_html_rendering_escapes_and_highlights():
    markup = render_analysis_html("x < y: {{v}}\n{{s}}", {"v": 1, "s": "<b>"})
    assert markup == (
        'x &lt; y: <span class="calc-value">1.0000</span><br>'
        '<span class="calc-value">&lt;b&gt;</span>'
    )


def test_static_rendering():
    assert render_static_analysis("g = {{g}}, other {{x}}") == "g = [calculated], other [calculated]"


def test_analysis_view_refresh_and_fallback():
    view = AnalysisView("slope={{slope}}", Calculator("return { slope: rows[0][1] / rows[0][0] };"))
    assert view.refresh([[2.0, 5.0]])
    assert view.ok
    assert view.text == "slope=2.5000"
    assert view.results == {"slope": 2.5}

    broken = AnalysisView("slope={{slope}}", Calculator("return { slope: rows[5][0] };"))
    assert not broken.refresh([[2.0, 5.0]])
    assert not broken.ok
    assert broken.text == ANALYSIS_FALLBACK
    assert ANALYSIS_FALLBACK in broken.html
    assert broken.results is None


def test_analysis_view_recovers_after_failure():
    view = AnalysisView("v={{v}}", Calculator("if (rows.length > 1) throw 'too many'; return { v: rows[0][0] };"))
    assert not view.refresh([[1.0], [2.0]])
    assert view.refresh([[4.0]])
    assert view.text == "v=4.0000"
    assert view.error is None


def test_rendering_is_idempotent():
    template = "Slope = {{slope}}\ng = {{g}} m/s^2 ({{note}})"
    results = {"slope": 4.05, "g": 9.7478, "note": "<small angles>"}
    text = render_analysis(template, results)
    assert render_analysis(template, results) == text
    assert render_analysis(text, results) == text
    markup = render_analysis_html(template, results)
    assert render_analysis_html(template, results) == markup

    view = AnalysisView(template, Calculator("return { slope: rows[0][1], g: 9.7478, note: '<small angles>' };"))
    view.refresh([[1.0, 4.05]])
    first = (view.text, view.html, view.results)
    view.refresh([[1.0, 4.05]])
    assert (view.text, view.html, view.results) == first
    assert view.text == text
