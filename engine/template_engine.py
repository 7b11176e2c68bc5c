"""
Placeholder Template Engine

Fills `{{name}}` placeholders in a report's analysisTemplate from the
calculator's results. Unknown names stay in the text as written.
"""

import html
import math
import re
from typing import Any, Callable, Mapping, Optional, Sequence

from engine.calc_script import to_fixed_string
from engine.calculator import Calculator
from engine.errors import CalculationError


PLACEHOLDER_PATTERN = re.compile(r"\{\{(.*?)\}\}")
STATIC_PLACEHOLDER = "[calculated]"
ANALYSIS_FALLBACK = "Error calculating analysis data. Check table inputs."


def format_value(value: Any) -> str:
    """Stringify a result value: numbers with 4 decimals, everything else verbatim."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return to_fixed_string(float(value), 4)
    return str(value)


def _substitute(template: str, results: Mapping[str, Any], wrap: Callable[[str], str]) -> str:
    def replace(match):
        name = match.group(1)
        if name in results:
            return wrap(format_value(results[name]))
        return match.group(0)
    return PLACEHOLDER_PATTERN.sub(replace, template)


def render_analysis(template: str, results: Mapping[str, Any]) -> str:
    """Plain-text rendering; newlines are kept as they are."""
    return _substitute(template, results, lambda text: text)


def render_analysis_html(template: str, results: Mapping[str, Any]) -> str:
    """
    HTML rendering for the interactive view.

    The template text is escaped first; substituted values are escaped and
    highlighted; newlines become <br>.
    """
    escaped = html.escape(template, quote=False)
    rendered = _substitute(
        escaped,
        results,
        lambda text: f'<span class="calc-value">{html.escape(text)}</span>'
    )
    return rendered.replace("\n", "<br>")


def render_static_analysis(template: str) -> str:
    """Static export: every placeholder becomes [calculated]."""
    return PLACEHOLDER_PATTERN.sub(STATIC_PLACEHOLDER, template)


class AnalysisView:
    """
    The rendered analysis section of one open report.

    `refresh` swaps in either the complete new rendering or the fallback
    message; readers never see a partial update.
    """

    def __init__(self, template: str, calculator: Calculator):
        self.template = template
        self.calculator = calculator
        self.text = ""
        self.html = ""
        self.results: Optional[dict] = None
        self.error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def refresh(self, rows: Sequence[Sequence[float]]) -> bool:
        """Recompute from `rows`. Returns False when the fallback is shown."""
        try:
            results = self.calculator.evaluate(rows)
            text = render_analysis(self.template, results)
            markup = render_analysis_html(self.template, results)
        except CalculationError as e:
            self.text, self.html, self.results, self.error = (
                ANALYSIS_FALLBACK,
                f'<span class="calc-error">{ANALYSIS_FALLBACK}</span>',
                None,
                str(e),
            )
            return False
        self.text, self.html, self.results, self.error = text, markup, results, None
        return True
