"""
Derived-Value Calculator

Runs a report's calculationScript against the current table rows and
returns the named results the analysis template refers to.
"""

import sys
from typing import Any, Dict, Optional, Sequence

from engine.calc_script import MAX_STEPS, CalculationScript
from engine.errors import CalculationError


class Calculator:
    """
    Compiled calculation script for one report session.

    The script is parsed once. A script that does not parse is remembered
    and reported as a CalculationError on every evaluation, so the session
    keeps working with the fallback analysis.
    """

    def __init__(self, source: str, max_steps: int = MAX_STEPS):
        self.source = source
        self.max_steps = max_steps
        self._script: Optional[CalculationScript] = None
        self._compile_error: Optional[CalculationError] = None
        try:
            self._script = CalculationScript(source)
        except CalculationError as e:
            self._compile_error = e
            print(f"[Calculator] Script failed to compile: {e}", file=sys.stderr)

    @property
    def compiled(self) -> bool:
        return self._script is not None

    def evaluate(self, rows: Sequence[Sequence[float]]) -> Dict[str, Any]:
        """
        Evaluate against a copy of `rows`.

        Raises:
            CalculationError: compile failure, runtime failure or budget overrun
        """
        if self._script is None:
            raise CalculationError(str(self._compile_error))
        try:
            return self._script.run(rows, max_steps=self.max_steps)
        except CalculationError as e:
            print(f"[Calculator] Evaluation failed: {e}", file=sys.stderr)
            raise
