"""
Report Session

Everything that lives while one report is open: the editable table, the
compiled calculator, the analysis section, the chart series and the
simulation. Table edits run the reactive loop (calculator, analysis,
chart) synchronously before returning.
"""

import asyncio
import math
import threading
from typing import Optional

from engine.calculator import Calculator
from engine.chart_renderer import ChartRenderer
from engine.errors import SessionClosed
from engine.report_schema import ReportModel
from engine.simulation_engine import AnimationClock, Frame, SimulationEngine
from engine.table_store import TableStore
from engine.template_engine import AnalysisView, format_value


class ReportSession:
    def __init__(self, model: ReportModel, experiment_code: str = "",
                 report_id: Optional[str] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.model = model
        self.experiment_code = experiment_code
        self.report_id = report_id
        self.table = TableStore(model.table_headers, model.table_data)
        self.calculator = Calculator(model.calculation_script)
        self.analysis = AnalysisView(model.analysis_template, self.calculator)
        self.chart = ChartRenderer(model.graph_config, model.table_headers)
        self.simulation = SimulationEngine(model.simulation_type)
        # Without an event loop the simulation is stepped explicitly with advance()
        self.clock = AnimationClock(self.simulation, loop=loop) if loop is not None else None
        self.closed = False
        # Requests on one session may arrive on different server threads
        self._lock = threading.Lock()
        self._recompute()

    def _check_open(self):
        if self.closed:
            raise SessionClosed("Report session is closed")

    def _recompute(self):
        rows = self.table.rows
        self.analysis.refresh(rows)
        self.chart.sync(rows)

    # Table

    def set_cell(self, row: int, col: int, raw_text) -> float:
        """Write one cell and recompute. Invalid input leaves everything unchanged."""
        with self._lock:
            self._check_open()
            value = self.table.set_cell(row, col, raw_text)
            self._recompute()
            return value

    def append_row(self) -> int:
        with self._lock:
            self._check_open()
            index = self.table.append_row()
            self._recompute()
            return index

    # Simulation

    def toggle_simulation(self) -> bool:
        with self._lock:
            self._check_open()
            active = self.simulation.toggle()
            if self.clock is not None:
                if active:
                    self.clock.start()
                else:
                    self.clock.stop()
            return active

    def set_param(self, param_id: str, value) -> float:
        with self._lock:
            self._check_open()
            return self.simulation.set_param(param_id, value)

    def advance(self, frames: int = 1) -> Frame:
        """Step the simulation by hand, as the clock would. Paused simulations do not move."""
        with self._lock:
            self._check_open()
            for _ in range(max(0, int(frames))):
                if self.simulation.tick() is None:
                    break
            return self.simulation.last_frame

    def simulation_view(self) -> dict:
        with self._lock:
            self._check_open()
            return {
                "simulation": self.simulation.state(),
                "frame": self.simulation.last_frame.to_dict(),
            }

    # Views

    def snapshot(self) -> dict:
        with self._lock:
            self._check_open()
            series = self.chart.series
            fit = series.linear_fit() if series is not None else None
            return {
                "reportId": self.report_id,
                "experimentCode": self.experiment_code,
                "tableHeaders": self.table.headers,
                "tableData": self.table.rows,
                "analysis": {
                    "text": self.analysis.text,
                    "html": self.analysis.html,
                    "ok": self.analysis.ok,
                    "error": self.analysis.error,
                    "results": _json_safe(self.analysis.results),
                },
                "chart": dict(series.to_dict(), fit=fit) if series is not None else None,
                "simulation": self.simulation.state(),
            }

    def close(self) -> None:
        """Tear down: stop the clock and drop listeners. Safe to call twice."""
        with self._lock:
            if self.closed:
                return
            if self.clock is not None:
                self.clock.close()
            self.simulation.clear_listeners()
            self.closed = True


def _json_safe(results: Optional[dict]) -> Optional[dict]:
    # NaN and Infinity have no JSON spelling
    if results is None:
        return None
    return {
        key: format_value(value) if isinstance(value, float) and not math.isfinite(value) else value
        for key, value in results.items()
    }
