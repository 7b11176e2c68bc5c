"""
Chart Renderer

Maps the table onto the (x, y) series described by graphConfig. The series
object is created once per session and updated in place on every edit.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from engine.report_schema import GraphConfig


Point = Tuple[float, float]


def chart_points(graph_config: Optional[GraphConfig], rows: Sequence[Sequence[float]]) -> List[Point]:
    """One (x, y) point per row, in row order. Empty when there is no graphConfig."""
    if graph_config is None:
        return []
    x, y = graph_config.x_column_index, graph_config.y_column_index
    return [(float(row[x]), float(row[y])) for row in rows]


class ChartSeries:
    """The single data series shown in a report's chart."""

    def __init__(self, label: str, title: str, x_label: str, y_label: str):
        self.label = label
        self.title = title
        self.x_label = x_label
        self.y_label = y_label
        self.points: List[Point] = []

    def linear_fit(self) -> Optional[Tuple[float, float]]:
        """
        Least-squares straight line through the points.

        Returns:
            (slope, intercept), or None with fewer than two distinct x values
        """
        if len({x for x, _ in self.points}) < 2:
            return None
        xs = np.array([p[0] for p in self.points])
        ys = np.array([p[1] for p in self.points])
        slope, intercept = np.polyfit(xs, ys, 1)
        return float(slope), float(intercept)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "title": self.title,
            "xLabel": self.x_label,
            "yLabel": self.y_label,
            "points": [{"x": x, "y": y} for x, y in self.points],
        }


class ChartRenderer:
    def __init__(self, graph_config: Optional[GraphConfig], headers: Sequence[str]):
        self.graph_config = graph_config
        self.series: Optional[ChartSeries] = None
        if graph_config is not None:
            self.series = ChartSeries(
                label=graph_config.title or headers[graph_config.y_column_index],
                title=graph_config.title,
                x_label=graph_config.x_label,
                y_label=graph_config.y_label,
            )

    def sync(self, rows: Sequence[Sequence[float]]) -> Optional[ChartSeries]:
        """Recompute the points of the existing series. No-op without a chart."""
        if self.series is None:
            return None
        self.series.points[:] = chart_points(self.graph_config, rows)
        return self.series
