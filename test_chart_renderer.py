import pytest

from engine.chart_renderer import ChartRenderer, chart_points
from engine.report_schema import GraphConfig


CONFIG = GraphConfig(xColumnIndex=1, yColumnIndex=0, xLabel="t (s)", yLabel="d (m)", title="")


def test_chart_points_follow_row_order():
    rows = [[10.0, 1.0], [20.0, 2.0], [5.0, 3.0]]
    assert chart_points(CONFIG, rows) == [(1.0, 10.0), (2.0, 20.0), (3.0, 5.0)]


def test_no_config_no_points():
    assert chart_points(None, [[1.0, 2.0]]) == []
    renderer = ChartRenderer(None, ["a", "b"])
    assert renderer.series is None
    assert renderer.sync([[1.0, 2.0]]) is None


def test_label_falls_back_to_y_header():
    renderer = ChartRenderer(CONFIG, ["Distance", "Time"])
    assert renderer.series.label == "Distance"


def test_sync_updates_the_same_series_in_place():
    renderer = ChartRenderer(CONFIG, ["Distance", "Time"])
    series = renderer.series
    points = series.points
    renderer.sync([[1.0, 0.0]])
    assert renderer.sync([[1.0, 0.0], [3.0, 1.0]]) is series
    assert series.points is points
    assert points == [(0.0, 1.0), (1.0, 3.0)]


def test_linear_fit():
    renderer = ChartRenderer(CONFIG, ["Distance", "Time"])
    renderer.sync([[1.0, 0.0], [3.0, 1.0], [5.0, 2.0]])
    slope, intercept = renderer.series.linear_fit()
    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)


def test_linear_fit_needs_two_distinct_x():
    renderer = ChartRenderer(CONFIG, ["Distance", "Time"])
    renderer.sync([[1.0, 0.0], [3.0, 0.0]])
    assert renderer.series.linear_fit() is None


def test_to_dict_shape():
    renderer = ChartRenderer(CONFIG, ["Distance", "Time"])
    renderer.sync([[1.0, 0.0]])
    assert renderer.series.to_dict() == {
        "label": "Distance", "title": "", "xLabel": "t (s)", "yLabel": "d (m)",
        "points": [{"x": 0.0, "y": 1.0}],
    }
