"""Shared fixtures: a small, valid pendulum report."""

import copy
import json

import pytest

from engine.report_schema import validate_payload


PENDULUM_PAYLOAD = {
    "title": "Simple Pendulum",
    "objectives": ["Determine g using a simple pendulum"],
    "apparatus": ["Pendulum bob", "String", "Stopwatch"],
    "theory": "T = 2*pi*sqrt(L/g) for small oscillations.",
    "procedure": ["Set the length L", "Time 20 oscillations", "Repeat for other lengths"],
    "tableHeaders": ["Length (m)", "T^2 (s^2)"],
    "tableData": [[0.2, 0.81], [0.4, 1.62], [0.6, 2.43]],
    "graphConfig": {
        "xColumnIndex": 0,
        "yColumnIndex": 1,
        "xLabel": "L (m)",
        "yLabel": "T^2 (s^2)",
        "title": "T^2 against L",
    },
    "questions": [{"question": "Why use small angles?", "answer": "So that sin(theta) is close to theta."}],
    "calculationScript": (
        "const n = rows.length;"
        "const sx = rows.reduce((a, r) => a + r[0], 0);"
        "const sy = rows.reduce((a, r) => a + r[1], 0);"
        "const sxy = rows.reduce((a, r) => a + r[0] * r[1], 0);"
        "const sxx = rows.reduce((a, r) => a + r[0] * r[0], 0);"
        "const slope = (n * sxy - sx * sy) / (n * sxx - sx * sx);"
        "return { slope: slope, g: 4 * Math.PI ** 2 / slope };"
    ),
    "analysisTemplate": "Slope = {{slope}}\ng = {{g}} m/s^2",
    "discussion": "Air resistance was neglected.",
    "conclusion": "g was found close to 9.8 m/s^2.",
    "simulationType": "pendulum",
}


@pytest.fixture
def payload():
    return copy.deepcopy(PENDULUM_PAYLOAD)


@pytest.fixture
def report_text(payload):
    return json.dumps(payload)


@pytest.fixture
def report_model(payload):
    return validate_payload(payload)
