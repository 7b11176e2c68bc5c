import asyncio
import math

import pytest

from engine.errors import UnknownSimulationParam
from engine.simulation_engine import (
    CANVAS_HEIGHT, CANVAS_WIDTH, SIMULATION_PARAMS, AnimationClock, SimulationEngine, params_for,
)


def test_every_type_has_controls():
    for simulation_type, controls in SIMULATION_PARAMS.items():
        assert controls, simulation_type
        for control in controls:
            assert control.min <= control.initial <= control.max


def test_unknown_type_uses_general():
    engine = SimulationEngine("rocket")
    assert engine.simulation_type == "general"
    assert params_for("rocket") == SIMULATION_PARAMS["general"]
    assert engine.last_frame.readouts["modeled"] is False


def test_initial_frame_is_drawn_paused():
    engine = SimulationEngine("pendulum")
    frame = engine.last_frame
    assert not frame.active
    assert (frame.width, frame.height) == (CANVAS_WIDTH, CANVAS_HEIGHT)
    assert frame.readouts["bobX"] == pytest.approx(400.0)
    assert frame.readouts["bobY"] == pytest.approx(200.0)
    assert frame.readouts["modeled"] is True


def test_pendulum_numerics():
    engine = SimulationEngine("pendulum")
    engine.toggle()
    for _ in range(10):
        engine.tick()
    readouts = engine.last_frame.readouts
    speed = math.sqrt(9.8) / math.sqrt(200) * 2
    angle = math.sin(10 * 0.05 * speed) * 0.5
    assert readouts["speedFactor"] == pytest.approx(speed)
    assert readouts["angle"] == pytest.approx(angle)
    assert readouts["bobX"] == pytest.approx(400 + math.sin(angle) * 200)


def test_tick_only_moves_while_running():
    engine = SimulationEngine("wave")
    assert engine.tick() is None
    assert engine.frame_counter == 0
    assert engine.toggle() is True
    engine.tick()
    engine.tick()
    assert engine.frame_counter == 2
    assert engine.toggle() is False
    assert engine.tick() is None
    assert engine.frame_counter == 2


def test_running_and_pausing_leaves_params_alone():
    for simulation_type in SIMULATION_PARAMS:
        engine = SimulationEngine(simulation_type)
        before = dict(engine.current_params)
        for _ in range(3):
            engine.toggle()
            for _ in range(25):
                engine.tick()
            engine.toggle()
            assert engine.tick() is None
        assert engine.current_params == before, simulation_type
        assert engine.frame_counter == 75


def test_pendulum_swings_out_then_back():
    engine = SimulationEngine("pendulum")
    engine.toggle()
    speed = engine.last_frame.readouts["speedFactor"]
    quarter = int((math.pi / 2) / (0.05 * speed))
    angles = [engine.tick().readouts["angle"] for _ in range(2 * quarter)]
    rising = angles[:quarter]
    falling = angles[quarter + 1:]
    assert all(a < b for a, b in zip(rising, rising[1:]))
    assert all(a > b for a, b in zip(falling, falling[1:]))
    assert max(angles) <= 0.5


def test_set_param_clamps_and_redraws():
    engine = SimulationEngine("pendulum")
    seen = []
    engine.add_listener(seen.append)
    assert engine.set_param("length", 1000) == 280
    assert engine.set_param("gravity", -5) == 1
    assert len(seen) == 2
    assert seen[-1].readouts["bobY"] == pytest.approx(280.0)


def test_set_param_rejects_unknown_and_non_numbers():
    engine = SimulationEngine("spring")
    with pytest.raises(UnknownSimulationParam):
        engine.set_param("length", 10)
    with pytest.raises(ValueError):
        engine.set_param("mass", "heavy")
    with pytest.raises(ValueError):
        engine.set_param("mass", True)
    with pytest.raises(ValueError):
        engine.set_param("mass", float("nan"))
    assert engine.current_params["mass"] == 50


def test_zero_param_is_honoured():
    engine = SimulationEngine("heating")
    engine.set_param("heat", 0)
    engine.toggle()
    engine.tick()
    frame = engine.last_frame
    assert frame.readouts["flameHeight"] == 0.0
    assert not frame.shapes_of("polygon")
    assert frame.readouts["temperature"] == pytest.approx(25.0)


def test_heating_temperature_is_latched():
    engine = SimulationEngine("heating")
    engine.toggle()
    for _ in range(100):
        engine.tick()
    assert engine.last_frame.readouts["temperature"] == pytest.approx(35.0)
    engine.set_param("heat", 0)
    assert engine.last_frame.readouts["temperature"] == pytest.approx(35.0)
    engine.set_param("heat", 100)
    engine.tick()
    assert engine.last_frame.readouts["temperature"] == pytest.approx(25 + 101 * 0.1 * 2)


def test_heating_temperature_caps_at_boiling():
    engine = SimulationEngine("heating")
    engine.set_param("heat", 100)
    engine.toggle()
    for _ in range(600):
        engine.tick()
    assert engine.last_frame.readouts["temperature"] == 100.0


def test_spring_rest_position():
    engine = SimulationEngine("spring")
    readouts = engine.last_frame.readouts
    assert readouts["extension"] == pytest.approx(98.0)
    assert readouts["blockY"] == pytest.approx(246.0)
    assert readouts["blockSize"] == pytest.approx(30.0)


def test_circuit_marker_hidden_without_flow():
    engine = SimulationEngine("circuit")
    engine.toggle()
    engine.tick()
    assert engine.last_frame.readouts["current"] == pytest.approx(0.12)
    assert engine.last_frame.readouts["marker"] is not None

    engine.set_param("voltage", 0)
    engine.tick()
    assert engine.last_frame.readouts["current"] == 0.0
    assert engine.last_frame.readouts["marker"] is None
    assert not engine.last_frame.shapes_of("circle")


def test_circuit_marker_path():
    model = SimulationEngine("circuit").model
    assert model.marker_position(0) == (250, 100)
    assert model.marker_position(350) == (550, 150)
    assert model.marker_position(500) == (500, 250)
    assert model.marker_position(800) == (250, 200)


def test_wave_stays_within_amplitude():
    engine = SimulationEngine("wave")
    engine.set_param("amplitude", 80)
    readouts = engine.last_frame.readouts
    assert readouts["samples"] == 160
    assert readouts["minY"] >= 150 - 80 - 1e-9
    assert readouts["maxY"] <= 150 + 80 + 1e-9


def test_state_is_json_friendly():
    state = SimulationEngine("circuit").state()
    assert state["type"] == "circuit"
    assert state["params"] == {"voltage": 12, "resistance": 100}
    assert [c["id"] for c in state["controls"]] == ["voltage", "resistance"]


def test_animation_clock_ticks_only_while_running():
    loop = asyncio.new_event_loop()
    try:
        engine = SimulationEngine("pendulum")
        clock = AnimationClock(engine, loop=loop, interval=0.001)
        clock.start()
        assert not clock.scheduled

        engine.toggle()
        clock.start()
        loop.run_until_complete(asyncio.sleep(0.05))
        assert engine.frame_counter > 0

        engine.toggle()
        clock.stop()
        counter = engine.frame_counter
        loop.run_until_complete(asyncio.sleep(0.02))
        assert engine.frame_counter == counter
        assert not clock.scheduled

        engine.toggle()
        clock.start()
        clock.close()
        assert clock.closed
        assert not clock.scheduled
        clock.start()
        assert not clock.scheduled
    finally:
        loop.close()
