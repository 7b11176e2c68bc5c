"""
Simulation Engine

Parameterised physics animations for the "Virtual Apparatus" panel of a
report. Each simulationType has a fixed set of controls and a model that
draws one frame from (frame counter, current params, active). Frames are
plain data: a list of shape primitives on an 800 x 300 canvas plus numeric
readouts, so the same frame can be rendered by the browser runtime or
inspected in tests.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from engine.errors import UnknownSimulationParam
from engine.report_schema import DEFAULT_SIMULATION_TYPE


CANVAS_WIDTH = 800
CANVAS_HEIGHT = 300
BACKGROUND = "#1e293b"
FRAME_INTERVAL = 1 / 60

# Below this marker speed the circuit is drawn without moving charge
CIRCUIT_FLOW_THRESHOLD = 0.1


@dataclass(frozen=True)
class SimulationParam:
    id: str
    label: str
    min: float
    max: float
    initial: float
    unit: str
    step: float = 1.0

    def clamp(self, value: float) -> float:
        return min(self.max, max(self.min, value))


SIMULATION_PARAMS: Dict[str, List[SimulationParam]] = {
    "pendulum": [
        SimulationParam("length", "Length (L)", 50, 280, 200, "cm"),
        SimulationParam("gravity", "Gravity (g)", 1, 20, 9.8, "m/s²", step=0.1),
    ],
    "heating": [
        SimulationParam("heat", "Heat Intensity", 0, 100, 50, "%"),
        SimulationParam("ambient", "Ambient Temp", 0, 40, 25, "°C"),
    ],
    "spring": [
        SimulationParam("mass", "Mass Load", 10, 100, 50, "g"),
        SimulationParam("k", "Spring Constant", 1, 10, 5, "N/m"),
    ],
    "circuit": [
        SimulationParam("voltage", "Voltage (V)", 0, 24, 12, "V"),
        SimulationParam("resistance", "Resistance (R)", 10, 500, 100, "Ω"),
    ],
    "wave": [
        SimulationParam("frequency", "Frequency", 1, 20, 5, "Hz"),
        SimulationParam("amplitude", "Amplitude", 10, 100, 50, "px"),
    ],
    "general": [
        SimulationParam("speed", "Sim Speed", 0, 5, 1, "x", step=0.1),
    ],
}


def params_for(simulation_type: str) -> List[SimulationParam]:
    return SIMULATION_PARAMS.get(simulation_type, SIMULATION_PARAMS[DEFAULT_SIMULATION_TYPE])


def _fmt(value: float) -> str:
    return f"{value:g}"


@dataclass
class Frame:
    """One drawn frame: background, shapes in paint order, and readouts."""

    frame: int
    active: bool
    shapes: List[dict] = field(default_factory=list)
    readouts: Dict[str, object] = field(default_factory=dict)
    width: int = CANVAS_WIDTH
    height: int = CANVAS_HEIGHT
    background: str = BACKGROUND

    def line(self, x1, y1, x2, y2, color, width=2):
        self.shapes.append({"kind": "line", "x1": x1, "y1": y1, "x2": x2, "y2": y2, "color": color, "width": width})

    def circle(self, x, y, r, color):
        self.shapes.append({"kind": "circle", "x": x, "y": y, "r": r, "color": color})

    def rect(self, x, y, w, h, fill=None, stroke=None, width=1):
        self.shapes.append({"kind": "rect", "x": x, "y": y, "w": w, "h": h, "fill": fill, "stroke": stroke, "width": width})

    def polyline(self, points, color, width=2):
        self.shapes.append({"kind": "polyline", "points": [[float(x), float(y)] for x, y in points], "color": color, "width": width})

    def polygon(self, points, color):
        self.shapes.append({"kind": "polygon", "points": [[float(x), float(y)] for x, y in points], "color": color})

    def text(self, x, y, content, color="#fff", font="12px monospace"):
        self.shapes.append({"kind": "text", "x": x, "y": y, "text": content, "color": color, "font": font})

    def shapes_of(self, kind: str) -> List[dict]:
        return [s for s in self.shapes if s["kind"] == kind]

    def to_dict(self) -> dict:
        return asdict(self)


class SimulationModel(ABC):
    """Draws frames for one simulation type."""

    simulation_type = DEFAULT_SIMULATION_TYPE
    modeled = True

    def __init__(self):
        self.defaults = {p.id: p.initial for p in params_for(self.simulation_type)}

    def param(self, params: Dict[str, float], name: str) -> float:
        # 0 is a legal control value, only a missing entry falls back
        value = params.get(name)
        return self.defaults[name] if value is None else value

    def draw(self, frame: int, params: Dict[str, float], active: bool) -> Frame:
        out = Frame(frame=frame, active=active)
        self.render(out, params)
        out.readouts.setdefault("modeled", self.modeled)
        return out

    @abstractmethod
    def render(self, out: Frame, params: Dict[str, float]) -> None:
        ...


class PendulumModel(SimulationModel):
    simulation_type = "pendulum"
    pivot = (400.0, 0.0)

    def render(self, out, params):
        length = self.param(params, "length")
        gravity = self.param(params, "gravity")
        speed_factor = math.sqrt(gravity) / math.sqrt(length) * 2
        angle = math.sin(out.frame * 0.05 * speed_factor) * 0.5
        cx, cy = self.pivot
        x = cx + math.sin(angle) * length
        y = cy + math.cos(angle) * length

        out.line(cx, cy, x, y, "#94a3b8", width=2)
        out.circle(x, y, 15, "#38bdf8")
        out.text(10, 290, f"L: {_fmt(length)}cm, g: {_fmt(gravity)}m/s²")
        out.readouts.update({"angle": angle, "speedFactor": speed_factor, "bobX": x, "bobY": y})


class HeatingModel(SimulationModel):
    """
    Beaker over a burner. The thermometer reading is latched per model
    instance: it never goes down, so turning the heat down mid-run does not
    cool the beaker. A new session starts a new model and a fresh reading.
    """

    simulation_type = "heating"

    def __init__(self):
        super().__init__()
        self.peak_temperature: Optional[float] = None

    def render(self, out, params):
        heat = self.param(params, "heat")
        ambient = self.param(params, "ambient")

        out.rect(350, 150, 100, 120, fill="rgba(255,255,255,0.1)", stroke="#fff")
        out.rect(355, 180, 90, 85, fill="rgba(6, 182, 212, 0.5)")

        bubbles = 0
        if out.active:
            bubbles = math.floor(heat / 10) + 1
            speed = 1 + heat / 20
            for i in range(bubbles):
                bx = 360 + ((out.frame * (i + 1) * 10 + i * 20) % 80)
                by = 260 - ((out.frame * speed + i * 30) % 80)
                out.circle(bx, by, 2 + heat / 30, "rgba(255,255,255,0.6)")

        flame_height = 0.0
        if out.active and heat > 0:
            flame_height = heat / 2
            # Deterministic flicker in place of a random jitter
            flicker = abs(math.sin(out.frame * 12.9898)) * 5
            out.polygon([(380, 300), (400, 300 - flame_height - flicker), (420, 300)], "#f59e0b")

        temperature = min(100.0, ambient + out.frame * 0.1 * (heat / 50))
        if self.peak_temperature is not None:
            temperature = max(temperature, self.peak_temperature)
        self.peak_temperature = temperature

        out.text(10, 290, f"Temp: {temperature:.1f}°C")
        out.readouts.update({"temperature": temperature, "bubbles": bubbles, "flameHeight": flame_height})


class SpringModel(SimulationModel):
    simulation_type = "spring"
    coils = 10

    def render(self, out, params):
        mass = self.param(params, "mass")
        k = self.param(params, "k")
        extension = (mass * 9.8) / k
        y_base = 50 + extension * 2
        omega = math.sqrt(k / (mass / 100))
        oscillation = math.sin(out.frame * 0.05 * omega) * 20
        y = y_base + (oscillation if out.active else 0.0)

        spacing = y / self.coils
        points = [(400, 0)] + [(400 + (10 if i % 2 == 0 else -10), i * spacing) for i in range(self.coils + 1)]
        out.polyline(points, "#cbd5e1", width=4)

        size = 20 + mass / 5
        out.rect(400 - size / 2, y, size, size, fill="#f472b6")
        out.text(10, 290, f"Ext: {extension:.1f}mm")
        out.readouts.update({"extension": extension, "omega": omega, "blockY": y, "blockSize": size})


class CircuitModel(SimulationModel):
    simulation_type = "circuit"
    path_length = 900

    def marker_position(self, pos: float):
        if pos < 300:
            return 250 + pos, 100
        if pos < 450:
            return 550, 100 + (pos - 300)
        if pos < 750:
            return 550 - (pos - 450), 250
        return 250, 250 - (pos - 750)

    def render(self, out, params):
        voltage = self.param(params, "voltage")
        resistance = self.param(params, "resistance")
        current = voltage / resistance
        speed = current * 20

        out.rect(250, 100, 300, 150, stroke="#facc15", width=4)
        out.rect(230, 160, 10, 30, fill="#ef4444")
        out.rect(260, 150, 10, 50, fill="#22c55e")
        out.rect(540, 160, 20, 30, fill="#94a3b8")

        marker = None
        if out.active and speed > CIRCUIT_FLOW_THRESHOLD:
            marker = self.marker_position((out.frame * speed) % self.path_length)
            out.circle(marker[0], marker[1], 6, "#38bdf8")

        out.text(10, 290, f"I = {current:.3f} A")
        out.readouts.update({"current": current, "markerSpeed": speed, "marker": marker})


class WaveModel(SimulationModel):
    simulation_type = "wave"
    baseline = 150

    def render(self, out, params):
        frequency = self.param(params, "frequency")
        amplitude = self.param(params, "amplitude")
        xs = np.arange(0, CANVAS_WIDTH, 5)
        ys = self.baseline + np.sin(xs * 0.01 * frequency + out.frame * 0.05 * frequency) * amplitude
        out.polyline(zip(xs, ys), "#818cf8", width=3)
        out.readouts.update({"samples": int(xs.size), "minY": float(ys.min()), "maxY": float(ys.max())})


class GeneralModel(SimulationModel):
    """Decorative fallback animation. It does not model any experiment."""

    simulation_type = "general"
    modeled = False

    def render(self, out, params):
        speed = self.param(params, "speed")
        out.text(280, 150, "Standard Laboratory Environment", font="20px Inter")
        for i in range(10):
            x = (out.frame * speed * (i + 1)) % CANVAS_WIDTH
            y = math.sin(out.frame * 0.01 * speed + i) * 100 + 150
            out.circle(x, y, 2 + i % 3, "rgba(255,255,255,0.2)")


MODELS = {
    model.simulation_type: model
    for model in (PendulumModel, HeatingModel, SpringModel, CircuitModel, WaveModel, GeneralModel)
}


class SimulationEngine:
    """
    Paused/Running state machine for one report session.

    Only toggle() changes the state. tick() advances the frame counter and
    redraws while running; set_param() updates one control and redraws once.
    """

    def __init__(self, simulation_type: str = DEFAULT_SIMULATION_TYPE):
        if simulation_type not in MODELS:
            simulation_type = DEFAULT_SIMULATION_TYPE
        self.simulation_type = simulation_type
        self.model = MODELS[simulation_type]()
        self.controls = params_for(simulation_type)
        self.current_params: Dict[str, float] = {p.id: p.initial for p in self.controls}
        self.active = False
        self.frame_counter = 0
        self._listeners: List[Callable[[Frame], None]] = []
        self._last_frame = self.redraw()

    @property
    def last_frame(self) -> Frame:
        return self._last_frame

    def add_listener(self, listener: Callable[[Frame], None]) -> None:
        self._listeners.append(listener)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def redraw(self) -> Frame:
        frame = self.model.draw(self.frame_counter, dict(self.current_params), self.active)
        self._last_frame = frame
        for listener in list(self._listeners):
            listener(frame)
        return frame

    def toggle(self) -> bool:
        self.active = not self.active
        self.redraw()
        return self.active

    def tick(self) -> Optional[Frame]:
        if not self.active:
            return None
        self.frame_counter += 1
        return self.redraw()

    def set_param(self, param_id: str, value: float) -> float:
        """
        Set one control, clamped into its range.

        Raises:
            UnknownSimulationParam: param_id is not a control of this simulation
            ValueError: value is not a number
        """
        control = next((p for p in self.controls if p.id == param_id), None)
        if control is None:
            raise UnknownSimulationParam(param_id)
        if isinstance(value, bool):
            raise ValueError(f"Simulation parameter {param_id} must be a number")
        number = float(value)
        if math.isnan(number):
            raise ValueError(f"Simulation parameter {param_id} must be a number")
        self.current_params[param_id] = control.clamp(number)
        self.redraw()
        return self.current_params[param_id]

    def state(self) -> dict:
        return {
            "type": self.simulation_type,
            "active": self.active,
            "frameCounter": self.frame_counter,
            "params": dict(self.current_params),
            "controls": [asdict(p) for p in self.controls],
        }


class AnimationClock:
    """
    Drives SimulationEngine.tick on an asyncio event loop at about 60 fps.

    The next frame is only scheduled while the engine is running, so a
    paused simulation has no pending callback. close() cancels the pending
    callback and makes the clock inert.
    """

    def __init__(self, engine: SimulationEngine, loop: Optional[asyncio.AbstractEventLoop] = None,
                 interval: float = FRAME_INTERVAL):
        self.engine = engine
        self.loop = loop or asyncio.get_running_loop()
        self.interval = interval
        self.closed = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self.closed or self._handle is not None or not self.engine.active:
            return
        self._handle = self.loop.call_later(self.interval, self._on_frame)

    def _on_frame(self) -> None:
        self._handle = None
        if self.closed or not self.engine.active:
            return
        self.engine.tick()
        self.start()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def close(self) -> None:
        self.stop()
        self.closed = True
