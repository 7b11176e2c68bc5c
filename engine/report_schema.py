"""
Report Schema Validator

Parses the JSON payload produced by the LabReportAgent and validates it
against the lab report shape before anything is rendered. Pure functions
only: no I/O, no logging.
"""

import json
import math
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator

from engine.errors import MalformedPayload, SchemaViolation


SIMULATION_TYPES = ("pendulum", "heating", "spring", "circuit", "wave", "general")
DEFAULT_SIMULATION_TYPE = "general"


def _finite_number(value: Any) -> float:
    # JSON booleans decode to bool, which Python treats as int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError("expected a finite number")
    return float(value)


FiniteNumber = Annotated[float, BeforeValidator(_finite_number)]


class GraphConfig(BaseModel):
    """Which two table columns to plot, and how to label the chart."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    x_column_index: StrictInt = Field(..., alias="xColumnIndex", ge=0)
    y_column_index: StrictInt = Field(..., alias="yColumnIndex", ge=0)
    x_label: StrictStr = Field(default="", alias="xLabel")
    y_label: StrictStr = Field(default="", alias="yLabel")
    title: StrictStr = Field(default="", alias="title")


class Question(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question: StrictStr
    answer: StrictStr


class ReportModel(BaseModel):
    """Validated lab report. Field aliases are the camelCase payload keys."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: StrictStr
    objectives: List[StrictStr]
    apparatus: List[StrictStr]
    theory: StrictStr
    procedure: List[StrictStr]
    table_headers: List[StrictStr] = Field(..., alias="tableHeaders")
    table_data: List[List[FiniteNumber]] = Field(..., alias="tableData")
    graph_config: Optional[GraphConfig] = Field(default=None, alias="graphConfig")
    questions: List[Question] = Field(default_factory=list)
    calculation_script: StrictStr = Field(..., alias="calculationScript")
    analysis_template: StrictStr = Field(..., alias="analysisTemplate")
    discussion: StrictStr
    conclusion: StrictStr
    simulation_type: str = Field(default=DEFAULT_SIMULATION_TYPE, alias="simulationType")

    @field_validator("questions", mode="before")
    @classmethod
    def _null_questions(cls, value):
        return [] if value is None else value

    @field_validator("simulation_type", mode="before")
    @classmethod
    def _known_simulation_type(cls, value):
        if isinstance(value, str) and value.strip().lower() in SIMULATION_TYPES:
            return value.strip().lower()
        return DEFAULT_SIMULATION_TYPE

    @property
    def column_count(self) -> int:
        return len(self.table_headers)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize back to the camelCase payload shape."""
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_payload())


def _field_path(loc) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "<root>"


def _check_table_shape(model: ReportModel) -> None:
    width = model.column_count
    for index, row in enumerate(model.table_data):
        if len(row) != width:
            raise SchemaViolation(
                f"tableData[{index}]",
                f"row has {len(row)} values but tableHeaders defines {width} columns"
            )
    config = model.graph_config
    if config is not None:
        for alias, column in (("xColumnIndex", config.x_column_index), ("yColumnIndex", config.y_column_index)):
            if column >= width:
                raise SchemaViolation(
                    f"graphConfig.{alias}",
                    f"column index {column} is out of range for {width} columns"
                )


def validate_payload(data: Any) -> ReportModel:
    """
    Validate an already-decoded payload.

    Raises:
        SchemaViolation: naming the first missing or mistyped field
    """
    if not isinstance(data, dict):
        raise SchemaViolation("<root>", f"expected a JSON object, got {type(data).__name__}")

    try:
        model = ReportModel.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        raise SchemaViolation(_field_path(first.get("loc", ())), first.get("msg", "invalid value")) from None

    _check_table_shape(model)
    return model


def validate_report(text: str) -> ReportModel:
    """
    Parse and validate raw report text.

    Args:
        text: JSON text as returned by the generation request or stored in a Report

    Returns:
        The validated ReportModel

    Raises:
        MalformedPayload: the text is not valid JSON
        SchemaViolation: the JSON does not have the report shape
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"Report payload is not valid JSON: {e}") from None
    return validate_payload(data)
