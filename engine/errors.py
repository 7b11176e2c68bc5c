"""
Error taxonomy for the lab report engine.

Every failure the engine reports is a LabReportError so the HTTP layer can
map the whole family to JSON error bodies in one place.
"""

from typing import Optional


class LabReportError(Exception):
    """Base class for all report engine errors"""


class MalformedPayload(LabReportError):
    """The report payload is not parseable JSON"""


class SchemaViolation(LabReportError):
    """The payload parsed but does not have the report shape"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class CalculationError(LabReportError):
    """The report's calculation script failed"""


class InvalidCellInput(LabReportError):
    """A table cell write was not a finite number"""

    def __init__(self, raw_value, row: Optional[int] = None, col: Optional[int] = None):
        self.raw_value = raw_value
        self.row = row
        self.col = col
        super().__init__(f"Invalid numeric input {raw_value!r} for cell ({row}, {col})")


class CellOutOfRange(LabReportError, IndexError):
    """A table cell coordinate does not exist"""


class UnknownSimulationParam(LabReportError, KeyError):
    """A simulation control id that the active simulation type does not define"""

    def __str__(self):
        return f"Unknown simulation parameter: {self.args[0]}"


class SessionClosed(LabReportError):
    """An operation was attempted on a report session that was already closed"""


class GenerationError(LabReportError):
    """The report generation request failed or returned no usable text"""
