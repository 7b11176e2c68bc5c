"""
Tabular Data Store

The user-editable observation table behind the calculator and the chart.
Writes are validated here; a malformed value never reaches the table.
"""

import math
import re
from typing import List, Sequence, Union

from engine.errors import CellOutOfRange, InvalidCellInput


# Plain decimal literal, the same shape an <input type="number"> produces
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def parse_cell_value(raw: Union[str, int, float]) -> float:
    """
    Parse a user supplied cell value into a finite float.

    Raises:
        InvalidCellInput: empty, non-numeric or non-finite input
    """
    if isinstance(raw, bool):
        raise InvalidCellInput(raw)
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str) and NUMBER_PATTERN.match(raw.strip()):
        value = float(raw.strip())
    else:
        raise InvalidCellInput(raw)
    if not math.isfinite(value):
        raise InvalidCellInput(raw)
    return value


class TableStore:
    """Observation table: fixed headers, mutable numeric rows."""

    def __init__(self, headers: Sequence[str], rows: Sequence[Sequence[float]]):
        self._headers = list(headers)
        self._rows: List[List[float]] = []
        for index, row in enumerate(rows):
            if len(row) != len(self._headers):
                raise ValueError(f"Row {index} has {len(row)} values, expected {len(self._headers)}")
            self._rows.append([float(v) for v in row])

    @property
    def headers(self) -> List[str]:
        return list(self._headers)

    @property
    def width(self) -> int:
        return len(self._headers)

    @property
    def rows(self) -> List[List[float]]:
        """A fresh copy of the current rows."""
        return [list(row) for row in self._rows]

    def __len__(self) -> int:
        return len(self._rows)

    def get_cell(self, row: int, col: int) -> float:
        self._check_coordinates(row, col)
        return self._rows[row][col]

    def set_cell(self, row: int, col: int, raw_text: Union[str, int, float]) -> float:
        """
        Overwrite one cell.

        The coordinates are checked first, then the value is parsed; on any
        failure the previous value stays in place.

        Returns:
            The stored float value

        Raises:
            CellOutOfRange: row or col does not exist
            InvalidCellInput: raw_text is not a finite number
        """
        self._check_coordinates(row, col)
        try:
            value = parse_cell_value(raw_text)
        except InvalidCellInput:
            raise InvalidCellInput(raw_text, row, col) from None
        self._rows[row][col] = value
        return value

    def append_row(self) -> int:
        """Append a zero-filled row and return its index."""
        self._rows.append([0.0] * self.width)
        return len(self._rows) - 1

    def _check_coordinates(self, row: int, col: int) -> None:
        if isinstance(row, bool) or isinstance(col, bool) or not isinstance(row, int) or not isinstance(col, int):
            raise CellOutOfRange(f"Cell coordinates must be integers, got ({row!r}, {col!r})")
        if not 0 <= row < len(self._rows):
            raise CellOutOfRange(f"Row {row} does not exist (table has {len(self._rows)} rows)")
        if not 0 <= col < self.width:
            raise CellOutOfRange(f"Column {col} does not exist (table has {self.width} columns)")
