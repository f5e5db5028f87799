"""Typed parameter binding for stored-procedure calls.

A ``ProcedureCall`` describes one invocation: the procedure name, ordered
input parameters with their declared SQL types and values, and ordered output
parameters. ``render()`` turns it into the single T-SQL batch sent through the
DB-API cursor. ODBC drivers cannot bind OUTPUT parameters directly, so outputs
are declared as local variables and selected back as the last result set.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple

from portfolio_gateway.utils.exceptions import ValidationFailure

DEFAULT_PRECISION = 18
DEFAULT_SCALE = 4

_PROCEDURE_NAME = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*\.)?[A-Za-z_][A-Za-z0-9_]*$")
_PARAMETER_NAME = re.compile(r"^@?[A-Za-z_][A-Za-z0-9_]*$")

_INT_RANGES = {
    "INT": (-(2**31), 2**31 - 1),
    "BIGINT": (-(2**63), 2**63 - 1),
}


class SqlType(Enum):
    """SQL Server types used by the portfolio procedures."""

    INT = "INT"
    BIGINT = "BIGINT"
    DECIMAL = "DECIMAL"
    NVARCHAR = "NVARCHAR"
    CHAR = "CHAR"
    DATE = "DATE"
    DATETIME2 = "DATETIME2"


def _normalize_name(name: str) -> str:
    if not isinstance(name, str) or not _PARAMETER_NAME.match(name):
        raise ValidationFailure(f"Invalid parameter name: {name!r}", field="name")
    return name if name.startswith("@") else f"@{name}"


def quantize_decimal(
    value: Any,
    precision: int = DEFAULT_PRECISION,
    scale: int = DEFAULT_SCALE,
    name: str = "value",
) -> Decimal:
    """Convert ``value`` to a fixed-point decimal of the declared precision.

    Args:
        value: Decimal, int or numeric string. Floats are refused.
        precision: Total number of digits
        scale: Digits after the decimal point
        name: Parameter name used in error messages

    Returns:
        Decimal quantized to ``scale`` digits

    Raises:
        ValidationFailure: If the value is a float, not numeric, or does not
            fit DECIMAL(precision, scale)

    Example:
        >>> quantize_decimal("315.42")
        Decimal('315.4200')
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationFailure(
            f"{name} must be a Decimal, int or string, not {type(value).__name__}",
            field=name,
        )
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationFailure(f"{name} is not a valid decimal: {value!r}", field=name) from e

    if not amount.is_finite():
        raise ValidationFailure(f"{name} must be finite, got {value!r}", field=name)

    try:
        quantized = amount.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationFailure(
            f"{name}={value} exceeds DECIMAL({precision},{scale})", field=name
        ) from e
    integer_digits = len(quantized.as_tuple().digits) - scale
    if integer_digits > precision - scale:
        raise ValidationFailure(
            f"{name}={value} exceeds DECIMAL({precision},{scale})", field=name
        )
    return quantized


@dataclass(frozen=True)
class InputParam:
    """An input parameter bound by value.

    Attributes:
        name: Parameter name, with or without the leading "@"
        sql_type: Declared SQL type
        value: Python value; None binds SQL NULL
        size: Maximum length for character types (None for MAX)
        precision: Total digits for DECIMAL
        scale: Fractional digits for DECIMAL
    """

    name: str
    sql_type: SqlType
    value: Any
    size: Optional[int] = None
    precision: int = DEFAULT_PRECISION
    scale: int = DEFAULT_SCALE

    def bind_value(self) -> Any:
        """Coerce the value to what the driver should receive.

        Raises:
            ValidationFailure: If the value does not match the declared type
        """
        if self.value is None:
            return None

        value = self.value
        if self.sql_type in (SqlType.INT, SqlType.BIGINT):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationFailure(
                    f"{self.name} must be an integer, got {value!r}", field=self.name
                )
            low, high = _INT_RANGES[self.sql_type.value]
            if not low <= value <= high:
                raise ValidationFailure(
                    f"{self.name}={value} out of range for {self.sql_type.value}",
                    field=self.name,
                )
            return value

        if self.sql_type is SqlType.DECIMAL:
            return quantize_decimal(value, self.precision, self.scale, self.name)

        if self.sql_type in (SqlType.NVARCHAR, SqlType.CHAR):
            if not isinstance(value, str):
                raise ValidationFailure(
                    f"{self.name} must be a string, got {value!r}", field=self.name
                )
            if self.size is not None and len(value) > self.size:
                raise ValidationFailure(
                    f"{self.name} longer than {self.size} characters", field=self.name
                )
            return value

        if self.sql_type is SqlType.DATE:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            raise ValidationFailure(f"{self.name} must be a date, got {value!r}", field=self.name)

        if self.sql_type is SqlType.DATETIME2:
            if isinstance(value, datetime):
                return value
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day)
            raise ValidationFailure(
                f"{self.name} must be a datetime, got {value!r}", field=self.name
            )

        raise ValidationFailure(f"Unsupported SQL type {self.sql_type}", field=self.name)


@dataclass(frozen=True)
class OutputParam:
    """An OUTPUT parameter read back after execution.

    The value is exposed under the name without its "@" prefix.
    """

    name: str
    sql_type: SqlType
    size: Optional[int] = None
    precision: int = DEFAULT_PRECISION
    scale: int = DEFAULT_SCALE

    @property
    def column(self) -> str:
        return self.name.lstrip("@")

    def declaration(self) -> str:
        if self.sql_type is SqlType.DECIMAL:
            return f"DECIMAL({self.precision},{self.scale})"
        if self.sql_type in (SqlType.NVARCHAR, SqlType.CHAR):
            length = "MAX" if self.size is None else str(self.size)
            return f"{self.sql_type.value}({length})"
        return self.sql_type.value


@dataclass(frozen=True)
class ProcedureCall:
    """A stored-procedure invocation with typed inputs and outputs.

    Example:
        >>> call = ProcedureCall(
        ...     "dbo.sp_UpdatePortfolioValue",
        ...     inputs=(InputParam("PortfolioID", SqlType.INT, 1),),
        ... )
        >>> call.render()
        ('SET NOCOUNT ON; EXEC dbo.sp_UpdatePortfolioValue @PortfolioID = ?;', (1,))
    """

    name: str
    inputs: Tuple[InputParam, ...] = field(default_factory=tuple)
    outputs: Tuple[OutputParam, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _PROCEDURE_NAME.match(self.name):
            raise ValidationFailure(f"Invalid procedure name: {self.name!r}", field="name")
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))

        seen = set()
        for param in (*self.inputs, *self.outputs):
            key = _normalize_name(param.name).lower()
            if key in seen:
                raise ValidationFailure(f"Duplicate parameter {param.name!r}", field="name")
            seen.add(key)

    @property
    def has_outputs(self) -> bool:
        return bool(self.outputs)

    def bind(self) -> Tuple[Any, ...]:
        """Coerce all input values in declared order."""
        return tuple(param.bind_value() for param in self.inputs)

    def render(self) -> Tuple[str, Tuple[Any, ...]]:
        """Build the T-SQL batch and the positional parameter tuple.

        Raises:
            ValidationFailure: If any input value fails binding
        """
        params = self.bind()

        assignments = [f"{_normalize_name(p.name)} = ?" for p in self.inputs]
        assignments += [
            f"{_normalize_name(p.name)} = {_normalize_name(p.name)} OUTPUT"
            for p in self.outputs
        ]
        exec_stmt = f"EXEC {self.name}"
        if assignments:
            exec_stmt += " " + ", ".join(assignments)

        if not self.outputs:
            return f"SET NOCOUNT ON; {exec_stmt};", params

        declarations = ", ".join(
            f"{_normalize_name(p.name)} {p.declaration()}" for p in self.outputs
        )
        selects = ", ".join(
            f"{_normalize_name(p.name)} AS [{p.column}]" for p in self.outputs
        )
        sql = (
            f"SET NOCOUNT ON; DECLARE {declarations}; "
            f"{exec_stmt}; SELECT {selects};"
        )
        return sql, params
