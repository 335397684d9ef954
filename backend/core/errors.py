"""
Error kinds shared by the calculator, the chart binder and the stores.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class WorkbenchError(Exception):
    """Root of every error raised by the workbench core."""


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------

class CalculationError(WorkbenchError):
    """Raised by the metric calculator, the expression evaluator and metric execution."""


class EmptyDatasetError(CalculationError):
    pass


class MissingColumnError(CalculationError):
    def __init__(self, column: str, available: Optional[Sequence[str]] = None):
        self.column = column
        self.available = list(available or [])
        listing = ", ".join(self.available) if self.available else "none"
        super().__init__(
            f'Column "{column}" not found in dataset. Available columns: {listing}'
        )


class NoNumericValuesError(CalculationError):
    pass


class UnsupportedOperationError(CalculationError):
    pass


class UnderspecifiedMetricError(CalculationError):
    pass


class ExpressionParseError(CalculationError):
    pass


# ---------------------------------------------------------------------------
# Chart binding
# ---------------------------------------------------------------------------

class BindingErrorReason(str, Enum):
    missing_axis = "missing-axis"
    cross_dataset = "cross-dataset"
    dataset_missing = "dataset-missing"
    metric_missing = "metric-missing"
    chart_type_incompatible = "chart-type-incompatible"
    calculation_failed = "calculation-failed"


class BindingError(WorkbenchError):
    """A chart configuration that cannot be turned into a series bundle."""

    def __init__(self, reason: BindingErrorReason, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"reason": self.reason.value, "detail": self.message}


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class StorageError(WorkbenchError):
    """The backing key-value store rejected a snapshot (quota, serialization, IO)."""


class InvalidEntityError(WorkbenchError, ValueError):
    """An entity failed create/update validation."""
