"""
Metric execution: turn a stored metric definition into a scalar.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core.errors import CalculationError, ExpressionParseError, UnderspecifiedMetricError
from core.models import Dataset, Metric, ValidationResult
from core.utils import Number
from skills import metric_calculator
from skills.expression import evaluate_expression, parse_expression, referenced_columns

logger = logging.getLogger("uvicorn.error")


def get_supported_operations() -> List[str]:
    return list(metric_calculator.OPERATIONS)


def execute_metric(metric: Any, dataset: Dataset) -> Number:
    """Operation + column goes to the calculator, otherwise the expression evaluator."""
    operation = getattr(metric, "operation", None)
    column = getattr(metric, "column", None)
    expression = getattr(metric, "expression", None)

    if operation and column:
        return metric_calculator.calculate_metric(dataset.rows, dataset.columns, column, operation)
    if expression and expression.strip():
        return evaluate_expression(expression, dataset.rows, dataset.columns)
    raise UnderspecifiedMetricError(
        "Metric must define either an operation and column, or an expression"
    )


def validate_metric(definition: Any, dataset: Optional[Dataset]) -> ValidationResult:
    """Check a metric definition against a dataset without executing it."""
    errors: List[str] = []

    if dataset is None:
        errors.append("Dataset is required")
    if definition is None:
        errors.append("Metric definition is required")
        return ValidationResult(is_valid=False, errors=errors)

    operation = getattr(definition, "operation", None)
    column = getattr(definition, "column", None)
    expression = getattr(definition, "expression", None)
    columns = dataset.columns if dataset is not None else []

    if operation or column:
        if not operation:
            errors.append("Operation type is required")
        else:
            try:
                metric_calculator.normalize_operation(operation)
            except CalculationError as exc:
                errors.append(str(exc))
        if not column:
            errors.append("Column is required")
        elif dataset is not None and column not in columns:
            errors.append(f'Column "{column}" not found in dataset')
    elif expression and expression.strip():
        try:
            node = parse_expression(expression)
        except ExpressionParseError as exc:
            errors.append(str(exc))
        else:
            if dataset is not None:
                for name in sorted(referenced_columns(node)):
                    if name not in columns:
                        errors.append(f'Column "{name}" not found in dataset')
    else:
        errors.append("Metric must define either an operation and column, or an expression")

    return ValidationResult(is_valid=not errors, errors=errors)


def recompute_metrics(dataset: Dataset, metric_store) -> Dict[str, str]:
    """Re-execute every metric of ``dataset``; returns ``{metric_id: error}`` for failures.

    A metric that cannot execute keeps its previously stored value.
    """
    errors: Dict[str, str] = {}
    metrics: List[Metric] = metric_store.get_by_dataset(dataset.id)
    for metric in metrics:
        try:
            value = execute_metric(metric, dataset)
        except CalculationError as exc:
            logger.warning("Metric %s could not be recomputed: %s", metric.id, exc)
            errors[metric.id] = str(exc)
            continue
        metric_store.update_value(metric.id, value)
    logger.info(
        "Recomputed metrics for dataset %s: ok=%d failed=%d",
        dataset.id, len(metrics) - len(errors), len(errors),
    )
    return errors
