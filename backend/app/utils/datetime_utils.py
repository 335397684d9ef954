import re
import warnings
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from core.models import DateGrouping
from core.utils import is_null

ISO_DAY_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
HAS_DIGIT = re.compile(r"\d")


def parse_date(value: Any) -> Optional[pd.Timestamp]:
    """Lenient date parsing: ISO strings, common date formats and date objects."""
    if is_null(value):
        return None
    if isinstance(value, pd.Timestamp):
        ts = value
    elif isinstance(value, (datetime, date)):
        ts = pd.Timestamp(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                ts = pd.to_datetime(text, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    else:
        return None

    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(None)
    return ts


def looks_like_date(value: Any) -> bool:
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return True
    if isinstance(value, str) and ISO_DAY_PREFIX.match(value):
        return True
    # A bare month or weekday name is text.
    if isinstance(value, str) and not HAS_DIGIT.search(value):
        return False
    return parse_date(value) is not None


def bucket_date(value: Any, grouping: Optional[DateGrouping]) -> Any:
    """Map a date cell to its period key; returns None for unparseable dates.

    ``day`` and no grouping leave non-dates untouched.
    """
    if grouping is None:
        return value
    grouping = DateGrouping(grouping)
    ts = parse_date(value)

    if grouping == DateGrouping.day:
        return ts.strftime("%Y-%m-%d") if ts is not None else value
    if ts is None:
        return None
    if grouping == DateGrouping.week:
        iso = ts.isocalendar()
        return f"{iso[0]:04d}-W{iso[1]:02d}"
    if grouping == DateGrouping.month:
        return f"{ts.year:04d}-{ts.month:02d}"
    if grouping == DateGrouping.quarter:
        return f"{ts.year:04d}-Q{(ts.month - 1) // 3 + 1}"
    return f"{ts.year:04d}"
