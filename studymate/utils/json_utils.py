"""
JSON utilities for returning models from tool calls.
"""

import dataclasses
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def to_jsonable(value: Any) -> Any:
    """Convert models and store values into JSON-safe structures.

    Decimals always become strings, so every amount keeps its exact
    precision and one representation. Sets become sorted lists and
    datetimes ISO-8601 strings.

    Args:
        value: Dataclass, container or scalar

    Returns:
        Structure made of dicts, lists, strings, numbers, booleans and None
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(to_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
