from dataclasses import asdict, is_dataclass
from typing import Any
from decimal import Decimal
from datetime import datetime, date
from enum import Enum


def _make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures for the
    ledger's JSON columns and API payloads.
    """
    if is_dataclass(value) and not isinstance(value, type):
        return _make_json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return _make_json_safe(value.model_dump())
    if isinstance(value, dict):
        return {str(key): _make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return _make_json_safe(value.value)
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)
