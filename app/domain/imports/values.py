"""
Typed cell values produced by the transformer.

Downstream stages only ever see one of these five shapes, so the resolver,
deriver and executor never have to guess what a raw cell contained.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Union


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class NumberValue:
    value: Union[int, float]


@dataclass(frozen=True)
class DateValue:
    value: datetime


@dataclass(frozen=True)
class EnumValue:
    value: str


@dataclass(frozen=True)
class BoolValue:
    value: bool


FieldValue = Union[StringValue, NumberValue, DateValue, EnumValue, BoolValue]


@dataclass
class TransformedRecord:
    """Typed values for one source row, keyed by registry field key."""
    row_number: int
    values: Dict[str, FieldValue] = field(default_factory=dict)

    def get(self, key: str):
        """Return the plain value stored under ``key`` or None."""
        wrapped = self.values.get(key)
        return wrapped.value if wrapped is not None else None


@dataclass
class ResolvedRecord:
    """Plain column values ready for insert, tenant already injected."""
    row_number: int
    values: Dict[str, object] = field(default_factory=dict)
