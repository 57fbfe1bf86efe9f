"""
Type coercion and normalization of raw cell values.

The transformer is a pure per-row pass: it reads each mapped cell, coerces it
to the field's declared type and wraps it in one of the typed values from
``app.domain.imports.values``. A cell that cannot be coerced makes the whole
row fail with a readable message; it never raises.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math
import re
import logging

from app.domain.imports.registry import EntityFieldSpec, EntitySchema, EntityType, FieldType, get_entity_schema
from app.domain.imports.values import (
    BoolValue,
    DateValue,
    EnumValue,
    FieldValue,
    NumberValue,
    StringValue,
    TransformedRecord,
)
from app.utils.date import parse_flexible_date

logger = logging.getLogger(__name__)

TRUTHY_TOKENS = {"true", "1", "yes", "y", "on"}

# Legacy vocabularies folded onto the canonical enum domain, per (entity, field).
ENUM_SYNONYMS: Dict[Tuple[EntityType, str], Dict[str, str]] = {
    (EntityType.WORK_ORDERS, "status"): {
        "DONE": "COMPLETED",
        "COMPLETE": "COMPLETED",
        "CLOSED": "COMPLETED",
        "APPROVED": "OPEN",
        "PENDING": "OPEN",
        "REQUESTED": "OPEN",
        "REJECTED": "CANCELED",
        "CANCELLED": "CANCELED",
        "ON_GOING": "IN_PROGRESS",
        "STARTED": "IN_PROGRESS",
        "PAUSED": "ON_HOLD",
    },
    (EntityType.WORK_ORDERS, "priority"): {
        "NONE": "LOW",
        "CRITICAL": "URGENT",
        "NORMAL": "MEDIUM",
    },
    (EntityType.ASSETS, "status"): {
        "ACTIVE": "ONLINE",
        "OPERATIONAL": "ONLINE",
        "DOWN": "OFFLINE",
        "INACTIVE": "OFFLINE",
    },
}

_CURRENCY_PREFIX = re.compile(r'^[$€£¥]\s*')
_CLOCK_DURATION = re.compile(r'^(\d+):(\d{1,2})(?::(\d{1,2}))?$')


class CoercionError(ValueError):
    """Raised by the coercion helpers with a message fit for end users."""


def is_blank(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, float) and math.isnan(raw):
        return True
    return str(raw).strip() == ""


def parse_duration_hours(raw: str) -> float:
    """
    Convert ``H:MM[:SS]`` or a decimal string into fractional hours.

    Examples:
        "1:30:00" -> 1.5
        "0:45"    -> 0.75
        "2.25"    -> 2.25
    """
    text_value = str(raw).strip()
    match = _CLOCK_DURATION.match(text_value)
    if match:
        hours, minutes, seconds = match.groups()
        minutes_value = int(minutes)
        seconds_value = int(seconds or 0)
        if minutes_value >= 60 or seconds_value >= 60:
            raise CoercionError(f'invalid duration "{text_value}"')
        return round(int(hours) + minutes_value / 60 + seconds_value / 3600, 4)
    return float(parse_number(text_value))


def parse_number(raw: Any):
    """Parse a numeric cell, tolerating thousands separators and a currency prefix."""
    if isinstance(raw, bool):
        raise CoercionError(f'must be a number, got "{raw}"')
    if isinstance(raw, (int, float)):
        number = float(raw)
    else:
        text_value = _CURRENCY_PREFIX.sub('', str(raw).strip()).replace(',', '')
        try:
            number = float(text_value)
        except ValueError:
            raise CoercionError(f'must be a number, got "{raw}"') from None
    if math.isnan(number) or math.isinf(number):
        raise CoercionError(f'must be a number, got "{raw}"')
    return int(number) if number.is_integer() else number


def fold_enum_token(raw: Any) -> str:
    return re.sub(r'[\s\-]+', '_', str(raw).strip()).upper()


def normalize_enum(raw: Any, spec: EntityFieldSpec, entity_type: EntityType) -> Tuple[str, bool]:
    """
    Map a raw enum cell onto the field's domain.

    Returns:
        Tuple of (canonical value, matched). ``matched`` is False when the
        field default had to be used.
    """
    token = fold_enum_token(raw)
    if token in spec.enum_values:
        return token, True
    synonym = ENUM_SYNONYMS.get((entity_type, spec.key), {}).get(token)
    if synonym:
        return synonym, True
    return spec.default or spec.enum_values[0], False


def is_known_enum_value(raw: Any, spec: EntityFieldSpec) -> bool:
    return fold_enum_token(raw) in spec.enum_values


def coerce_value(raw: Any, spec: EntityFieldSpec, entity_type: EntityType) -> FieldValue:
    """
    Coerce one non-blank cell to the field's declared type.

    Raises:
        CoercionError: If the cell cannot be represented in that type.
    """
    if spec.value_type == FieldType.NUMBER:
        if spec.clock_duration:
            return NumberValue(parse_duration_hours(raw))
        return NumberValue(parse_number(raw))

    if spec.value_type == FieldType.DATE:
        parsed = parse_flexible_date(raw, log_context=spec.key)
        if parsed is None:
            raise CoercionError(f'must be a valid date, got "{raw}"')
        return DateValue(parsed)

    if spec.value_type == FieldType.BOOLEAN:
        return BoolValue(str(raw).strip().lower() in TRUTHY_TOKENS)

    if spec.value_type == FieldType.ENUM:
        value, matched = normalize_enum(raw, spec, entity_type)
        if not matched:
            logger.debug(f"Unrecognized {spec.key} value '{raw}' replaced with default '{value}'")
        return EnumValue(value)

    return StringValue(str(raw).strip())


def effective_mappings(mappings: Sequence, schema: EntitySchema) -> List[Tuple[str, EntityFieldSpec]]:
    """
    Resolve the mapping list to (source column, field) pairs that will be read.

    - unmapped columns and unknown field keys are dropped
    - when several columns target the same field only the first is used
    - a lookup's target field is dropped when the lookup itself is mapped
    """
    pairs: List[Tuple[str, EntityFieldSpec]] = []
    seen = set()
    for mapping in mappings:
        target = (mapping.target_field or "").strip()
        if not target or target in seen:
            continue
        spec = schema.field(target)
        if spec is None:
            continue
        seen.add(target)
        pairs.append((mapping.source_column, spec))

    lookup_targets = {spec.lookup.target_field for _, spec in pairs if spec.lookup is not None}
    return [(column, spec) for column, spec in pairs if spec.key not in lookup_targets]


@dataclass
class TransformResult:
    records: List[TransformedRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed_rows(self) -> int:
        return len(self.errors)


def transform_row(
    row: Dict[str, Any],
    row_number: int,
    pairs: List[Tuple[str, EntityFieldSpec]],
    entity_type: EntityType,
) -> TransformedRecord:
    record = TransformedRecord(row_number=row_number)
    for column, spec in pairs:
        raw = row.get(column)
        if is_blank(raw):
            continue
        try:
            record.values[spec.key] = coerce_value(raw, spec, entity_type)
        except CoercionError as exc:
            raise CoercionError(f"Row {row_number}: {spec.label} {exc}") from None
    return record


def transform_rows(
    rows: Sequence[Dict[str, Any]],
    mappings: Sequence,
    entity_type,
    schema: Optional[EntitySchema] = None,
) -> TransformResult:
    """
    Transform raw rows into typed records.

    Args:
        rows: Raw rows (source column -> raw value), in file order
        mappings: Finalized column mappings
        entity_type: Target entity type key

    Returns:
        TransformResult with one record per successfully coerced row and
        one error message per failed row. Row numbers are 1-based.
    """
    schema = schema or get_entity_schema(entity_type)
    pairs = effective_mappings(mappings, schema)
    result = TransformResult()

    for index, row in enumerate(rows, start=1):
        try:
            result.records.append(transform_row(row, index, pairs, schema.entity_type))
        except CoercionError as exc:
            result.errors.append(str(exc))

    if result.errors:
        logger.warning(f"Transformer rejected {len(result.errors)} of {len(rows)} row(s)")
    logger.debug(f"Transformed {len(result.records)} row(s) for {schema.entity_type.value}")
    return result
