"""
Pre-flight validation of a mapping and its rows.

Validation never writes anything. Errors block ``execute_import``; warnings
are surfaced to the caller and the import may proceed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
import logging

from app.domain.imports.registry import FieldType, get_entity_schema
from app.domain.imports.transformer import (
    CoercionError,
    coerce_value,
    effective_mappings,
    is_blank,
    is_known_enum_value,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _mapping_warnings(mappings: Sequence, schema) -> List[str]:
    warnings: List[str] = []
    columns_by_field: Dict[str, List[str]] = {}
    for mapping in mappings:
        target = (mapping.target_field or "").strip()
        if target and schema.field(target) is not None:
            columns_by_field.setdefault(target, []).append(mapping.source_column)

    for target, columns in columns_by_field.items():
        if len(columns) > 1:
            others = ", ".join(f'"{column}"' for column in columns[1:])
            warnings.append(
                f'{schema.field(target).label} is mapped from several columns; '
                f'"{columns[0]}" is used and {others} will be ignored'
            )

    for spec in schema.lookup_fields:
        target_spec = schema.field(spec.lookup.target_field)
        if spec.key in columns_by_field and target_spec is not None and target_spec.key in columns_by_field:
            warnings.append(
                f'Both "{columns_by_field[spec.key][0]}" ({spec.label}) and '
                f'"{columns_by_field[target_spec.key][0]}" ({target_spec.label}) are mapped; '
                f'the {spec.label} lookup takes precedence and {target_spec.label} will be ignored'
            )
    return warnings


def validate_import(
    rows: Sequence[Dict[str, Any]],
    mappings: Sequence,
    entity_type,
    tenant_id: int,
) -> ValidationResult:
    """
    Validate a finalized mapping and its rows against the entity schema.

    Args:
        rows: Raw rows in file order
        mappings: Finalized column mappings
        entity_type: Target entity type key
        tenant_id: Organization the rows will be imported into

    Returns:
        ValidationResult. ``valid`` is False when a required field has no
        mapping or any row has a required, numeric or date problem.

    Raises:
        ConfigurationError: If ``entity_type`` is not registered.
    """
    schema = get_entity_schema(entity_type)
    errors: List[str] = []
    warnings: List[str] = []

    for mapping in mappings:
        target = (mapping.target_field or "").strip()
        if target and schema.field(target) is None:
            errors.append(f'Column "{mapping.source_column}" is mapped to unknown field "{target}"')

    warnings.extend(_mapping_warnings(mappings, schema))

    mapped_keys = {(mapping.target_field or "").strip() for mapping in mappings}
    missing = [spec.label for spec in schema.required_fields if spec.key not in mapped_keys]
    if missing:
        errors.append(f"Missing required fields: {', '.join(missing)}")

    pairs = effective_mappings(mappings, schema)
    for row_number, row in enumerate(rows, start=1):
        for column, spec in pairs:
            raw = row.get(column)
            if is_blank(raw):
                if spec.required:
                    errors.append(f"Row {row_number}: {spec.label} is required but empty")
                continue

            if spec.value_type == FieldType.ENUM:
                if not is_known_enum_value(raw, spec):
                    warnings.append(
                        f'Row {row_number}: {spec.label} value "{raw}" is not one of '
                        f'{", ".join(spec.enum_values)} and will be normalized'
                    )
                continue

            if spec.value_type in (FieldType.NUMBER, FieldType.DATE):
                try:
                    coerce_value(raw, spec, schema.entity_type)
                except CoercionError as exc:
                    errors.append(f"Row {row_number}: {spec.label} {exc}")

    logger.info(
        f"Validated {len(rows)} row(s) as {schema.entity_type.value} for organization {tenant_id}: "
        f"{len(errors)} error(s), {len(warnings)} warning(s)"
    )
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
