"""
Duplicate and conflict detection for incoming rows.

Two read-only checks on the natural-key fields (name, email, sku):
duplicates inside the submitted rows, and values that already exist in the
store for the tenant. Neither check blocks anything on its own.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, List, Optional, Sequence
import logging

from sqlalchemy.orm import sessionmaker

from app.db.repositories import get_repository
from app.db.session import get_session_local
from app.domain.imports.registry import EntitySchema, get_entity_schema
from app.domain.imports.transformer import effective_mappings, is_blank

logger = logging.getLogger(__name__)

NATURAL_KEY_FIELDS = ("name", "email", "sku")


@dataclass
class ConflictReport:
    duplicates: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)


def _natural_key_columns(mappings: Sequence, schema: EntitySchema) -> Dict[str, tuple]:
    """Return ``{field key: (source column, spec)}`` for mapped natural-key fields."""
    return {
        spec.key: (column, spec)
        for column, spec in effective_mappings(mappings, schema)
        if spec.key in NATURAL_KEY_FIELDS and spec.lookup is None
    }


def find_batch_duplicates(rows: Sequence[Dict[str, Any]], mappings: Sequence, entity_type) -> List[str]:
    """
    Report every pair of rows sharing a natural-key value (case-insensitive).

    Returns:
        Messages like ``Duplicate Email: "a@x.com" found in rows 2 and 5``
    """
    schema = get_entity_schema(entity_type)
    messages: List[str] = []
    for key, (column, spec) in _natural_key_columns(mappings, schema).items():
        rows_by_value: Dict[str, List[int]] = {}
        originals: Dict[str, str] = {}
        for row_number, row in enumerate(rows, start=1):
            raw = row.get(column)
            if is_blank(raw):
                continue
            normalized = str(raw).strip().lower()
            rows_by_value.setdefault(normalized, []).append(row_number)
            originals.setdefault(normalized, str(raw).strip())

        for normalized, row_numbers in rows_by_value.items():
            for first, second in combinations(row_numbers, 2):
                messages.append(
                    f'Duplicate {spec.label}: "{originals[normalized]}" found in rows {first} and {second}'
                )
    return messages


def _conflict_message(schema: EntitySchema, spec, value: str) -> str:
    if spec.key == "sku":
        return f'{schema.singular} with SKU "{value}" already exists'
    return f'{schema.singular} with {spec.key} "{value}" already exists'


def find_store_conflicts(
    rows: Sequence[Dict[str, Any]],
    mappings: Sequence,
    entity_type,
    tenant_id: int,
    session_factory: Optional[sessionmaker] = None,
) -> List[str]:
    """Report natural-key values that already exist in the store for ``tenant_id``."""
    schema = get_entity_schema(entity_type)
    key_columns = _natural_key_columns(mappings, schema)
    if not key_columns:
        return []

    repository = get_repository(schema.entity_type)
    session_factory = session_factory or get_session_local()
    messages: List[str] = []
    with session_factory() as session:
        for key, (column, spec) in key_columns.items():
            values = [str(row.get(column)).strip() for row in rows if not is_blank(row.get(column))]
            existing = repository.find_existing_values(session, tenant_id, key, values)
            for value in sorted(set(existing), key=lambda item: str(item).lower()):
                messages.append(_conflict_message(schema, spec, value))

    if messages:
        logger.info(f"Found {len(messages)} existing {schema.entity_type.value} record(s) for organization {tenant_id}")
    return messages


def check_conflicts(
    rows: Sequence[Dict[str, Any]],
    mappings: Sequence,
    entity_type,
    tenant_id: int,
    session_factory: Optional[sessionmaker] = None,
) -> ConflictReport:
    """
    Run both duplicate checks.

    Returns:
        ConflictReport with in-file ``duplicates`` and store ``conflicts``.
    """
    return ConflictReport(
        duplicates=find_batch_duplicates(rows, mappings, entity_type),
        conflicts=find_store_conflicts(rows, mappings, entity_type, tenant_id, session_factory),
    )
