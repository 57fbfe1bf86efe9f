"""
Relationship resolution for imported records.

Lookup tables are loaded once per run into a ``LookupCache`` that is passed
explicitly through the pipeline, so concurrent runs never share state.
Resolution swaps human-readable references (names, emails, legacy ids) for
foreign keys and always stamps the caller's organization onto the record.

Parent references (a location inside a location, an asset inside an asset)
may name rows defined further up the same file, so they are split off as
``ParentLink`` objects and linked once the batch executor has written them.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import time
import logging

from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.repositories import LookupRow, get_repository
from app.db.session import get_session_local
from app.domain.imports.errors import OrchestrationError
from app.domain.imports.registry import EntityFieldSpec, EntitySchema, EntityType, get_entity_schema
from app.domain.imports.values import ResolvedRecord, TransformedRecord

logger = logging.getLogger(__name__)

TENANT_FIELD = "organization_id"


@dataclass
class LookupTable:
    by_name: Dict[str, int] = field(default_factory=dict)
    by_email: Dict[str, int] = field(default_factory=dict)
    by_legacy_id: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[LookupRow]) -> "LookupTable":
        table = cls()
        for row in rows:
            # First row wins on collisions so resolution stays deterministic.
            if row.name:
                table.by_name.setdefault(row.name.strip().lower(), row.id)
            if row.email:
                table.by_email.setdefault(row.email.strip().lower(), row.id)
            if row.legacy_id is not None:
                table.by_legacy_id.setdefault(str(row.legacy_id), row.id)
        return table

    def resolve(self, value) -> Optional[int]:
        """Resolve by name, then email, then legacy id when the value is numeric."""
        if value is None:
            return None
        key = str(value).strip()
        if not key:
            return None
        lowered = key.lower()
        if lowered in self.by_name:
            return self.by_name[lowered]
        if lowered in self.by_email:
            return self.by_email[lowered]
        return self.resolve_legacy_id(key)

    def resolve_legacy_id(self, value) -> Optional[int]:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
        if number.is_integer():
            return self.by_legacy_id.get(str(int(number)))
        return None

    def __len__(self) -> int:
        return len(self.by_name) + len(self.by_email) + len(self.by_legacy_id)


class LookupCache:
    """Lookup tables for one import run, keyed by related entity type."""

    def __init__(self, tenant_id: int, tables: Optional[Dict[EntityType, LookupTable]] = None):
        self.tenant_id = tenant_id
        self.tables: Dict[EntityType, LookupTable] = dict(tables or {})

    def table(self, entity_type: EntityType) -> LookupTable:
        try:
            return self.tables[entity_type]
        except KeyError:
            raise OrchestrationError(
                f"Lookup table for {entity_type.value} was not loaded for this run"
            ) from None

    def resolve(self, entity_type: EntityType, value) -> Optional[int]:
        return self.table(entity_type).resolve(value)

    def __contains__(self, entity_type) -> bool:
        return entity_type in self.tables


def self_reference_fields(schema: EntitySchema) -> List[EntityFieldSpec]:
    """Lookup fields that point back at the entity type being imported (parents)."""
    return [spec for spec in schema.lookup_fields if spec.lookup.target_entity == schema.entity_type]


def required_lookup_entities(schema: EntitySchema, mappings: Sequence) -> List[EntityType]:
    """
    Entity types whose lookup tables are needed for the mapped lookup fields.

    Self references are left out; they are resolved after the insert.
    """
    mapped = {(mapping.target_field or "").strip() for mapping in mappings}
    needed: List[EntityType] = []
    for spec in schema.lookup_fields:
        target = spec.lookup.target_entity
        if spec.key in mapped and target != schema.entity_type and target not in needed:
            needed.append(target)
    return needed


@dataclass(frozen=True)
class ParentLink:
    """A parent reference held back until every row of the file exists."""
    row_number: int
    value: Any
    target_field: str
    by_legacy_id: bool = False

    def resolve(self, table: LookupTable) -> Optional[int]:
        if self.by_legacy_id:
            return table.resolve_legacy_id(self.value)
        return table.resolve(self.value)


def defer_self_references(
    records: Sequence[TransformedRecord], entity_type
) -> Tuple[List[TransformedRecord], List[ParentLink]]:
    """
    Strip parent references from ``records`` and return them as links.

    A parent given by name wins over a "Parent ID" column, which refers to
    the source system's id (``legacy_id``) and never to a stored key.
    """
    schema = get_entity_schema(entity_type)
    specs = self_reference_fields(schema)
    if not specs:
        return list(records), []

    kept: List[TransformedRecord] = []
    links: List[ParentLink] = []
    for record in records:
        values = dict(record.values)
        for spec in specs:
            target = spec.lookup.target_field
            by_name = values.pop(spec.key, None)
            by_id = values.pop(target, None)
            if by_name is not None and str(by_name.value).strip():
                links.append(ParentLink(record.row_number, by_name.value, target))
            elif by_id is not None and by_id.value is not None:
                links.append(ParentLink(record.row_number, by_id.value, target, by_legacy_id=True))
        kept.append(TransformedRecord(row_number=record.row_number, values=values))
    return kept, links


def _load_table(session_factory: sessionmaker, entity_type: EntityType, tenant_id: int) -> LookupTable:
    with session_factory() as session:
        rows = get_repository(entity_type).load_lookup_rows(session, tenant_id)
    return LookupTable.from_rows(rows)


def build_lookup_cache(
    entity_types: Iterable[EntityType],
    tenant_id: int,
    session_factory: Optional[sessionmaker] = None,
    max_workers: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> LookupCache:
    """
    Preload lookup tables concurrently, one worker and session per entity type.

    Raises:
        OrchestrationError: If any table fails to load or the preload runs
            past ``timeout_seconds``.
    """
    entity_types = list(dict.fromkeys(entity_types))
    cache = LookupCache(tenant_id)
    if not entity_types:
        return cache

    session_factory = session_factory or get_session_local()
    max_workers = max_workers or settings.lookup_preload_max_workers
    timeout_seconds = settings.lookup_preload_timeout_seconds if timeout_seconds is None else timeout_seconds
    deadline = time.monotonic() + timeout_seconds
    started = time.perf_counter()

    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(entity_types)))
    try:
        futures = {
            entity: executor.submit(_load_table, session_factory, entity, tenant_id)
            for entity in entity_types
        }
        for entity, future in futures.items():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                cache.tables[entity] = future.result(timeout=remaining)
            except FuturesTimeoutError:
                raise OrchestrationError(
                    f"Loading {entity.value} lookups timed out after {timeout_seconds} seconds"
                ) from None
            except OrchestrationError:
                raise
            except Exception as exc:
                raise OrchestrationError(f"Failed to load {entity.value} lookups: {exc}") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info(
        "Preloaded %d lookup table(s) for organization %s in %.3fs: %s",
        len(cache.tables),
        tenant_id,
        time.perf_counter() - started,
        ", ".join(f"{entity.value}={len(table)}" for entity, table in cache.tables.items()),
    )
    return cache


@dataclass
class ResolutionResult:
    records: List[ResolvedRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def resolve_records(
    records: Sequence[TransformedRecord],
    entity_type,
    cache: LookupCache,
    tenant_id: int,
) -> ResolutionResult:
    """
    Replace lookup values with foreign keys and inject the tenant.

    Unresolved lookups are dropped from the record with a warning; the
    insert decides whether the missing relation is fatal.
    """
    schema = get_entity_schema(entity_type)
    result = ResolutionResult()

    for record in records:
        values = {}
        for key, wrapped in record.values.items():
            spec = schema.field(key)
            if spec is None:
                continue
            if spec.lookup is None:
                values[key] = wrapped.value
                continue

            resolved_id = cache.resolve(spec.lookup.target_entity, wrapped.value)
            if resolved_id is None:
                target_schema = get_entity_schema(spec.lookup.target_entity)
                result.warnings.append(
                    f'Row {record.row_number}: {target_schema.singular} "{wrapped.value}" not found; '
                    f'{spec.label} left empty'
                )
                continue
            values[spec.lookup.target_field] = resolved_id

        # Source data never decides its own tenant.
        values[TENANT_FIELD] = tenant_id
        result.records.append(ResolvedRecord(row_number=record.row_number, values=values))

    if result.warnings:
        logger.warning(
            f"{len(result.warnings)} lookup(s) could not be resolved for {schema.entity_type.value}"
        )
    return result
