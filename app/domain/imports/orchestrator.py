"""
Import orchestration.

``execute_import`` is the single entry point that commits an import:

    validate -> verify actor -> ledger start -> transform -> preload lookups
    -> derive (work orders) -> resolve -> batch execute -> ledger complete

``run_preflight`` is its read-only counterpart used before committing.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import time
import logging

from sqlalchemy.orm import sessionmaker

from app.db.models import User
from app.db.session import get_session_local
from app.domain.imports.conflicts import find_batch_duplicates, find_store_conflicts
from app.domain.imports.deriver import DerivedEntitySet, derive_work_order_entities
from app.domain.imports.errors import OrchestrationError, UnknownActorError, ValidationError
from app.domain.imports.executor import BatchExecutor, ExecutionResult
from app.domain.imports.history import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    complete_import_run,
    fail_import_run,
    start_import_run,
)
from app.domain.imports.registry import EntityType, get_entity_schema
from app.domain.imports.resolver import (
    ParentLink,
    build_lookup_cache,
    defer_self_references,
    required_lookup_entities,
    resolve_records,
)
from app.domain.imports.transformer import transform_rows
from app.domain.imports.validator import ValidationResult, validate_import

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    success: bool
    imported_count: int
    skipped_count: int
    errors: List[str]
    duplicates: List[str]
    import_id: str
    status: str = STATUS_COMPLETED
    warnings: List[str] = field(default_factory=list)
    derived: Dict[str, int] = field(default_factory=dict)
    duration_ms: Optional[int] = None


@dataclass
class PreflightReport:
    validation: ValidationResult
    duplicates: List[str]
    conflicts: List[str]

    @property
    def can_proceed(self) -> bool:
        return self.validation.valid and not self.conflicts


def run_preflight(
    rows: Sequence[Dict[str, Any]],
    mappings: Sequence,
    entity_type,
    tenant_id: int,
    session_factory: Optional[sessionmaker] = None,
) -> PreflightReport:
    """
    Validate and check duplicates/conflicts concurrently. Nothing is written.

    Raises:
        ConfigurationError: If ``entity_type`` is not registered.
    """
    schema = get_entity_schema(entity_type)
    session_factory = session_factory or get_session_local()

    with ThreadPoolExecutor(max_workers=3) as executor:
        validation_future = executor.submit(validate_import, rows, mappings, schema.entity_type, tenant_id)
        duplicates_future = executor.submit(find_batch_duplicates, rows, mappings, schema.entity_type)
        conflicts_future = executor.submit(
            find_store_conflicts, rows, mappings, schema.entity_type, tenant_id, session_factory
        )
        report = PreflightReport(
            validation=validation_future.result(),
            duplicates=duplicates_future.result(),
            conflicts=conflicts_future.result(),
        )

    logger.info(
        f"Pre-flight for {len(rows)} {schema.entity_type.value} row(s): valid={report.validation.valid}, "
        f"{len(report.duplicates)} duplicate(s), {len(report.conflicts)} conflict(s)"
    )
    return report


def _verify_actor(session_factory: sessionmaker, acting_user_id: int, tenant_id: int) -> None:
    with session_factory() as session:
        actor = (
            session.query(User.id)
            .filter(User.id == acting_user_id, User.organization_id == tenant_id)
            .first()
        )
    if actor is None:
        raise UnknownActorError(f"User {acting_user_id} does not belong to organization {tenant_id}")


def _derive_and_resolve(
    schema, transformed, cache, tenant_id: int, warnings: List[str]
) -> Tuple[DerivedEntitySet, List[ParentLink]]:
    if schema.entity_type == EntityType.WORK_ORDERS:
        derived = derive_work_order_entities(transformed, cache)
    else:
        derived = DerivedEntitySet(primary=list(transformed))
    warnings.extend(derived.warnings)

    records, parent_links = defer_self_references(derived.primary, schema.entity_type)
    primary = resolve_records(records, schema.entity_type, cache, tenant_id)
    secondary = resolve_records(derived.secondary, EntityType.MAINTENANCE_TASKS, cache, tenant_id)
    tertiary = resolve_records(derived.tertiary, EntityType.MAINTENANCE_SCHEDULES, cache, tenant_id)
    follow_ups = resolve_records(derived.follow_ups, EntityType.WORK_ORDERS, cache, tenant_id)
    # Derived records repeat lookups of their source row; report each once.
    for resolution in (primary, secondary, tertiary, follow_ups):
        warnings.extend(message for message in resolution.warnings if message not in warnings)

    entity_set = DerivedEntitySet(
        primary=primary.records,
        secondary=secondary.records,
        tertiary=tertiary.records,
        follow_ups=follow_ups.records,
        summary=dict(derived.summary),
    )
    return entity_set, parent_links


def execute_import(
    entity_type,
    mappings: Sequence,
    rows: Sequence[Dict[str, Any]],
    acting_user_id: int,
    tenant_id: int,
    file_name: Optional[str] = None,
    session_factory: Optional[sessionmaker] = None,
    batch_size: Optional[int] = None,
    batch_timeout_seconds: Optional[float] = None,
) -> ImportResult:
    """
    Commit an import run.

    Args:
        entity_type: Target entity type key
        mappings: Finalized column mappings
        rows: Raw rows in file order
        acting_user_id: User performing the import (must belong to the tenant)
        tenant_id: Organization every record is written to
        file_name: Original file name, kept on the ledger entry

    Returns:
        ImportResult; per-row failures are reported in ``errors`` and
        ``duplicates`` and counted in ``skipped_count``.

    Raises:
        ConfigurationError: Unknown entity type (nothing touched)
        ValidationError: Pre-flight validation failed (nothing written)
        UnknownActorError: Acting user not in the tenant (nothing written)
        OrchestrationError: Run aborted; the ledger entry is marked FAILED
    """
    schema = get_entity_schema(entity_type)
    session_factory = session_factory or get_session_local()
    started = time.perf_counter()

    validation = validate_import(rows, mappings, schema.entity_type, tenant_id)
    if not validation.valid:
        raise ValidationError(validation.errors, validation.warnings)

    _verify_actor(session_factory, acting_user_id, tenant_id)

    handle = start_import_run(
        schema.entity_type, mappings, len(rows), acting_user_id, tenant_id,
        file_name=file_name, session_factory=session_factory,
    )

    warnings: List[str] = list(validation.warnings)
    errors: List[str] = []
    executor = BatchExecutor(
        schema.entity_type,
        tenant_id,
        handle.import_id,
        session_factory=session_factory,
        batch_size=batch_size,
        batch_timeout_seconds=batch_timeout_seconds,
    )
    summary: Dict[str, int] = {}

    try:
        transformed = transform_rows(rows, mappings, schema.entity_type, schema=schema)
        errors.extend(transformed.errors)

        cache = build_lookup_cache(
            required_lookup_entities(schema, mappings), tenant_id, session_factory=session_factory
        )
        entity_set, parent_links = _derive_and_resolve(schema, transformed.records, cache, tenant_id, warnings)
        summary = entity_set.summary

        outcome = executor.execute(entity_set, parent_links=parent_links)
    except Exception as exc:
        partial: ExecutionResult = executor.result
        message = exc.message if isinstance(exc, OrchestrationError) else f"Import aborted: {exc}"
        fail_import_run(
            handle,
            message,
            imported_count=partial.imported_count,
            skipped_count=len(rows) - partial.imported_count,
            errors=errors + partial.errors,
            warnings=warnings + partial.warnings,
            duplicates=partial.duplicates,
            derived_counts={**summary, **partial.derived},
            session_factory=session_factory,
        )
        if isinstance(exc, OrchestrationError):
            exc.import_id = handle.import_id
            raise
        logger.exception(f"Unexpected failure in import {handle.import_id}")
        raise OrchestrationError(message, import_id=handle.import_id) from exc

    errors.extend(outcome.errors)
    warnings.extend(outcome.warnings)
    skipped_count = len(rows) - outcome.imported_count
    derived_counts = {**summary, **outcome.derived}

    entry = complete_import_run(
        handle,
        outcome.imported_count,
        skipped_count,
        errors,
        warnings,
        outcome.duplicates,
        derived_counts=derived_counts,
        session_factory=session_factory,
    )

    logger.info(
        "Import %s of %d %s row(s) done in %.2fs",
        handle.import_id, len(rows), schema.entity_type.value, time.perf_counter() - started,
    )
    return ImportResult(
        success=not errors and entry["status"] != STATUS_FAILED,
        imported_count=outcome.imported_count,
        skipped_count=skipped_count,
        errors=errors,
        duplicates=list(outcome.duplicates),
        import_id=handle.import_id,
        status=entry["status"],
        warnings=warnings,
        derived=derived_counts,
        duration_ms=entry["duration_ms"],
    )
