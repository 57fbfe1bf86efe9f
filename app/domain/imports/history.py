"""
Import ledger: one audit entry per import run, plus rollback.

An entry is written as IN_PROGRESS before any record is transformed, with
the exact mapping used. It is completed (or failed) once at the end of the
run and may be marked rolled back later. Entries are never deleted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import uuid
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.db.models import ImportHistory
from app.db.repositories import get_repository
from app.db.session import get_session_local
from app.domain.imports.errors import RollbackError
from app.domain.imports.registry import EntityType, parse_entity_type
from app.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_COMPLETED = "COMPLETED"
STATUS_PARTIAL = "PARTIAL"
STATUS_FAILED = "FAILED"

MAX_HISTORY_LIMIT = 200

# Derived entity types removed together with a work-order import, children first.
DERIVED_ROLLBACK_TYPES = {
    EntityType.WORK_ORDERS: (EntityType.MAINTENANCE_SCHEDULES, EntityType.MAINTENANCE_TASKS),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_import_id() -> str:
    return uuid.uuid4().hex


def determine_status(imported_count: int, skipped_count: int, errors: Sequence[str]) -> str:
    """
    Final status of a run.

    COMPLETED when nothing was skipped and no error was recorded, PARTIAL
    when at least one record was imported, FAILED otherwise.
    """
    if skipped_count == 0 and not errors:
        return STATUS_COMPLETED
    if imported_count > 0:
        return STATUS_PARTIAL
    return STATUS_FAILED


def can_rollback(imported_count: int, status: str) -> bool:
    return imported_count > 0 and status != STATUS_FAILED


@dataclass
class LedgerHandle:
    """In-memory view of the entry a running import owns."""
    import_id: str
    entity_type: EntityType
    organization_id: int
    started_at: datetime


def start_import_run(
    entity_type,
    mappings: Sequence,
    total_rows: int,
    user_id: int,
    organization_id: int,
    file_name: Optional[str] = None,
    session_factory: Optional[sessionmaker] = None,
) -> LedgerHandle:
    """Create the IN_PROGRESS entry for a new run and return its handle."""
    entity = parse_entity_type(entity_type)
    session_factory = session_factory or get_session_local()
    handle = LedgerHandle(
        import_id=generate_import_id(),
        entity_type=entity,
        organization_id=organization_id,
        started_at=_utcnow(),
    )

    with session_factory() as session:
        session.add(ImportHistory(
            import_id=handle.import_id,
            entity_type=entity.value,
            file_name=file_name,
            total_rows=total_rows,
            status=STATUS_IN_PROGRESS,
            errors=[],
            warnings=[],
            duplicates=[],
            column_mappings=_make_json_safe(list(mappings)),
            user_id=user_id,
            organization_id=organization_id,
            started_at=handle.started_at,
        ))
        session.commit()

    logger.info(f"Import {handle.import_id} started: {total_rows} {entity.value} row(s) for organization {organization_id}")
    return handle


def _finish(
    handle: LedgerHandle,
    status: str,
    imported_count: int,
    skipped_count: int,
    errors: Sequence[str],
    warnings: Sequence[str],
    duplicates: Sequence[str],
    derived_counts: Optional[Dict[str, int]],
    session_factory: Optional[sessionmaker],
) -> Dict[str, Any]:
    session_factory = session_factory or get_session_local()
    completed_at = _utcnow()
    duration_ms = int((completed_at - handle.started_at).total_seconds() * 1000)

    with session_factory() as session:
        entry = session.query(ImportHistory).filter(ImportHistory.import_id == handle.import_id).one()
        entry.status = status
        entry.imported_count = imported_count
        entry.skipped_count = skipped_count
        entry.errors = list(errors)
        entry.warnings = list(warnings)
        entry.duplicates = list(duplicates)
        entry.derived_counts = _make_json_safe(derived_counts) if derived_counts else None
        entry.can_rollback = can_rollback(imported_count, status)
        entry.completed_at = completed_at
        entry.duration_ms = duration_ms
        session.commit()
        return _entry_to_dict(entry)


def complete_import_run(
    handle: LedgerHandle,
    imported_count: int,
    skipped_count: int,
    errors: Sequence[str],
    warnings: Sequence[str],
    duplicates: Sequence[str],
    derived_counts: Optional[Dict[str, int]] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Dict[str, Any]:
    """Record the outcome of a finished run and return the updated entry."""
    status = determine_status(imported_count, skipped_count, errors)
    entry = _finish(
        handle, status, imported_count, skipped_count, errors, warnings, duplicates,
        derived_counts, session_factory,
    )
    logger.info(
        f"Import {handle.import_id} finished with status {status}: "
        f"{imported_count} imported, {skipped_count} skipped in {entry['duration_ms']}ms"
    )
    return entry


def fail_import_run(
    handle: LedgerHandle,
    message: str,
    imported_count: int = 0,
    skipped_count: int = 0,
    errors: Sequence[str] = (),
    warnings: Sequence[str] = (),
    duplicates: Sequence[str] = (),
    derived_counts: Optional[Dict[str, int]] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Dict[str, Any]:
    """Mark a run FAILED after an orchestration error, keeping ``message``."""
    entry = _finish(
        handle, STATUS_FAILED, imported_count, skipped_count, [*errors, message], warnings, duplicates,
        derived_counts, session_factory,
    )
    logger.error(f"Import {handle.import_id} failed: {message}")
    return entry


def _entry_to_dict(entry: ImportHistory) -> Dict[str, Any]:
    return {
        "import_id": entry.import_id,
        "entity_type": entry.entity_type,
        "file_name": entry.file_name,
        "total_rows": entry.total_rows,
        "imported_count": entry.imported_count,
        "skipped_count": entry.skipped_count,
        "status": entry.status,
        "errors": list(entry.errors or []),
        "warnings": list(entry.warnings or []),
        "duplicates": list(entry.duplicates or []),
        "column_mappings": list(entry.column_mappings or []),
        "derived_counts": entry.derived_counts,
        "user_id": entry.user_id,
        "organization_id": entry.organization_id,
        "can_rollback": entry.can_rollback,
        "rolled_back": entry.rolled_back,
        "rolled_back_at": entry.rolled_back_at,
        "rolled_back_by_id": entry.rolled_back_by_id,
        "started_at": entry.started_at,
        "completed_at": entry.completed_at,
        "duration_ms": entry.duration_ms,
        "created_at": entry.created_at,
    }


def get_import_history(
    organization_id: int,
    limit: int = 50,
    offset: int = 0,
    session_factory: Optional[sessionmaker] = None,
) -> List[Dict[str, Any]]:
    """
    List ledger entries for one organization, newest first.

    Args:
        organization_id: Tenant whose runs are listed
        limit: Page size, clamped to 1..200
        offset: Number of entries to skip
    """
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
    offset = max(0, int(offset))
    session_factory = session_factory or get_session_local()
    with session_factory() as session:
        entries = (
            session.query(ImportHistory)
            .filter(ImportHistory.organization_id == organization_id)
            .order_by(ImportHistory.created_at.desc(), ImportHistory.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [_entry_to_dict(entry) for entry in entries]


@dataclass
class RollbackResult:
    success: bool
    deleted_count: int
    message: str


def rollback_import(
    import_id: str,
    acting_user_id: int,
    organization_id: int,
    session_factory: Optional[sessionmaker] = None,
) -> RollbackResult:
    """
    Delete the records an import created and mark its entry rolled back.

    Primary records are matched by creation time inside the run's
    ``[started_at, completed_at]`` window or by their ``import_id`` tag;
    derived tasks and schedules are matched by tag only. Everything happens
    in one transaction.

    Raises:
        RollbackError: If the entry does not exist for the organization, was
            already rolled back, is not rollback-able, or the delete fails.
    """
    session_factory = session_factory or get_session_local()
    with session_factory() as session:
        entry = (
            session.query(ImportHistory)
            .filter(
                ImportHistory.import_id == import_id,
                ImportHistory.organization_id == organization_id,
            )
            .first()
        )
        if entry is None:
            raise RollbackError(f"Import {import_id} not found", RollbackError.NOT_FOUND)
        if entry.rolled_back:
            raise RollbackError(f"Import {import_id} has already been rolled back", RollbackError.NOT_ALLOWED)
        if not entry.can_rollback:
            raise RollbackError(f"Import {import_id} cannot be rolled back", RollbackError.NOT_ALLOWED)

        entity = parse_entity_type(entry.entity_type)
        window_end = entry.completed_at or _utcnow()
        deleted = 0
        try:
            deleted += get_repository(entity).delete_many(
                session,
                organization_id,
                created_from=entry.started_at,
                created_to=window_end,
                import_id=import_id,
            )
            for derived_type in DERIVED_ROLLBACK_TYPES.get(entity, ()):
                deleted += get_repository(derived_type).delete_many(
                    session, organization_id, import_id=import_id
                )

            entry.rolled_back = True
            entry.rolled_back_at = _utcnow()
            entry.rolled_back_by_id = acting_user_id
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(f"Rollback of import {import_id} failed: {exc}")
            raise RollbackError(
                f"Rollback of import {import_id} failed; records created by it are still referenced elsewhere",
                RollbackError.FAILED,
            ) from exc

    message = f"Successfully rolled back import {import_id}. Deleted {deleted} records."
    logger.info(message)
    return RollbackResult(success=True, deleted_count=deleted, message=message)
