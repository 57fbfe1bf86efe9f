"""
Batched, transactional insertion of resolved records.

Records are written in fixed-size batches, one transaction per batch and
one SAVEPOINT per record, so a bad row is rolled back on its own and the
rest of the batch commits. Only failures of the batch machinery itself
(setup, time budget) abort the run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import re
import time
import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.security import get_password_hash
from app.db.repositories import get_repository
from app.db.session import get_session_local
from app.domain.imports.deriver import DerivedEntitySet, is_preventive_work_type
from app.domain.imports.errors import OrchestrationError, RowExecutionError
from app.domain.imports.registry import EntityType, get_entity_schema
from app.domain.imports.resolver import LookupTable, ParentLink
from app.domain.imports.values import ResolvedRecord

logger = logging.getLogger(__name__)

# Exact-match fields checked (per tenant) before every insert.
DUPLICATE_CHECK_FIELDS: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.ASSETS: ("name",),
    EntityType.WORK_ORDERS: ("title",),
    EntityType.USERS: ("email",),
    EntityType.LOCATIONS: ("name",),
    EntityType.PARTS: ("name",),
    EntityType.SUPPLIERS: ("name",),
    EntityType.MAINTENANCE_TASKS: ("title",),
    EntityType.MAINTENANCE_SCHEDULES: ("title", "asset_id"),
}

# Follow-up work orders: at most one OPEN work order per schedule.
FOLLOW_UP_DUPLICATE_FIELDS = ("maintenance_schedule_id", "status")

DEFAULT_LOCATION_DESCRIPTION = "Auto-created default location for assets without specified location"

_DERIVED_COUNTER_PREFIX = {
    EntityType.MAINTENANCE_TASKS: "tasks",
    EntityType.MAINTENANCE_SCHEDULES: "schedules",
    EntityType.WORK_ORDERS: "follow_up_work_orders",
}


@dataclass
class ExecutionResult:
    imported_count: int = 0
    errors: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    derived: Dict[str, int] = field(default_factory=dict)
    created_ids: Dict[int, int] = field(default_factory=dict)  # row number -> primary key

    def count(self, key: str, amount: int = 1) -> None:
        self.derived[key] = self.derived.get(key, 0) + amount

    def absorb(self, other: "ExecutionResult") -> None:
        self.imported_count += other.imported_count
        self.errors.extend(other.errors)
        self.duplicates.extend(other.duplicates)
        self.warnings.extend(other.warnings)
        for key, value in other.derived.items():
            self.count(key, value)
        self.created_ids.update(other.created_ids)


def _unique_violation_field(message: str) -> str:
    # Postgres: Key (organization_id, sku)=(1, X) / SQLite: UNIQUE constraint failed: parts.organization_id, parts.sku
    match = re.search(r'key \(([^)]+)\)', message) or re.search(r'unique constraint failed: ([\w., ]+)', message)
    if not match:
        return "value"
    columns = [part.strip().split(".")[-1] for part in match.group(1).split(",")]
    columns = [column for column in columns if column and column != "organization_id"]
    return ", ".join(columns) or "value"


def classify_store_error(exc: Exception, row_number: int) -> RowExecutionError:
    """Turn a driver or ORM failure into a user-facing, code-free row error."""
    original = getattr(exc, "orig", None)
    message = str(original if original is not None else exc)
    lowered = message.lower()

    if isinstance(exc, IntegrityError) and ("unique" in lowered or "duplicate key" in lowered):
        return RowExecutionError(
            row_number,
            f"Row {row_number}: Duplicate {_unique_violation_field(lowered)} - this record already exists",
            is_duplicate=True,
        )

    invalid_field = re.search(r"'(\w+)' is an invalid keyword argument", message)
    if invalid_field:
        return RowExecutionError(
            row_number,
            f'Row {row_number}: Invalid field "{invalid_field.group(1)}" - this field is not supported in the database',
        )

    if "not among the defined enum values" in lowered or "invalid input value for enum" in lowered:
        bad_value = re.search(r"'([^']*)' is not among", message) or re.search(r'enum \w+: "([^"]*)"', message)
        detail = f' "{bad_value.group(1)}"' if bad_value else ""
        return RowExecutionError(
            row_number, f"Row {row_number}: Invalid value{detail} - it is not one of the allowed options"
        )

    if "foreign key" in lowered:
        return RowExecutionError(
            row_number,
            f"Row {row_number}: Related record not found - please check asset, location, or user references",
        )

    if "not null" in lowered or "null value in column" in lowered:
        column = re.search(r'not null constraint failed: [\w]+\.(\w+)', lowered) or re.search(
            r'null value in column "(\w+)"', lowered
        )
        name = column.group(1) if column else "a required field"
        return RowExecutionError(row_number, f"Row {row_number}: Required field {name} is missing")

    first_line = message.strip().splitlines()[0] if message.strip() else type(exc).__name__
    return RowExecutionError(row_number, f"Row {row_number}: Database error: {first_line[:200]}")


class BatchExecutor:
    """
    Writes the records of one import run.

    Holds run-scoped state only (default password hash, default location,
    schedules created so far) and must not be shared between runs.
    """

    def __init__(
        self,
        entity_type,
        tenant_id: int,
        import_id: str,
        session_factory: Optional[sessionmaker] = None,
        batch_size: Optional[int] = None,
        batch_timeout_seconds: Optional[float] = None,
    ):
        self.schema = get_entity_schema(entity_type)
        self.entity_type = self.schema.entity_type
        self.tenant_id = tenant_id
        self.import_id = import_id
        self.session_factory = session_factory or get_session_local()
        self.batch_size = max(1, batch_size or settings.import_batch_size)
        self.batch_timeout_seconds = (
            settings.import_batch_timeout_seconds if batch_timeout_seconds is None else batch_timeout_seconds
        )
        self.result = ExecutionResult()
        self._password_hash: Optional[str] = None
        self._default_location_id: Optional[int] = None
        self._schedule_ids: Dict[Tuple[str, Any], int] = {}

    def execute(self, entity_set: DerivedEntitySet, parent_links: Sequence[ParentLink] = ()) -> ExecutionResult:
        """
        Insert derived tasks, then derived schedules, then the primary records,
        then follow-up work orders; finally link parents between created rows.

        Raises:
            OrchestrationError: If a batch cannot be set up or exceeds its
                time budget. Batches committed before the failure stay
                committed and are reflected in ``self.result``.
        """
        with self.session_factory() as session:
            if entity_set.secondary:
                self._run(session, EntityType.MAINTENANCE_TASKS, entity_set.secondary, derived=True)
            if entity_set.tertiary:
                self._run(session, EntityType.MAINTENANCE_SCHEDULES, entity_set.tertiary, derived=True)
            self._run(session, self.entity_type, entity_set.primary, derived=False)
            if entity_set.follow_ups:
                self._run(session, EntityType.WORK_ORDERS, entity_set.follow_ups, derived=True)
            if parent_links:
                self._link_parents(session, parent_links)
        return self.result

    def _link_parents(self, session: Session, links: Sequence[ParentLink]) -> None:
        """
        Point created rows at their parents, in one transaction bounded like a batch.

        The lookup table is reloaded inside that transaction, so a parent may
        be any row of the tenant, including rows written earlier in this run.
        """
        pending = [link for link in links if link.row_number in self.result.created_ids]
        if not pending:
            return

        repository = get_repository(self.entity_type)
        batch_result = ExecutionResult()
        assigned: Dict[int, int] = {}
        started = time.monotonic()
        deadline = started + self.batch_timeout_seconds
        try:
            with session.begin():
                self._apply_statement_timeout(session)
                table = LookupTable.from_rows(repository.load_lookup_rows(session, self.tenant_id))
                for link in pending:
                    self._link_parent(session, repository, table, link, assigned, batch_result)
                    if time.monotonic() >= deadline:
                        raise OrchestrationError(
                            f"Linking {self.entity_type.value} parents exceeded its "
                            f"{self.batch_timeout_seconds}s time budget",
                            import_id=self.import_id,
                        )
        except SQLAlchemyError as exc:
            logger.error(f"Linking {self.entity_type.value} parents failed: {exc}")
            raise OrchestrationError(
                f"Linking {self.entity_type.value} parents failed: {exc.__class__.__name__}",
                import_id=self.import_id,
            ) from exc

        self.result.absorb(batch_result)
        logger.info(
            "Linked %d of %d %s parent reference(s) in %.3fs",
            batch_result.derived.get("parents_linked", 0),
            len(pending),
            self.entity_type.value,
            time.monotonic() - started,
        )

    def _link_parent(self, session, repository, table, link: ParentLink, assigned, batch_result) -> None:
        child_id = self.result.created_ids[link.row_number]
        parent_id = link.resolve(table)
        reference = f'{self.schema.singular} "{link.value}"'
        if parent_id is None:
            batch_result.warnings.append(f"Row {link.row_number}: {reference} not found; Parent left empty")
            return

        # Only rows created by this run can point at each other, so walking
        # the links assigned so far is enough to detect a cycle.
        ancestor = parent_id
        while ancestor is not None:
            if ancestor == child_id:
                batch_result.warnings.append(
                    f"Row {link.row_number}: {reference} would make the record its own ancestor; "
                    f"Parent left empty"
                )
                return
            ancestor = assigned.get(ancestor)

        try:
            with session.begin_nested():
                repository.update(session, self.tenant_id, child_id, {link.target_field: parent_id})
        except (SQLAlchemyError, ValueError) as exc:
            batch_result.warnings.append(classify_store_error(exc, link.row_number).message)
            return
        assigned[child_id] = parent_id
        batch_result.count("parents_linked")

    def _run(self, session: Session, entity_type: EntityType, records: Sequence[ResolvedRecord], derived: bool) -> None:
        total_batches = (len(records) + self.batch_size - 1) // self.batch_size
        for batch_number, start in enumerate(range(0, len(records), self.batch_size), start=1):
            batch = records[start:start + self.batch_size]
            batch_result = ExecutionResult()
            started = time.monotonic()
            deadline = started + self.batch_timeout_seconds
            try:
                with session.begin():
                    self._apply_statement_timeout(session)
                    for record in batch:
                        self._execute_record(session, entity_type, record, batch_result, derived)
                        if time.monotonic() >= deadline:
                            raise OrchestrationError(
                                f"Batch {batch_number} of {entity_type.value} exceeded its "
                                f"{self.batch_timeout_seconds}s time budget",
                                import_id=self.import_id,
                            )
            except OrchestrationError:
                self._default_location_id = None
                raise
            except SQLAlchemyError as exc:
                self._default_location_id = None
                logger.error(f"Batch {batch_number} of {entity_type.value} failed: {exc}")
                raise OrchestrationError(
                    f"Batch {batch_number} of {entity_type.value} failed: {exc.__class__.__name__}",
                    import_id=self.import_id,
                ) from exc

            self.result.absorb(batch_result)
            logger.info(
                "Committed batch %d/%d for %s in %.3fs: %d created, %d skipped",
                batch_number,
                total_batches,
                entity_type.value,
                time.monotonic() - started,
                batch_result.imported_count,
                len(batch_result.errors) + len(batch_result.duplicates),
            )

    def _apply_statement_timeout(self, session: Session) -> None:
        if session.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self.batch_timeout_seconds * 1000)
            session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _execute_record(
        self,
        session: Session,
        entity_type: EntityType,
        record: ResolvedRecord,
        batch_result: ExecutionResult,
        derived: bool,
    ) -> None:
        schema = get_entity_schema(entity_type)
        repository = get_repository(entity_type)
        values = self._prepare(session, entity_type, dict(record.values), batch_result)

        try:
            if derived and entity_type == EntityType.WORK_ORDERS and not values.get("maintenance_schedule_id"):
                raise RowExecutionError(
                    record.row_number, f"Row {record.row_number}: no maintenance schedule to follow up"
                )
            existing = self._find_duplicate(session, entity_type, values, derived)
            if existing is not None:
                if derived:
                    self._register_derived(entity_type, existing, values, batch_result, reused=True)
                    return
                raise RowExecutionError(
                    record.row_number,
                    self._duplicate_message(record.row_number, schema, values),
                    is_duplicate=True,
                )

            values["import_id"] = self.import_id
            try:
                with session.begin_nested():
                    instance = repository.create(session, values)
            except (SQLAlchemyError, TypeError, ValueError, LookupError) as exc:
                raise classify_store_error(exc, record.row_number) from exc
        except RowExecutionError as exc:
            if derived:
                batch_result.warnings.append(f"{schema.singular} not created: {exc.message}")
            elif exc.is_duplicate:
                batch_result.duplicates.append(exc.message)
            else:
                batch_result.errors.append(exc.message)
            logger.debug(exc.message)
            return

        if derived:
            self._register_derived(entity_type, instance, values, batch_result, reused=False)
        else:
            batch_result.imported_count += 1
            batch_result.created_ids[record.row_number] = instance.id

    def _duplicate_message(self, row_number: int, schema, values: Dict[str, Any]) -> str:
        key = DUPLICATE_CHECK_FIELDS[schema.entity_type][0]
        spec = schema.field(key)
        label = spec.label if spec else key
        return f'Row {row_number}: Duplicate {label} "{values.get(key)}" - this record already exists'

    def _find_duplicate(self, session: Session, entity_type: EntityType, values: Dict[str, Any], derived: bool):
        if derived and entity_type == EntityType.WORK_ORDERS:
            fields = FOLLOW_UP_DUPLICATE_FIELDS
        else:
            fields = DUPLICATE_CHECK_FIELDS.get(entity_type, ())
        if not fields or values.get(fields[0]) is None:
            return None
        filters = {name: values.get(name) for name in fields}
        return get_repository(entity_type).find_first(session, self.tenant_id, **filters)

    def _register_derived(self, entity_type, instance, values, batch_result: ExecutionResult, reused: bool) -> None:
        prefix = _DERIVED_COUNTER_PREFIX.get(entity_type, entity_type.value)
        batch_result.count(f"{prefix}_{'reused' if reused else 'created'}")
        if entity_type == EntityType.MAINTENANCE_SCHEDULES:
            key = (str(values.get("title", "")).strip().lower(), values.get("asset_id"))
            self._schedule_ids[key] = instance.id

    # Pre-insert rules -----------------------------------------------------

    def _prepare(
        self, session: Session, entity_type: EntityType, values: Dict[str, Any], batch_result: ExecutionResult
    ) -> Dict[str, Any]:
        schema = get_entity_schema(entity_type)
        work_type = values.get("work_type")
        for spec in schema.fields:
            if not spec.stored:
                values.pop(spec.key, None)

        if entity_type == EntityType.USERS and not values.get("password"):
            values["password"] = self._default_password_hash()

        elif entity_type == EntityType.WORK_ORDERS:
            if values.get("status") == "COMPLETED" and not values.get("completed_at"):
                values["completed_at"] = datetime.now(timezone.utc)
            if is_preventive_work_type(work_type) and not values.get("maintenance_schedule_id"):
                schedule_id = self._find_schedule_id(session, values)
                if schedule_id is not None:
                    values["maintenance_schedule_id"] = schedule_id
                    batch_result.count("work_orders_linked")

        elif entity_type == EntityType.ASSETS and not values.get("location_id"):
            values["location_id"] = self._default_location(session)
            batch_result.count("default_location_assigned")

        return values

    def _default_password_hash(self) -> str:
        if self._password_hash is None:
            self._password_hash = get_password_hash(settings.default_user_password)
        return self._password_hash

    def _find_schedule_id(self, session: Session, values: Dict[str, Any]) -> Optional[int]:
        title = values.get("title")
        if not title:
            return None
        key = (str(title).strip().lower(), values.get("asset_id"))
        if key in self._schedule_ids:
            return self._schedule_ids[key]
        schedule = get_repository(EntityType.MAINTENANCE_SCHEDULES).find_first(
            session, self.tenant_id, title=title, asset_id=values.get("asset_id")
        )
        return schedule.id if schedule is not None else None

    def _default_location(self, session: Session) -> int:
        if self._default_location_id is not None:
            return self._default_location_id

        repository = get_repository(EntityType.LOCATIONS)
        location = repository.find_first(session, self.tenant_id, name=settings.default_location_name)
        if location is None:
            location = repository.create(session, {
                "name": settings.default_location_name,
                "description": DEFAULT_LOCATION_DESCRIPTION,
                "organization_id": self.tenant_id,
            })
            logger.warning(
                f"Created '{settings.default_location_name}' for organization {self.tenant_id} "
                f"to hold assets without a location"
            )
        self._default_location_id = location.id
        return location.id
