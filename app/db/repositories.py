"""
Per-entity store access used by the import pipeline.

One ``EntityRepository`` exists per importable entity type and is selected
through ``REPOSITORIES`` by ``EntityType``; the pipeline never indexes the
store by table name.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from app.db.models import (
    Asset,
    Location,
    MaintenanceSchedule,
    MaintenanceTask,
    Part,
    Supplier,
    User,
    WorkOrder,
)
from app.domain.imports.registry import EntityType


@dataclass(frozen=True)
class LookupRow:
    id: int
    name: Optional[str]
    email: Optional[str]
    legacy_id: Optional[int]


class EntityRepository:
    """Tenant-scoped create/find/delete for one mapped model."""

    def __init__(self, entity_type: EntityType, model, name_attr: str = "name"):
        self.entity_type = entity_type
        self.model = model
        self.name_attr = name_attr

    def __repr__(self) -> str:
        return f"EntityRepository({self.entity_type.value})"

    def _column(self, field: str):
        try:
            return getattr(self.model, field)
        except AttributeError:
            raise ValueError(f"{self.model.__name__} has no column '{field}'") from None

    def _scoped(self, session: Session, tenant_id: int):
        return session.query(self.model).filter(self.model.organization_id == tenant_id)

    def create(self, session: Session, values: Dict[str, Any]):
        """Insert one row and flush so constraint violations surface immediately."""
        instance = self.model(**values)
        session.add(instance)
        session.flush()
        return instance

    def update(self, session: Session, tenant_id: int, record_id: int, values: Dict[str, Any]):
        """Set ``values`` on one tenant row and flush."""
        instance = self._scoped(session, tenant_id).filter(self.model.id == record_id).one_or_none()
        if instance is None:
            raise ValueError(f"{self.model.__name__} {record_id} not found")
        for field, value in values.items():
            self._column(field)
            setattr(instance, field, value)
        session.flush()
        return instance

    def find_many(self, session: Session, tenant_id: int, limit: Optional[int] = None, **filters) -> List[Any]:
        query = self._scoped(session, tenant_id)
        for field, value in filters.items():
            query = query.filter(self._column(field) == value)
        query = query.order_by(self.model.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_first(self, session: Session, tenant_id: int, **filters):
        matches = self.find_many(session, tenant_id, limit=1, **filters)
        return matches[0] if matches else None

    def find_existing_values(
        self, session: Session, tenant_id: int, field: str, values: Iterable[str]
    ) -> List[str]:
        """Return stored values of ``field`` matching any of ``values`` case-insensitively."""
        lowered = sorted({str(value).strip().lower() for value in values if value is not None})
        if not lowered:
            return []
        column = self._column(field)
        rows = (
            self._scoped(session, tenant_id)
            .with_entities(column)
            .filter(func.lower(column).in_(lowered))
            .all()
        )
        return [row[0] for row in rows]

    def delete_many(
        self,
        session: Session,
        tenant_id: int,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        import_id: Optional[str] = None,
    ) -> int:
        """
        Delete rows created inside ``[created_from, created_to]`` or tagged with ``import_id``.

        Returns:
            Number of rows deleted.
        """
        conditions = []
        if created_from is not None and created_to is not None:
            conditions.append(and_(
                self.model.created_at >= created_from,
                self.model.created_at <= created_to,
            ))
        if import_id:
            conditions.append(self.model.import_id == import_id)
        if not conditions:
            raise ValueError("delete_many requires a creation window or an import id")

        return (
            self._scoped(session, tenant_id)
            .filter(or_(*conditions))
            .delete(synchronize_session=False)
        )

    def load_lookup_rows(self, session: Session, tenant_id: int) -> List[LookupRow]:
        columns = [self.model.id, self._column(self.name_attr)]
        has_email = hasattr(self.model, "email")
        has_legacy = hasattr(self.model, "legacy_id")
        if has_email:
            columns.append(self.model.email)
        if has_legacy:
            columns.append(self.model.legacy_id)

        rows = self._scoped(session, tenant_id).with_entities(*columns).all()
        lookup_rows = []
        for row in rows:
            values = list(row)
            record_id, name = values[0], values[1]
            email = values[2] if has_email else None
            legacy_id = values[-1] if has_legacy else None
            lookup_rows.append(LookupRow(id=record_id, name=name, email=email, legacy_id=legacy_id))
        return lookup_rows


REPOSITORIES: Dict[EntityType, EntityRepository] = {
    EntityType.ASSETS: EntityRepository(EntityType.ASSETS, Asset),
    EntityType.WORK_ORDERS: EntityRepository(EntityType.WORK_ORDERS, WorkOrder, name_attr="title"),
    EntityType.USERS: EntityRepository(EntityType.USERS, User),
    EntityType.LOCATIONS: EntityRepository(EntityType.LOCATIONS, Location),
    EntityType.PARTS: EntityRepository(EntityType.PARTS, Part),
    EntityType.SUPPLIERS: EntityRepository(EntityType.SUPPLIERS, Supplier),
    EntityType.MAINTENANCE_TASKS: EntityRepository(
        EntityType.MAINTENANCE_TASKS, MaintenanceTask, name_attr="title"
    ),
    EntityType.MAINTENANCE_SCHEDULES: EntityRepository(
        EntityType.MAINTENANCE_SCHEDULES, MaintenanceSchedule, name_attr="title"
    ),
}


def get_repository(entity_type: EntityType) -> EntityRepository:
    return REPOSITORIES[entity_type]
