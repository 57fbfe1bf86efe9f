"""
ORM models for the maintenance data store and the import ledger.

Every importable table carries the owning ``organization_id`` and the
``import_id`` of the run that created the row (NULL for rows created
outside an import).
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from sqlalchemy.orm import declared_attr

from app.db.session import Base
from app.domain.imports.registry import (
    ASSET_CRITICALITIES,
    ASSET_STATUSES,
    TASK_TYPES,
    USER_ROLES,
    WORK_ORDER_PRIORITIES,
    WORK_ORDER_STATUSES,
)


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _enum(values, name: str) -> Enum:
    return Enum(*values, name=name, validate_strings=True)


class ImportTracked:
    """Columns shared by every table that bulk imports write to."""

    @declared_attr
    def organization_id(cls):
        return Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    import_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Organization(Base):
    """Tenant that owns every imported record."""
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class User(ImportTracked, Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    password = Column(String(255), nullable=False)
    role = Column(_enum(USER_ROLES, "user_role"), nullable=False, default="TECHNICIAN")


class Location(ImportTracked, Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    address = Column(String(500))
    barcode = Column(String(255))
    url = Column(String(500))
    parent_id = Column(Integer, ForeignKey("locations.id"), nullable=True)


class Asset(ImportTracked, Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    serial_number = Column(String(255))
    model_number = Column(String(255))
    manufacturer = Column(String(255))
    year = Column(Integer)
    status = Column(_enum(ASSET_STATUSES, "asset_status"), nullable=False, default="ONLINE")
    criticality = Column(_enum(ASSET_CRITICALITIES, "asset_criticality"), nullable=False, default="MEDIUM")
    barcode = Column(String(255))
    image_url = Column(String(500))
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    parent_id = Column(Integer, ForeignKey("assets.id"), nullable=True)


class Supplier(ImportTracked, Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    contact_info = Column(String(255))
    address = Column(String(500))
    phone = Column(String(100))
    email = Column(String(255))


class Part(ImportTracked, Base):
    __tablename__ = "parts"
    __table_args__ = (UniqueConstraint("organization_id", "sku", name="uq_parts_organization_sku"),)

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    sku = Column(String(255))
    stock_level = Column(Integer, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=False, default=0)
    unit_cost = Column(Float)
    total_cost = Column(Float)
    barcode = Column(String(255))
    location = Column(String(255))
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)


class MaintenanceTask(ImportTracked, Base):
    __tablename__ = "maintenance_tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    type = Column(_enum(TASK_TYPES, "maintenance_task_type"), nullable=False, default="OTHER")
    procedure = Column(Text)
    safety_requirements = Column(Text)
    tools_required = Column(Text)
    parts_required = Column(Text)
    estimated_minutes = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)


class MaintenanceSchedule(ImportTracked, Base):
    __tablename__ = "maintenance_schedules"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    frequency = Column(String(100), nullable=False)
    next_due = Column(DateTime(timezone=True))
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=True)


class WorkOrder(ImportTracked, Base):
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(Integer, nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(_enum(WORK_ORDER_STATUSES, "work_order_status"), nullable=False, default="OPEN")
    priority = Column(_enum(WORK_ORDER_PRIORITIES, "work_order_priority"), nullable=False, default="MEDIUM")
    due_date = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    estimated_hours = Column(Float)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    maintenance_schedule_id = Column(Integer, ForeignKey("maintenance_schedules.id"), nullable=True)


class ImportHistory(Base):
    """One audit entry per import run. Entries are never deleted."""
    __tablename__ = "import_history"

    id = Column(Integer, primary_key=True, index=True)
    import_id = Column(String(64), unique=True, nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    file_name = Column(String(500))
    total_rows = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, index=True)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)
    duplicates = Column(JSON, nullable=False, default=list)
    column_mappings = Column(JSON, nullable=False, default=list)
    derived_counts = Column(JSON, nullable=True)
    user_id = Column(Integer, nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    can_rollback = Column(Boolean, nullable=False, default=False)
    rolled_back = Column(Boolean, nullable=False, default=False)
    rolled_back_at = Column(DateTime(timezone=True))
    rolled_back_by_id = Column(Integer)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
