"""
Entity schema registry for bulk imports.

Each importable entity type is described by an ordered tuple of
``EntityFieldSpec`` entries. The registry is compiled in: column mapping,
validation, transformation and relationship resolution all read from it,
and nothing at runtime can add to it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

from app.domain.imports.errors import ConfigurationError

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    ASSETS = "assets"
    WORK_ORDERS = "work_orders"
    USERS = "users"
    LOCATIONS = "locations"
    PARTS = "parts"
    SUPPLIERS = "suppliers"
    MAINTENANCE_TASKS = "maintenance_tasks"
    MAINTENANCE_SCHEDULES = "maintenance_schedules"


class FieldType(str, Enum):
    STRING = "String"
    NUMBER = "Number"
    DATE = "Date"
    ENUM = "Enum"
    BOOLEAN = "Boolean"


# Enum domains shared with the ORM models.
ASSET_STATUSES = ("ONLINE", "OFFLINE")
ASSET_CRITICALITIES = ("LOW", "MEDIUM", "HIGH", "IMPORTANT")
WORK_ORDER_STATUSES = ("OPEN", "IN_PROGRESS", "ON_HOLD", "COMPLETED", "CANCELED")
WORK_ORDER_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
USER_ROLES = ("ADMIN", "MANAGER", "TECHNICIAN")
TASK_TYPES = (
    "INSPECTION", "CLEANING", "LUBRICATION", "REPLACEMENT",
    "CALIBRATION", "TESTING", "REPAIR", "OTHER",
)


@dataclass(frozen=True)
class Lookup:
    """A human readable reference that resolves to ``target_field`` on another entity."""
    target_field: str
    target_entity: EntityType


@dataclass(frozen=True)
class EntityFieldSpec:
    key: str
    label: str
    value_type: FieldType = FieldType.STRING
    required: bool = False
    enum_values: Tuple[str, ...] = ()
    default: Optional[str] = None
    lookup: Optional[Lookup] = None
    stored: bool = True  # False for source-only fields consumed by derivation
    clock_duration: bool = False  # Accepts "H:MM:SS" as well as decimal hours


@dataclass(frozen=True)
class EntitySchema:
    entity_type: EntityType
    label: str
    singular: str
    fields: Tuple[EntityFieldSpec, ...]

    def field(self, key: str) -> Optional[EntityFieldSpec]:
        for spec in self.fields:
            if spec.key == key:
                return spec
        return None

    @property
    def field_keys(self) -> List[str]:
        return [spec.key for spec in self.fields]

    @property
    def required_fields(self) -> List[EntityFieldSpec]:
        return [spec for spec in self.fields if spec.required]

    @property
    def lookup_fields(self) -> List[EntityFieldSpec]:
        return [spec for spec in self.fields if spec.lookup is not None]

    def lookup_for_target(self, target_field: str) -> Optional[EntityFieldSpec]:
        """Return the lookup field that resolves onto ``target_field``, if any."""
        for spec in self.lookup_fields:
            if spec.lookup.target_field == target_field:
                return spec
        return None


def _string(key: str, label: str, required: bool = False) -> EntityFieldSpec:
    return EntityFieldSpec(key=key, label=label, required=required)


def _number(key: str, label: str, **kwargs) -> EntityFieldSpec:
    return EntityFieldSpec(key=key, label=label, value_type=FieldType.NUMBER, **kwargs)


def _date(key: str, label: str) -> EntityFieldSpec:
    return EntityFieldSpec(key=key, label=label, value_type=FieldType.DATE)


def _enum(key: str, label: str, values: Tuple[str, ...], default: str) -> EntityFieldSpec:
    return EntityFieldSpec(
        key=key, label=label, value_type=FieldType.ENUM, enum_values=values, default=default
    )


def _lookup(key: str, label: str, target_field: str, target_entity: EntityType) -> EntityFieldSpec:
    return EntityFieldSpec(key=key, label=label, lookup=Lookup(target_field, target_entity))


ENTITY_SCHEMAS: Dict[EntityType, EntitySchema] = {
    EntityType.ASSETS: EntitySchema(
        EntityType.ASSETS, "Assets", "Asset",
        (
            _string("name", "Name", required=True),
            _string("description", "Description"),
            _string("serial_number", "Serial Number"),
            _string("model_number", "Model"),
            _string("manufacturer", "Manufacturer"),
            _number("year", "Year"),
            _enum("status", "Status", ASSET_STATUSES, "ONLINE"),
            _enum("criticality", "Criticality", ASSET_CRITICALITIES, "MEDIUM"),
            _string("barcode", "Barcode"),
            _string("image_url", "Thumbnail"),
            _lookup("location", "Location", "location_id", EntityType.LOCATIONS),
            _number("legacy_id", "ID"),
            _lookup("parent", "Parent", "parent_id", EntityType.ASSETS),
            _number("parent_id", "Parent ID"),
        ),
    ),
    EntityType.WORK_ORDERS: EntitySchema(
        EntityType.WORK_ORDERS, "Work Orders", "Work order",
        (
            _string("title", "Title", required=True),
            _string("description", "Description"),
            _enum("status", "Status", WORK_ORDER_STATUSES, "OPEN"),
            _enum("priority", "Priority", WORK_ORDER_PRIORITIES, "MEDIUM"),
            EntityFieldSpec(key="work_type", label="Work Type", stored=False),
            EntityFieldSpec(key="recurrence", label="Recurrence", stored=False),
            _lookup("asset_name", "Asset", "asset_id", EntityType.ASSETS),
            _lookup("assigned_to", "Assigned to", "assigned_to_id", EntityType.USERS),
            _number("estimated_hours", "Estimated Hours", clock_duration=True),
            _date("due_date", "Due Date"),
            _date("completed_at", "Completed On"),
            _number("legacy_id", "ID"),
        ),
    ),
    EntityType.USERS: EntitySchema(
        EntityType.USERS, "Users", "User",
        (
            _string("name", "Full Name", required=True),
            _string("email", "Email", required=True),
            _enum("role", "Role", USER_ROLES, "TECHNICIAN"),
            _number("legacy_id", "ID"),
        ),
    ),
    EntityType.LOCATIONS: EntitySchema(
        EntityType.LOCATIONS, "Locations", "Location",
        (
            _string("name", "Name", required=True),
            _string("description", "Description"),
            _string("address", "Address"),
            _lookup("parent", "Parent", "parent_id", EntityType.LOCATIONS),
            _number("parent_id", "Parent ID"),
            _number("legacy_id", "ID"),
            _string("barcode", "QR/Bar code"),
            _string("url", "URL"),
        ),
    ),
    EntityType.PARTS: EntitySchema(
        EntityType.PARTS, "Parts", "Part",
        (
            _string("name", "Name", required=True),
            _string("description", "Description"),
            _string("sku", "Part Numbers"),
            _number("stock_level", "Quantity in Stock"),
            _number("reorder_point", "Minimum Quantity"),
            _number("unit_cost", "Unit Cost"),
            _number("total_cost", "Total Cost"),
            _number("legacy_id", "ID"),
            _string("location", "Location"),
            _string("barcode", "Barcode"),
            _lookup("supplier", "Vendor", "supplier_id", EntityType.SUPPLIERS),
        ),
    ),
    EntityType.SUPPLIERS: EntitySchema(
        EntityType.SUPPLIERS, "Suppliers", "Supplier",
        (
            _string("name", "Vendor", required=True),
            _string("contact_info", "Contact Name"),
            _string("address", "Address"),
            _string("phone", "Phone Number"),
            _string("email", "Email"),
            _number("legacy_id", "ID"),
        ),
    ),
    EntityType.MAINTENANCE_TASKS: EntitySchema(
        EntityType.MAINTENANCE_TASKS, "Maintenance Tasks", "Maintenance task",
        (
            _string("title", "Title", required=True),
            _string("description", "Description"),
            _enum("type", "Type", TASK_TYPES, "OTHER"),
            _string("procedure", "Procedure"),
            _string("safety_requirements", "Safety Requirements"),
            _string("tools_required", "Tools Required"),
            _string("parts_required", "Parts Required"),
            _number("estimated_minutes", "Estimated Minutes"),
            EntityFieldSpec(key="is_active", label="Active", value_type=FieldType.BOOLEAN),
        ),
    ),
    EntityType.MAINTENANCE_SCHEDULES: EntitySchema(
        EntityType.MAINTENANCE_SCHEDULES, "Maintenance Schedules", "Maintenance schedule",
        (
            _string("title", "Title", required=True),
            _string("description", "Description"),
            _string("frequency", "Frequency", required=True),
            _date("next_due", "Next Due"),
            _lookup("asset_name", "Asset Name", "asset_id", EntityType.ASSETS),
            _lookup("location_name", "Location Name", "location_id", EntityType.LOCATIONS),
        ),
    ),
}


def parse_entity_type(value) -> EntityType:
    """
    Coerce a user supplied entity type key into an ``EntityType``.

    Raises:
        ConfigurationError: If the key does not name a registered entity type.
    """
    if isinstance(value, EntityType):
        return value
    try:
        return EntityType(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(entity.value for entity in EntityType)
        raise ConfigurationError(
            f"Unsupported entity type '{value}'. Supported types: {supported}"
        ) from None


def get_entity_schema(entity_type) -> EntitySchema:
    """Return the compiled-in schema for ``entity_type``."""
    entity = parse_entity_type(entity_type)
    schema = ENTITY_SCHEMAS.get(entity)
    if schema is None:
        raise ConfigurationError(f"No schema registered for entity type '{entity.value}'")
    return schema


def check_registry(schemas: Dict[EntityType, EntitySchema] = ENTITY_SCHEMAS) -> None:
    """
    Verify the structural rules every schema must follow.

    - field keys are unique within an entity
    - at most one lookup per entity resolves onto a given target field
    - lookups point at registered entity types
    - enum fields declare a non-empty domain that contains their default
    """
    for entity, schema in schemas.items():
        keys = [spec.key for spec in schema.fields]
        if len(keys) != len(set(keys)):
            raise ConfigurationError(f"Duplicate field keys in schema '{entity.value}'")

        targets = [spec.lookup.target_field for spec in schema.lookup_fields]
        if len(targets) != len(set(targets)):
            raise ConfigurationError(
                f"Schema '{entity.value}' declares more than one lookup for the same target field"
            )

        for spec in schema.lookup_fields:
            if spec.lookup.target_entity not in schemas:
                raise ConfigurationError(
                    f"Lookup '{spec.key}' on '{entity.value}' targets unknown entity "
                    f"'{spec.lookup.target_entity}'"
                )

        for spec in schema.fields:
            if spec.value_type == FieldType.ENUM:
                if not spec.enum_values:
                    raise ConfigurationError(f"Enum field '{entity.value}.{spec.key}' has no values")
                if spec.default is not None and spec.default not in spec.enum_values:
                    raise ConfigurationError(
                        f"Default '{spec.default}' of '{entity.value}.{spec.key}' is outside its domain"
                    )


def list_entity_configs() -> List[Dict]:
    """Describe every entity type and its fields for UI pickers."""
    configs = []
    for schema in ENTITY_SCHEMAS.values():
        configs.append({
            "value": schema.entity_type.value,
            "label": schema.label,
            "fields": [
                {
                    "key": spec.key,
                    "label": spec.label,
                    "required": spec.required,
                    "type": spec.value_type.value,
                    "enum_values": list(spec.enum_values) or None,
                    "lookup_entity": spec.lookup.target_entity.value if spec.lookup else None,
                }
                for spec in schema.fields
            ],
        })
    return configs


check_registry()
