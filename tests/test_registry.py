"""
Tests for the entity schema registry.
"""
import pytest

from app.domain.imports.errors import ConfigurationError
from app.domain.imports.registry import (
    ENTITY_SCHEMAS,
    EntityFieldSpec,
    EntitySchema,
    EntityType,
    FieldType,
    Lookup,
    check_registry,
    get_entity_schema,
    list_entity_configs,
    parse_entity_type,
)


class TestEntitySchemaRegistry:
    """Structural guarantees of the compiled-in schemas."""

    def test_every_entity_type_is_registered(self):
        assert set(ENTITY_SCHEMAS) == set(EntityType)

    def test_registry_passes_its_own_checks(self):
        check_registry()

    @pytest.mark.parametrize("entity_type", list(EntityType))
    def test_lookup_targets_are_unique_per_entity(self, entity_type):
        schema = get_entity_schema(entity_type)
        targets = [spec.lookup.target_field for spec in schema.lookup_fields]
        assert len(targets) == len(set(targets))

    def test_lookup_for_target_returns_the_lookup_field(self):
        schema = get_entity_schema(EntityType.ASSETS)
        assert schema.lookup_for_target("parent_id").key == "parent"
        assert schema.lookup_for_target("location_id").key == "location"
        assert schema.lookup_for_target("name") is None

    def test_duplicate_lookup_target_is_rejected(self):
        broken = EntitySchema(
            EntityType.ASSETS, "Assets", "Asset",
            (
                EntityFieldSpec("name", "Name", required=True),
                EntityFieldSpec("parent", "Parent", lookup=Lookup("parent_id", EntityType.ASSETS)),
                EntityFieldSpec("parent_code", "Parent Code", lookup=Lookup("parent_id", EntityType.ASSETS)),
            ),
        )
        with pytest.raises(ConfigurationError):
            check_registry({EntityType.ASSETS: broken})

    def test_enum_default_outside_domain_is_rejected(self):
        broken = EntitySchema(
            EntityType.USERS, "Users", "User",
            (EntityFieldSpec("role", "Role", FieldType.ENUM, enum_values=("A", "B"), default="C"),),
        )
        with pytest.raises(ConfigurationError):
            check_registry({EntityType.USERS: broken})


class TestEntityTypeParsing:

    @pytest.mark.parametrize("raw", ["users", "USERS", " users ", EntityType.USERS])
    def test_accepts_known_types(self, raw):
        assert parse_entity_type(raw) is EntityType.USERS

    def test_unknown_type_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            get_entity_schema("spaceships")
        assert "spaceships" in exc_info.value.message

    def test_entity_configs_describe_fields(self):
        configs = {config["value"]: config for config in list_entity_configs()}
        assert set(configs) == {entity.value for entity in EntityType}

        user_fields = {field["key"]: field for field in configs["users"]["fields"]}
        assert user_fields["email"]["required"] is True
        assert user_fields["role"]["enum_values"] == ["ADMIN", "MANAGER", "TECHNICIAN"]

        work_order_fields = {field["key"]: field for field in configs["work_orders"]["fields"]}
        assert work_order_fields["asset_name"]["lookup_entity"] == "assets"
