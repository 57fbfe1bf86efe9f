"""
Tests for value coercion and normalization.
"""
from datetime import datetime, timezone

import pytest

from app.domain.imports.registry import EntityType, get_entity_schema
from app.domain.imports.transformer import (
    CoercionError,
    coerce_value,
    normalize_enum,
    parse_duration_hours,
    parse_number,
    transform_rows,
)
from app.domain.imports.values import BoolValue, DateValue, EnumValue, NumberValue, StringValue
from tests.utils.builders import mappings_for


@pytest.mark.parametrize("raw,expected", [
    ("1:30:00", 1.5),
    ("0:45", 0.75),
    ("2:00:36", 2.01),
    ("2.25", 2.25),
    ("3", 3.0),
])
def test_parse_duration_hours(raw, expected):
    assert parse_duration_hours(raw) == pytest.approx(expected)


def test_parse_duration_rejects_bad_clock():
    with pytest.raises(CoercionError):
        parse_duration_hours("1:75:00")


@pytest.mark.parametrize("raw,expected", [
    ("42", 42),
    ("1,250", 1250),
    ("$19.99", 19.99),
    (" 7.0 ", 7),
])
def test_parse_number(raw, expected):
    value = parse_number(raw)
    assert value == expected
    assert type(value) is type(expected)


@pytest.mark.parametrize("raw", ["abc", "nan", "", "1.2.3"])
def test_parse_number_rejects_garbage(raw):
    with pytest.raises(CoercionError):
        parse_number(raw)


class TestEnumNormalization:

    @pytest.mark.parametrize("raw,expected", [
        ("completed", "COMPLETED"),
        ("In Progress", "IN_PROGRESS"),
        ("on-hold", "ON_HOLD"),
        ("DONE", "COMPLETED"),
        ("Complete", "COMPLETED"),
        ("approved", "OPEN"),
        ("Pending", "OPEN"),
        ("rejected", "CANCELED"),
        ("gibberish", "OPEN"),
    ])
    def test_work_order_status(self, raw, expected):
        spec = get_entity_schema(EntityType.WORK_ORDERS).field("status")
        assert normalize_enum(raw, spec, EntityType.WORK_ORDERS)[0] == expected

    def test_priority_none_folds_to_low(self):
        spec = get_entity_schema(EntityType.WORK_ORDERS).field("priority")
        assert normalize_enum("None", spec, EntityType.WORK_ORDERS) == ("LOW", True)

    def test_unknown_value_falls_back_to_default(self):
        spec = get_entity_schema(EntityType.ASSETS).field("criticality")
        assert normalize_enum("extreme", spec, EntityType.ASSETS) == ("MEDIUM", False)


class TestCoerceValue:

    def test_boolean_tokens(self):
        spec = get_entity_schema(EntityType.MAINTENANCE_TASKS).field("is_active")
        for token in ("true", "1", "YES", "on"):
            assert coerce_value(token, spec, EntityType.MAINTENANCE_TASKS) == BoolValue(True)
        for token in ("false", "0", "no", "maybe"):
            assert coerce_value(token, spec, EntityType.MAINTENANCE_TASKS) == BoolValue(False)

    def test_date_becomes_aware_datetime(self):
        spec = get_entity_schema(EntityType.WORK_ORDERS).field("due_date")
        value = coerce_value("2024-03-15", spec, EntityType.WORK_ORDERS)
        assert isinstance(value, DateValue)
        assert value.value == datetime(2024, 3, 15, tzinfo=timezone.utc)

    def test_day_first_date_is_detected(self):
        spec = get_entity_schema(EntityType.WORK_ORDERS).field("due_date")
        value = coerce_value("25/12/2024", spec, EntityType.WORK_ORDERS)
        assert (value.value.year, value.value.month, value.value.day) == (2024, 12, 25)

    def test_strings_are_trimmed(self):
        spec = get_entity_schema(EntityType.USERS).field("name")
        assert coerce_value("  A. Lee ", spec, EntityType.USERS) == StringValue("A. Lee")


class TestTransformRows:

    def test_users_example(self):
        rows = [{"Name": "A. Lee", "Email": "a@x.com", "Role": "manager"}]
        result = transform_rows(rows, mappings_for(name="Name", email="Email", role="Role"), "users")

        assert result.errors == []
        record = result.records[0]
        assert record.row_number == 1
        assert record.values == {
            "name": StringValue("A. Lee"),
            "email": StringValue("a@x.com"),
            "role": EnumValue("MANAGER"),
        }

    def test_estimated_hours_clock_duration(self):
        rows = [{"Title": "Fix pump", "Time": "1:30:00"}]
        result = transform_rows(rows, mappings_for(title="Title", estimated_hours="Time"), "work_orders")
        assert result.records[0].values["estimated_hours"] == NumberValue(1.5)

    def test_blank_cells_are_omitted(self):
        rows = [{"Name": "Pump", "Year": ""}]
        result = transform_rows(rows, mappings_for(name="Name", year="Year"), "assets")
        assert "year" not in result.records[0].values

    def test_failed_cell_skips_the_row_with_message(self):
        rows = [{"Name": "Good", "Year": "2001"}, {"Name": "Bad", "Year": "old"}]
        result = transform_rows(rows, mappings_for(name="Name", year="Year"), "assets")

        assert [record.row_number for record in result.records] == [1]
        assert result.errors == ['Row 2: Year must be a number, got "old"']

    def test_lookup_wins_over_direct_target_column(self):
        rows = [{"Name": "Motor", "Parent": "Pump 1", "Parent ID": "99"}]
        mappings = mappings_for(name="Name", parent="Parent", parent_id="Parent ID")
        record = transform_rows(rows, mappings, "assets").records[0]

        assert record.values["parent"] == StringValue("Pump 1")
        assert "parent_id" not in record.values

    def test_direct_target_used_when_lookup_unmapped(self):
        rows = [{"Name": "Motor", "Parent ID": "99"}]
        record = transform_rows(rows, mappings_for(name="Name", parent_id="Parent ID"), "assets").records[0]
        assert record.values["parent_id"] == NumberValue(99)
