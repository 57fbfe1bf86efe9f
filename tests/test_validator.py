"""
Tests for pre-flight validation.
"""
import pytest

from app.domain.imports.errors import ConfigurationError
from app.domain.imports.validator import validate_import
from tests.utils.builders import ACME_ID, mapping, mappings_for


class TestRequiredCoverage:

    def test_missing_required_mapping_is_invalid_regardless_of_rows(self):
        rows = [{"Name": "A. Lee", "Email": "a@x.com"}]
        result = validate_import(rows, mappings_for(name="Name"), "users", ACME_ID)

        assert result.valid is False
        assert "Missing required fields: Email" in result.errors

    def test_missing_required_mapping_with_no_rows(self):
        result = validate_import([], [mapping("Title", "")], "work_orders", ACME_ID)
        assert result.valid is False
        assert any("Title" in error for error in result.errors)

    def test_required_but_empty_cell(self):
        rows = [{"Name": "Ok", "Email": "ok@x.com"}, {"Name": "  ", "Email": "b@x.com"}]
        result = validate_import(rows, mappings_for(name="Name", email="Email"), "users", ACME_ID)

        assert result.valid is False
        assert result.errors == ["Row 2: Full Name is required but empty"]

    def test_valid_users_batch(self):
        rows = [{"Name": "A. Lee", "Email": "a@x.com", "Role": "manager"}]
        result = validate_import(rows, mappings_for(name="Name", email="Email", role="Role"), "users", ACME_ID)

        assert result.valid is True
        assert result.errors == []
        assert result.warnings == []


class TestCellTypes:

    def test_non_numeric_value_in_number_field(self):
        rows = [{"Name": "Pump", "Year": "nineteen"}]
        result = validate_import(rows, mappings_for(name="Name", year="Year"), "assets", ACME_ID)

        assert result.valid is False
        assert result.errors == ['Row 1: Year must be a number, got "nineteen"']

    def test_unparseable_date(self):
        rows = [{"Title": "Fix", "Due": "not a date"}]
        result = validate_import(rows, mappings_for(title="Title", due_date="Due"), "work_orders", ACME_ID)

        assert result.valid is False
        assert result.errors[0].startswith("Row 1: Due Date must be a valid date")

    def test_clock_duration_is_a_valid_number(self):
        rows = [{"Title": "Fix", "Hours": "1:30:00"}]
        result = validate_import(rows, mappings_for(title="Title", estimated_hours="Hours"), "work_orders", ACME_ID)
        assert result.valid is True

    def test_unknown_enum_value_is_only_a_warning(self):
        rows = [{"Title": "Fix", "Status": "Done"}]
        result = validate_import(rows, mappings_for(title="Title", status="Status"), "work_orders", ACME_ID)

        assert result.valid is True
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith('Row 1: Status value "Done" is not one of')

    def test_enum_matching_is_case_insensitive(self):
        rows = [{"Title": "Fix", "Status": "in progress"}]
        result = validate_import(rows, mappings_for(title="Title", status="Status"), "work_orders", ACME_ID)
        assert result.warnings == []


class TestMappingConflicts:

    def test_lookup_and_its_target_mapped_together_warns(self):
        rows = [{"Name": "Motor", "Parent": "Pump 1", "Parent ID": "7"}]
        mappings = mappings_for(name="Name", parent="Parent", parent_id="Parent ID")
        result = validate_import(rows, mappings, "assets", ACME_ID)

        assert result.valid is True
        assert len(result.warnings) == 1
        assert "Parent lookup takes precedence" in result.warnings[0]

    def test_ignored_target_column_is_not_type_checked(self):
        rows = [{"Name": "Motor", "Parent": "Pump 1", "Parent ID": "not-a-number"}]
        mappings = mappings_for(name="Name", parent="Parent", parent_id="Parent ID")
        assert validate_import(rows, mappings, "assets", ACME_ID).valid is True

    def test_field_mapped_twice_warns(self):
        rows = [{"Name": "A", "Full Name": "B", "Email": "a@x.com"}]
        mappings = [mapping("Name", "name"), mapping("Full Name", "name"), mapping("Email", "email")]
        result = validate_import(rows, mappings, "users", ACME_ID)

        assert result.valid is True
        assert any('"Name" is used' in warning for warning in result.warnings)

    def test_mapping_to_unknown_field_is_an_error(self):
        rows = [{"Name": "A", "Email": "a@x.com", "Shoe": "42"}]
        mappings = mappings_for(name="Name", email="Email") + [mapping("Shoe", "shoe_size")]
        result = validate_import(rows, mappings, "users", ACME_ID)

        assert result.valid is False
        assert 'Column "Shoe" is mapped to unknown field "shoe_size"' in result.errors


def test_unknown_entity_type_raises():
    with pytest.raises(ConfigurationError):
        validate_import([], [], "widgets", ACME_ID)
