"""
Downloadable CSV templates for each importable entity type.
"""
from datetime import date
from io import StringIO
from typing import List, Optional
import csv

from app.domain.imports.registry import EntityFieldSpec, FieldType, get_entity_schema


def example_value(spec: EntityFieldSpec, today: Optional[date] = None) -> str:
    """Illustrative cell value for ``spec`` used in the template's example row."""
    if spec.value_type == FieldType.NUMBER:
        return "123"
    if spec.value_type == FieldType.DATE:
        return (today or date.today()).isoformat()
    if spec.value_type == FieldType.ENUM:
        return spec.enum_values[0]
    if spec.value_type == FieldType.BOOLEAN:
        return "true"
    return f"Example {spec.label}"


def build_template_rows(entity_type, today: Optional[date] = None) -> List[List[str]]:
    schema = get_entity_schema(entity_type)
    header = [spec.label for spec in schema.fields]
    example = [example_value(spec, today) for spec in schema.fields]
    return [header, example]


def build_template(entity_type, today: Optional[date] = None) -> str:
    """
    Render the CSV template for ``entity_type``: a header row of field labels
    followed by one example row.
    """
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(build_template_rows(entity_type, today))
    return buffer.getvalue()
