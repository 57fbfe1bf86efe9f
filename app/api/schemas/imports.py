from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ColumnMappingModel(BaseModel):
    """One source column and the registry field it feeds (empty when unmapped)."""
    source_column: str
    target_field: str = ""
    confidence: int = Field(default=0, ge=0, le=100)
    required: bool = False

    @field_validator("target_field", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


class EntityFieldModel(BaseModel):
    key: str
    label: str
    required: bool
    type: str
    enum_values: Optional[List[str]] = None
    lookup_entity: Optional[str] = None


class EntityConfigModel(BaseModel):
    value: str
    label: str
    fields: List[EntityFieldModel]


class EntityConfigsResponse(BaseModel):
    success: bool = True
    entity_types: List[EntityConfigModel]


class AnalyzeFileResponse(BaseModel):
    success: bool = True
    entity_type: str
    headers: List[str]
    column_mappings: List[ColumnMappingModel]
    preview: List[Dict[str, Any]]
    total_rows: int


class ImportRequest(BaseModel):
    """Rows and finalized mappings submitted for validation or execution."""
    entity_type: str
    column_mappings: List[ColumnMappingModel]
    rows: List[Dict[str, Any]]
    file_name: Optional[str] = None


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class PreflightResponse(BaseModel):
    success: bool = True
    validation: ValidationReport
    duplicates: List[str] = []
    conflicts: List[str] = []
    can_proceed: bool


class ImportResultResponse(BaseModel):
    success: bool
    import_id: str
    status: str
    imported_count: int
    skipped_count: int
    errors: List[str] = []
    duplicates: List[str] = []
    warnings: List[str] = []
    derived: Dict[str, int] = {}
    duration_ms: Optional[int] = None


class ImportHistoryRecord(BaseModel):
    import_id: str
    entity_type: str
    file_name: Optional[str] = None
    total_rows: int
    imported_count: int
    skipped_count: int
    status: str
    errors: List[str] = []
    warnings: List[str] = []
    duplicates: List[str] = []
    column_mappings: List[Dict[str, Any]] = []
    derived_counts: Optional[Dict[str, int]] = None
    user_id: int
    organization_id: int
    can_rollback: bool
    rolled_back: bool
    rolled_back_at: Optional[datetime] = None
    rolled_back_by_id: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None


class ImportHistoryListResponse(BaseModel):
    success: bool = True
    imports: List[ImportHistoryRecord]
    total_count: int
    limit: int
    offset: int


class RollbackResponse(BaseModel):
    success: bool
    deleted_count: int
    message: str
