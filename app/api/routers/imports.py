"""
Bulk import endpoints: entity catalogue, templates, upload analysis,
pre-flight validation, execution, history and rollback.
"""
import logging
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import sessionmaker

from app.api.dependencies import (
    detect_file_type,
    get_acting_user_id,
    get_session_factory,
    get_tenant_id,
    to_column_mappings,
)
from app.api.schemas.imports import (
    AnalyzeFileResponse,
    ColumnMappingModel,
    EntityConfigsResponse,
    ImportHistoryListResponse,
    ImportHistoryRecord,
    ImportRequest,
    ImportResultResponse,
    PreflightResponse,
    RollbackResponse,
    ValidationReport,
)
from app.core.config import settings
from app.domain.imports.column_mapper import infer_mapping
from app.domain.imports.errors import (
    ConfigurationError,
    ImportPipelineError,
    OrchestrationError,
    RollbackError,
    UnknownActorError,
    ValidationError,
)
from app.domain.imports.history import get_import_history, rollback_import
from app.domain.imports.orchestrator import execute_import, run_preflight
from app.domain.imports.processors.csv_processor import UploadParseError, process_csv
from app.domain.imports.registry import list_entity_configs, parse_entity_type
from app.domain.imports.templates import build_template

router = APIRouter(prefix="/imports", tags=["imports"])

logger = logging.getLogger(__name__)


def _to_http_error(exc: ImportPipelineError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=400,
            detail={"message": exc.message, "errors": exc.errors, "warnings": exc.warnings},
        )
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, UnknownActorError):
        return HTTPException(status_code=403, detail=exc.message)
    if isinstance(exc, RollbackError):
        status_code = 404 if exc.reason == RollbackError.NOT_FOUND else 409
        return HTTPException(status_code=status_code, detail=exc.message)
    if isinstance(exc, OrchestrationError):
        return HTTPException(
            status_code=500,
            detail={"message": exc.message, "import_id": exc.import_id},
        )
    return HTTPException(status_code=500, detail=exc.message)


@router.get("/entity-configs", response_model=EntityConfigsResponse)
async def get_entity_configs():
    """List importable entity types and their fields."""
    return EntityConfigsResponse(entity_types=list_entity_configs())


@router.get("/template/{entity_type}")
async def download_template(entity_type: str):
    """Download a CSV template (header row plus one example row) for an entity type."""
    try:
        entity = parse_entity_type(entity_type)
        content = build_template(entity)
    except ConfigurationError as e:
        raise _to_http_error(e)

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{entity.value}_template.csv"'},
    )


@router.post("/analyze", response_model=AnalyzeFileResponse)
async def analyze_upload(
    file: UploadFile = File(...),
    entity_type: str = Form(...),
    tenant_id: int = Depends(get_tenant_id),
):
    """
    Parse an uploaded CSV and suggest column mappings.

    Returns headers, suggested mappings, a preview of the first rows and
    the total row count. Nothing is written.
    """
    detect_file_type(file.filename)
    file_content = await file.read()
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(file_content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.upload_max_file_size_mb}MB upload limit",
        )

    try:
        entity = parse_entity_type(entity_type)
        headers, rows = process_csv(file_content)
        mappings = infer_mapping(headers, entity)
    except ConfigurationError as e:
        raise _to_http_error(e)
    except UploadParseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "Analyzed upload '%s' for organization %s as %s (%d rows)",
        file.filename, tenant_id, entity.value, len(rows),
    )
    return AnalyzeFileResponse(
        entity_type=entity.value,
        headers=headers,
        column_mappings=[ColumnMappingModel(**vars(mapping)) for mapping in mappings],
        preview=rows[:settings.import_preview_rows],
        total_rows=len(rows),
    )


@router.post("/validate", response_model=PreflightResponse)
def validate_import_request(
    request: ImportRequest,
    tenant_id: int = Depends(get_tenant_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Run validation and duplicate/conflict checks without writing anything."""
    try:
        report = run_preflight(
            request.rows,
            to_column_mappings(request.column_mappings),
            request.entity_type,
            tenant_id,
            session_factory=session_factory,
        )
    except ImportPipelineError as e:
        raise _to_http_error(e)

    return PreflightResponse(
        validation=ValidationReport(
            valid=report.validation.valid,
            errors=report.validation.errors,
            warnings=report.validation.warnings,
        ),
        duplicates=report.duplicates,
        conflicts=report.conflicts,
        can_proceed=report.can_proceed,
    )


@router.post("/execute", response_model=ImportResultResponse)
def execute_import_request(
    request: ImportRequest,
    tenant_id: int = Depends(get_tenant_id),
    acting_user_id: int = Depends(get_acting_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    Commit an import.

    Rows that fail are skipped and reported individually; the response
    always separates imported from skipped counts.
    """
    try:
        result = execute_import(
            request.entity_type,
            to_column_mappings(request.column_mappings),
            request.rows,
            acting_user_id,
            tenant_id,
            file_name=request.file_name,
            session_factory=session_factory,
        )
    except ImportPipelineError as e:
        raise _to_http_error(e)

    return ImportResultResponse(**vars(result))


@router.get("/history", response_model=ImportHistoryListResponse)
def list_import_history(
    limit: int = 50,
    offset: int = 0,
    tenant_id: int = Depends(get_tenant_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    List import runs for the caller's organization, newest first.

    Parameters:
    - limit: Maximum number of records to return (1-200, default: 50)
    - offset: Number of records to skip for pagination (default: 0)
    """
    records = get_import_history(tenant_id, limit=limit, offset=offset, session_factory=session_factory)
    imports = [ImportHistoryRecord(**record) for record in records]
    return ImportHistoryListResponse(
        imports=imports,
        total_count=len(imports),
        limit=limit,
        offset=offset,
    )


@router.post("/{import_id}/rollback", response_model=RollbackResponse)
def rollback_import_request(
    import_id: str,
    tenant_id: int = Depends(get_tenant_id),
    acting_user_id: int = Depends(get_acting_user_id),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Delete the records created by an import and mark it rolled back."""
    try:
        result = rollback_import(import_id, acting_user_id, tenant_id, session_factory=session_factory)
    except RollbackError as e:
        raise _to_http_error(e)

    return RollbackResponse(
        success=result.success,
        deleted_count=result.deleted_count,
        message=result.message,
    )
