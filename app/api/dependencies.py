"""
Shared dependencies for the API routers.

Authentication happens upstream; requests arrive with the caller's
organization and user identifiers in headers.
"""
from typing import List

from fastapi import Header, HTTPException
from sqlalchemy.orm import sessionmaker

from app.api.schemas.imports import ColumnMappingModel
from app.db.session import get_session_local
from app.domain.imports.column_mapper import ColumnMapping


def get_tenant_id(x_organization_id: int = Header(..., description="Organization the request acts on")) -> int:
    if x_organization_id <= 0:
        raise HTTPException(status_code=400, detail="X-Organization-Id must be a positive integer")
    return x_organization_id


def get_acting_user_id(x_user_id: int = Header(..., description="User performing the request")) -> int:
    if x_user_id <= 0:
        raise HTTPException(status_code=400, detail="X-User-Id must be a positive integer")
    return x_user_id


def get_session_factory() -> sessionmaker:
    return get_session_local()


def to_column_mappings(models: List[ColumnMappingModel]) -> List[ColumnMapping]:
    return [ColumnMapping(**model.model_dump()) for model in models]


def detect_file_type(filename: str) -> str:
    """
    Detect file type from filename extension.

    Raises:
    - HTTPException: If the file is not a CSV upload
    """
    if (filename or "").lower().endswith('.csv'):
        return 'csv'
    raise HTTPException(status_code=400, detail="Unsupported file type; upload a .csv file")
