"""
Exception taxonomy for the import pipeline.

Validation problems and conflict warnings found during pre-flight are
returned as lists of messages rather than raised; the classes below mark
the points where a run is refused, a row is skipped or a run is aborted.
"""
from typing import List, Optional


class ImportPipelineError(Exception):
    """Base class for every error raised by the import pipeline."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ImportPipelineError):
    """Unknown entity type or an inconsistent schema registry."""


class ValidationError(ImportPipelineError):
    """Pre-flight validation failed; nothing was written."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        summary = f"Validation failed with {len(self.errors)} error(s)"
        if self.errors:
            summary = f"{summary}: {self.errors[0]}"
        super().__init__(summary)


class UnknownActorError(ImportPipelineError):
    """The acting user does not belong to the tenant."""


class RowExecutionError(ImportPipelineError):
    """A single record could not be written; the rest of the batch continues."""

    def __init__(self, row_number: int, message: str, is_duplicate: bool = False):
        self.row_number = row_number
        self.is_duplicate = is_duplicate
        super().__init__(message)


class OrchestrationError(ImportPipelineError):
    """Batch setup, timeout or preload failure that aborts the whole run."""

    def __init__(self, message: str, import_id: Optional[str] = None):
        self.import_id = import_id
        super().__init__(message)


class RollbackError(ImportPipelineError):
    """A rollback was refused or failed."""

    NOT_FOUND = "not_found"
    NOT_ALLOWED = "not_allowed"
    FAILED = "failed"

    def __init__(self, message: str, reason: str = FAILED):
        self.reason = reason
        super().__init__(message)
