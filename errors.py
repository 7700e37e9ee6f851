"""
Document service exception hierarchy

Each error carries the HTTP status it maps to at the API boundary.
"""
from typing import Optional


class DocumentError(Exception):
    """
    Base class for errors reported to callers of the document service

    Attributes:
        message: Human-readable error message
        status_code: HTTP status used when the error reaches the API layer
        document_id: Document the error refers to, if any
    """

    status_code = 500

    def __init__(self, message: str, document_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.document_id = document_id

    def __str__(self):
        return self.message


class ValidationError(DocumentError):
    """Malformed or out-of-range change, or a missing query. Nothing was mutated."""

    status_code = 400


class NotFoundError(DocumentError):
    """The document does not exist."""

    status_code = 404


class ConflictError(DocumentError):
    """
    The document exists but cannot be edited as requested

    Raised when the document has no editable text body (re-upload or
    re-extract instead of re-checking the id).
    """

    status_code = 409


class VersionConflictError(ConflictError):
    """The stored version differs from the version the caller read."""

    def __init__(self, document_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"version mismatch: expected {expected_version}, found {actual_version}",
            document_id=document_id
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class ExtractionError(DocumentError):
    """Text could not be extracted from an uploaded file."""

    status_code = 422


class PayloadTooLargeError(DocumentError):
    """An uploaded file exceeds the configured size limit."""

    status_code = 413
