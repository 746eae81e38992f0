"""
Error taxonomy shared by the catalog and enquiry services.

Every error carries a human-readable message and optional details; the HTTP
layer maps each class to a status code and renders
``{"success": false, "error": ..., "details": ...}``.
"""
from typing import Any, Optional


class CatalogError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CatalogError):
    status_code = 400


class NotFound(CatalogError):
    status_code = 404


class Conflict(CatalogError):
    status_code = 400


class SlugConflict(Conflict):
    pass


class IdGenFailure(Conflict):
    status_code = 500


class Transient(CatalogError):
    """Connection lost or server selection timed out; the caller may retry."""
    status_code = 500


class Fatal(CatalogError):
    """Misconfigured environment."""
    status_code = 500
