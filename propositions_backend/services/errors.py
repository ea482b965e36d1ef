"""Exception hierarchy shared by the sync core and the storage API."""

from typing import Any, Dict, Optional


class PropositionsError(Exception):
    """Base class for all application-level errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class BackendUnavailableError(PropositionsError):
    """A storage backend could not be read or written (I/O, permission, timeout)."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"[{backend}] {message}", {"backend": backend})
        self.backend = backend


class LegacyDataError(PropositionsError):
    """A legacy record could not be interpreted during migration."""


class ImportRejectedError(PropositionsError):
    """Pasted import content could not be turned into a subtopic."""

    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message, {"issues": list(issues or [])})
        self.issues = list(issues or [])


class EraNotFoundError(PropositionsError):
    def __init__(self, era_id: str):
        super().__init__(f"Era {era_id} not found.", {"era_id": era_id})
        self.era_id = era_id


class ArchivedEraError(PropositionsError):
    """Raised when a content mutation targets an archived era."""

    def __init__(self, era_id: str):
        super().__init__(f"Era {era_id} is archived and cannot be modified.", {"era_id": era_id})
        self.era_id = era_id
