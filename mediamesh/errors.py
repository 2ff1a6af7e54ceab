"""Error taxonomy shared by the catalog and list services."""

from __future__ import annotations


class MediaMeshError(Exception):
    """Base class for failures surfaced to callers of the core services."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.code, "description": self.message}


class NotFound(MediaMeshError):
    code = "not_found"


class PermissionDenied(MediaMeshError):
    code = "permission_denied"


class InvalidState(MediaMeshError):
    code = "invalid_state"


class IdentityInsufficient(MediaMeshError):
    code = "identity_insufficient"


class IdentityAmbiguous(MediaMeshError):
    code = "identity_ambiguous"


class Conflict(MediaMeshError):
    """Raised when a list changed between read and write; callers may retry."""

    code = "conflict"


class StorageError(MediaMeshError):
    """Unexpected repository failure; callers should treat it as retryable."""

    code = "storage_error"
