# Overview: Shared domain errors that routes map onto 404/403 responses.


class NotFoundError(LookupError):
    """Requested record does not exist (404)."""


class ForbiddenError(PermissionError):
    """Record exists but belongs to somebody else (403)."""
