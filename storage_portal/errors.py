from __future__ import annotations


class Unauthorized(PermissionError):
    status_code = 401


class Forbidden(PermissionError):
    status_code = 403


class NotFound(LookupError):
    status_code = 404


class PreconditionFailed(ValueError):
    """Wrong source status for a transition, or a missing/invalid input."""

    status_code = 400


class InsufficientQuantity(PreconditionFailed):
    pass


def status_code_for(exc: Exception) -> int:
    return getattr(exc, 'status_code', 500)
