"""
Exception hierarchy for ProcureDesk services.

Services raise these; the handlers in app/main.py render them as
{"success": false, "error": message} with the matching status code.

Hierarchy:
    ProcureDeskError (500)
    ├── ValidationError (400)
    ├── AuthenticationError (401)
    ├── AuthorizationError (403)
    ├── ResourceNotFoundError (404)
    ├── ConflictError (409)
    └── ExternalServiceError (500, upstream message attached)
"""

from typing import Any


class ProcureDeskError(Exception):
    status_code = 500

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": False, "error": self.message}
        if self.detail:
            result["detail"] = self.detail
        return result


class ValidationError(ProcureDeskError):
    status_code = 400


class AuthenticationError(ProcureDeskError):
    status_code = 401


class AuthorizationError(ProcureDeskError):
    status_code = 403


class ResourceNotFoundError(ProcureDeskError):
    status_code = 404


class ConflictError(ProcureDeskError):
    status_code = 409


class ExternalServiceError(ProcureDeskError):
    """An upstream API (gateway, LLM, search) failed and there is no fallback."""

    def __init__(self, service: str, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(f"{service}: {message}", detail=detail)
        self.service = service
