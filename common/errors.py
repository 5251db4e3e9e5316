"""
Every JSON API failure renders as
    {"ok": false, "error": {"code": ..., "message": ..., "details": {...}}}
with `details` present only when there is something to add.
"""
from typing import Any, Dict, Optional
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 400
    code = "api_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code or self.status_code
        self.code = code or self.code
        self.message = message or self.code.replace("_", " ").capitalize()
        self.details = details or {}

    @classmethod
    def from_http(cls, exc: HTTPException) -> "ApiError":
        """Wrap a werkzeug error (routing 404, 405, limiter 429, CSRF 400)."""
        name = exc.name or "Error"
        return cls(exc.description or name, status_code=exc.code or 500,
                   code=name.lower().replace(" ", "_"))

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"ok": False, "error": error}


class BadRequest(ApiError):
    code = "bad_request"


class Unauthorized(ApiError):
    # Vapi webhook secret mismatch; JWT failures are rendered by auth.utils
    status_code, code = 401, "unauthorized"


class NotFound(ApiError):
    status_code, code = 404, "not_found"


class Unprocessable(ApiError):
    status_code, code = 422, "validation_error"


class CallsNotAllowed(ApiError):
    """
    Eligibility denial. Not a technical failure: the user has to act
    (pay an invoice, fix the subscription) before calling again.
    `details` carries the eligibility snapshot the dashboard renders.
    """
    status_code, code = 403, "calls_not_allowed"

    def __init__(self, eligibility):
        super().__init__(eligibility.reason or "Calls not allowed", details=eligibility.to_dict())
        self.eligibility = eligibility
