"""Error taxonomy shared by the HTTP handlers.

Every error renders as ``{"error": {"code": ..., "message": ..., **extra}}`` so
programmatic callers can branch on ``code`` without parsing ``message``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(RuntimeError):
    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.headers = headers or {}
        self.extra = {k: v for k, v in extra.items() if v is not None}

    def to_body(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, **self.extra}}


class ValidationFailed(ServiceError):
    status_code = 400
    code = "validation_error"


class MissingToken(ServiceError):
    status_code = 400
    code = "missing_token"


class TokenExpired(ServiceError):
    status_code = 401
    code = "token_expired"


class AuthFailed(ServiceError):
    status_code = 401
    code = "invalid_api_key"


class RateLimited(ServiceError):
    status_code = 429
    code = "rate_limit_exceeded"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"


class MetaAPIError(ServiceError):
    """Meta rejected a request. ``meta_error`` is the remote error object."""

    status_code = 502
    code = "meta_api_error"

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        error: Optional[dict] = None,
        step: Optional[str] = None,
        **extra: Any,
    ):
        super().__init__(message, meta_error=error or {}, step=step, **extra)
        self.http_status = http_status
        self.error = error or {}
        self.step = step


class UpstreamError(ServiceError):
    status_code = 502
    code = "upstream_error"


class ParseFailure(ServiceError):
    status_code = 502
    code = "parse_error"


class InternalError(ServiceError):
    status_code = 500
    code = "internal_error"
