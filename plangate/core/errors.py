"""Application errors and the JSON error contract rendered for them."""

from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from plangate.core.logging import get_request_id, log_event


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def payload(self) -> dict:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class QuotaExceededError(AppError):
    """A usage gate refused the operation.

    Carries the name of the limit plus the current and allowed values so the
    client can render a useful message without parsing text.
    """
    code = "quota_exceeded"
    status_code = 403
    limit_name = "quota"

    def __init__(
        self,
        message: str,
        *,
        current: Optional[int] = None,
        allowed: Optional[int] = None,
        limit_name: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.current = current
        self.allowed = allowed
        if limit_name:
            self.limit_name = limit_name

    def payload(self) -> dict:
        return {"limit": self.limit_name, "current": self.current, "allowed": self.allowed}


class LifetimeCreditsExceededError(QuotaExceededError):
    code = "deployment_credits_exhausted"
    limit_name = "deployments.lifetime"


class MonthlyDeploymentLimitError(QuotaExceededError):
    code = "monthly_deployment_limit"
    limit_name = "deployments.monthly"


class ProjectLimitError(QuotaExceededError):
    code = "project_limit"
    limit_name = "projects.max"


class DowngradeBlockedError(QuotaExceededError):
    code = "downgrade_blocked"
    status_code = 400
    limit_name = "downgrade"


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    details: Optional[dict] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """The single error body shape: {"error": {...}, "detail": message}."""
    rid = request_id or _request_id(request)
    error = {"code": code, "message": message, "request_id": rid, **(details or {})}
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = rid
    return response


def _log_level(exc: AppError) -> str:
    if exc.status_code >= 500:
        return "error"
    # A refused quota is an expected outcome, not a client mistake
    if isinstance(exc, QuotaExceededError):
        return "info"
    return "warning"


async def app_error_handler(request: Request, exc: AppError):
    log_event(
        _log_level(exc),
        f"[http] {exc.code}: {exc.message}",
        request_id=exc.request_id,
        account_id=request.headers.get("x-user-id"),
        error_code=exc.code,
        extra={"status": exc.status_code, "path": request.url.path},
    )
    return error_response(
        request, exc.status_code, exc.code, exc.message, details=exc.payload(), request_id=exc.request_id
    )


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    log_event("warning", f"[http] {code}", error_code=code, extra={"status": exc.status_code, "path": request.url.path})
    return error_response(request, exc.status_code, code, exc.detail or "HTTP error")


async def provider_error_handler(request: Request, exc: Exception):
    """Payment provider failures surface as 502; retrying is left to the client."""
    provider_code = getattr(exc, "code", None) or "provider_error"
    log_event(
        "error",
        f"[http] provider call failed: {exc}",
        account_id=request.headers.get("x-user-id"),
        error_code=provider_code,
        extra={"provider_status": getattr(exc, "status", None), "path": request.url.path},
    )
    return error_response(
        request, 502, "provider_error", "Payment provider request failed", details={"provider_code": provider_code}
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event("error", "[http] unhandled exception", error_code="internal_error", extra={"path": request.url.path}, exc_info=True)
    return error_response(request, 500, "internal_error", "Unexpected error")
