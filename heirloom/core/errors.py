"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.requests import Request

from heirloom.core.logging import get_request_id

logger = logging.getLogger("heirloom")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.extra = extra or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnknownPlanError(ValidationError):
    code = "unknown_plan"


class UnknownFeatureError(ValidationError):
    code = "unknown_feature"


class InvalidQuotaError(ValidationError):
    code = "invalid_quota"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class NoActiveSubscriptionError(NotFoundError):
    """Lifecycle precondition failed: the user has no active subscription."""
    code = "no_active_subscription"


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class FeatureAccessDenied(AppError):
    """Admission denied for a gated feature.

    `reason` is one of subscription_required / limit_reached and is part of
    the public error contract.
    """
    code = "feature_access_denied"
    status_code = 403

    def __init__(self, message: str, *, reason: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.extra.setdefault("reason", reason)


class DowngradeBlockedError(AppError):
    code = "downgrade_blocked"
    status_code = 403

    def __init__(self, message: str, *, overages: list, **kwargs):
        super().__init__(message, **kwargs)
        self.overages = overages
        self.extra.setdefault("reason", "downgrade_blocked")
        self.extra.setdefault("blockedFeatures", overages)


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class WebhookSignatureError(ValidationError):
    code = "webhook_signature_invalid"


class WebhookDispatchError(AppError):
    """A verified event could not be applied; 5xx so Stripe redelivers it."""
    code = "webhook_dispatch_failed"
    status_code = 500


def _request_id_for(request: Request, exc: Optional[AppError] = None) -> str:
    return (
        (exc.request_id if exc is not None else None)
        or getattr(request.state, "request_id", None)
        or get_request_id()
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    payload = {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }
    payload.update(extra or {})
    return payload


def _respond(status_code: int, payload: dict, request_id: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload, headers={"x-request-id": request_id})


async def app_error_handler(request: Request, exc: AppError):
    rid = _request_id_for(request, exc)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(exc.status_code, _error_payload(exc.code, exc.message, rid, exc.extra), rid)


async def downgrade_blocked_handler(request: Request, exc: DowngradeBlockedError):
    """Blocked downgrades keep the client-facing shape the plan page expects."""
    rid = _request_id_for(request, exc)
    logger.warning("downgrade.blocked", extra={"request_id": rid, "error_code": exc.code})
    return _respond(
        exc.status_code,
        {
            "error": "Downgrade not allowed",
            "code": exc.code,
            "reason": "downgrade_blocked",
            "message": exc.message,
            "detail": exc.message,
            "blockedFeatures": exc.overages,
            "needsCleanup": True,
            "request_id": rid,
        },
        rid,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    message = "Invalid request: " + ", ".join(fields) if fields else "Invalid request"
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error"})
    return _respond(400, _error_payload("validation_error", message, rid), rid)


async def provider_error_handler(request: Request, exc: Exception):
    """Payment provider failures surface as 502 with a redacted message."""
    rid = _request_id_for(request)
    logger.error("provider.error", extra={"request_id": rid, "error_code": "provider_error", "error_message": str(exc)})
    return _respond(502, _error_payload("provider_error", "Payment provider request failed", rid), rid)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    rid = _request_id_for(request)
    logger.warning("db.conflict", extra={"request_id": rid, "error_code": "conflict"})
    return _respond(409, _error_payload("conflict", "Resource conflicts with existing state", rid), rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = {401: "unauthorized", 404: "not_found"}.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, _error_payload(code, exc.detail or "HTTP error", rid), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(500, _error_payload("internal_error", "Unexpected error", rid), rid)
