"""Typed error taxonomy shared by the billing services and views."""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base error for billing engine operations."""

    code = "billing_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.code
        self.context: Dict[str, Any] = dict(context or {})

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationError(BillingError):
    """Malformed or missing input."""

    code = "validation_error"
    http_status = 400


class PermissionDenied(BillingError):
    """The principal is not allowed to perform the action."""

    code = "permission_denied"
    http_status = 403


class NotFound(BillingError):
    """Unknown subscription, organization or plan."""

    code = "not_found"
    http_status = 404


class Conflict(BillingError):
    """Invariant breach: seat limit, invalid transition or ownership violation."""

    code = "conflict"
    http_status = 409

    def __init__(
        self,
        message: str = "",
        *,
        subscription_id: Optional[int] = None,
        transition: Optional[str] = None,
        current_state: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        details = dict(context or {})
        if subscription_id is not None:
            details["subscription_id"] = subscription_id
        if transition:
            details["transition"] = transition
        if current_state:
            details["current_state"] = current_state
        super().__init__(message, context=details)
        self.subscription_id = subscription_id
        self.transition = transition
        self.current_state = current_state


class TransientStoreError(BillingError):
    """Lock timeout or connection failure; safe to retry."""

    code = "transient_store_error"
    http_status = 500
    retryable = True


class ExternalProviderError(BillingError):
    """Failure returned by the payment provider outside the core."""

    code = "external_provider_error"
    http_status = 502
    retryable = True


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (ValidationError, PermissionDenied, NotFound, Conflict, TransientStoreError, ExternalProviderError)
}


def error_from_code(code: str, message: str, context: Optional[Dict[str, Any]] = None) -> BillingError:
    """Rebuild a typed error from a stored code, e.g. for replayed ledger outcomes."""
    error_cls = _ERRORS_BY_CODE.get(code, BillingError)
    return error_cls(message, context=context)


__all__ = [
    "BillingError",
    "ValidationError",
    "PermissionDenied",
    "NotFound",
    "Conflict",
    "TransientStoreError",
    "ExternalProviderError",
    "error_from_code",
]
