from __future__ import annotations

from typing import Any, Dict

from site_procurement.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or code or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, error_message(self.default_message_key, fallback))

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class NotFound(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404


class InvalidTransition(UserActionError):
    """The requested action is not legal from the item's current status."""

    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409


class StaleStatus(InvalidTransition):
    """The row changed between read and write; the caller must re-read and retry."""

    default_code = "status_changed"
    default_message_key = "status_changed"
    default_http_status = 409


class MissingReason(ValidationError):
    default_code = "reason_required"
    default_message_key = "reason_required"


class InsufficientStock(UserActionError):
    default_code = "insufficient_stock"
    default_message_key = "insufficient_stock"
    default_http_status = 409


class Unauthorized(PermissionError):
    default_code = "unauthorized"
    default_message_key = "permission_denied"


class PartialBatchFailure(UserActionError):
    """Raised by the HTTP layer when a batch finished with failed ids."""

    default_code = "partial_batch_failure"
    default_message_key = "partial_batch_failure"
    default_http_status = 207


def error_reason(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return exc.code
    return "unexpected_error"
