from __future__ import annotations

from typing import Any, Optional


class PayLedgerError(RuntimeError):
    code = "UNEXPECTED_ERROR"
    status_code = 500

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.code, "detail": self.message, **self.context}


class ConfigurationError(PayLedgerError):
    """Signing credentials or provider settings are missing."""

    code = "PAYMENT_NOT_CONFIGURED"
    status_code = 503


class GatewayError(PayLedgerError):
    """The payment provider rejected a request or could not be reached."""

    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider_code: Optional[str] = None,
        provider_message: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            provider_code=provider_code,
            provider_message=provider_message,
            http_status=http_status,
        )
        self.provider_code = provider_code
        self.provider_message = provider_message
        self.http_status = http_status


class InvalidSignatureError(PayLedgerError):
    code = "INVALID_SIGNATURE"
    status_code = 403


class ValidationError(PayLedgerError):
    code = "VALIDATION_FAILED"
    status_code = 400


class UserNotFoundError(ValidationError):
    code = "USER_NOT_FOUND"
    status_code = 404


class PaymentIntentNotFoundError(ValidationError):
    code = "PAYMENT_INTENT_NOT_FOUND"
    status_code = 404


class InsufficientCreditsError(PayLedgerError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(
            f"insufficient credits: balance={balance} required={required}",
            balance=balance,
            required=required,
        )
        self.balance = balance
        self.required = required


class InvalidCodeError(PayLedgerError):
    code = "INVALID_REDEMPTION_CODE"
    status_code = 400

    REASONS = ("not_found", "inactive", "expired", "exhausted", "already_redeemed")

    def __init__(self, reason: str, *, redemption_code: str = "") -> None:
        super().__init__(f"redemption code is {reason.replace('_', ' ')}", reason=reason)
        self.reason = reason
        self.redemption_code = redemption_code


class RateLimitedError(PayLedgerError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, *, retry_after_seconds: int) -> None:
        super().__init__("too many attempts", retry_after_seconds=retry_after_seconds)
        self.retry_after_seconds = retry_after_seconds


class ReconciliationPartialFailure(PayLedgerError):
    """
    A payment was confirmed but its order/credit grant could not be committed.

    The intent stays confirmed and an open reconciliation issue is recorded;
    an operator resolves it through the admin replay, never an automatic retry.
    """

    code = "RECONCILIATION_REQUIRED"
    status_code = 500

    def __init__(self, *, out_trade_no: str, issue_id: Optional[str], error: str) -> None:
        super().__init__(
            f"payment {out_trade_no} confirmed but not credited: {error}",
            out_trade_no=out_trade_no,
            issue_id=issue_id,
        )
        self.out_trade_no = out_trade_no
        self.issue_id = issue_id
        self.error = error
