"""
Custom exception classes and the FastAPI exception handler.

Why custom exceptions?
  Services and provider clients raise domain-specific errors (like
  AmountMismatchError) without importing HTTP concepts. The handler
  registered here translates them into HTTP responses in one place.

  This separation means:
    - Service code is testable without HTTP
    - Error responses are consistent across all endpoints
    - Adding new error types is straightforward

Every error carries three class-level attributes used by the handler:
  - status_code: HTTP status returned to the caller
  - error_type:  stable machine-readable identifier
  - retryable:   whether the same request may succeed later ("try again")
                 as opposed to needing a different request or support

Exception hierarchy:
    SatsJarError (base)
    ├── InvalidAmountError           — amount not a positive integer
    ├── InvalidPaymentRequestError   — BOLT11 undecodable, amountless, or
    │                                  not for the stated amount
    ├── WalletNotConfiguredError     — issuing account has no provider key
    ├── WebhookSignatureError        — webhook HMAC verification failed
    ├── UnauthorizedAccessError      — caller may not touch this resource
    ├── AccountNotFoundError         — account doesn't exist
    ├── InvoiceNotFoundError         — no invoice with this payment hash
    ├── TransactionNotFoundError     — no withdrawal with this ID
    ├── AmountMismatchError          — confirmation amount != invoice amount
    ├── WithdrawalAlreadyResolvedError — withdrawal is no longer pending
    ├── InsufficientFundsError       — withdrawal larger than balance
    ├── SettlementFailedError        — settlement could not commit
    ├── InsufficientPermissionError  — provider credential lacks payout rights
    ├── PaymentRejectedError         — provider definitively refused a payout
    ├── PayoutMismatchError          — provider paid a different amount
    └── ProviderUnavailableError     — transient provider/network failure

"Already settled" is deliberately NOT an exception: it is the normal
idempotent outcome of settle() and is reported on SettlementResult.
"""

import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class SatsJarError(Exception):
    """Base exception for all Sats Jar domain errors."""

    status_code: int = 400
    error_type: str = "error"
    retryable: bool = False

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)

    def extra(self) -> dict[str, Any]:
        """Additional JSON fields included in the error response."""
        return {}


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------

class InvalidAmountError(SatsJarError):
    """Raised when an amount is not a positive integer number of sats."""

    error_type = "invalid_amount"

    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer number of sats, got {amount!r}")


class InvalidPaymentRequestError(SatsJarError):
    """
    Raised when a BOLT11 payment request cannot be paid as asked: it does
    not decode, carries no amount, or encodes a different amount than the
    caller stated. Checked before any balance is touched.
    """

    error_type = "invalid_payment_request"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid payment request: {reason}")


class WalletNotConfiguredError(SatsJarError):
    """Raised when the account that must mint an invoice has no provider key."""

    error_type = "wallet_not_configured"

    def __init__(self, account_id: uuid.UUID):
        self.account_id = account_id
        super().__init__(f"Wallet for account {account_id} is not configured")


class WebhookSignatureError(SatsJarError):
    """Raised when a provider webhook fails signature verification."""

    status_code = 401
    error_type = "invalid_signature"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__("Invalid signature")


class UnauthorizedAccessError(SatsJarError):
    """Raised when an account attempts to access a resource it doesn't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class AccountNotFoundError(SatsJarError):
    """Raised when a requested account does not exist."""

    status_code = 404
    error_type = "account_not_found"

    def __init__(self, account_id: uuid.UUID):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InvoiceNotFoundError(SatsJarError):
    """Raised when no invoice matches a payment hash."""

    status_code = 404
    error_type = "invoice_not_found"

    def __init__(self, payment_hash: str):
        self.payment_hash = payment_hash
        super().__init__(f"Invoice {payment_hash} not found")


class TransactionNotFoundError(SatsJarError):
    """Raised when no withdrawal matches a transaction ID."""

    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Withdrawal {transaction_id} not found")


class WithdrawalAlreadyResolvedError(SatsJarError):
    """Raised when an operator resolves a withdrawal that is no longer pending."""

    status_code = 409
    error_type = "withdrawal_already_resolved"

    def __init__(self, transaction_id: uuid.UUID, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Withdrawal {transaction_id} is already {status}")

    def extra(self) -> dict[str, Any]:
        return {"status": self.status}


class AmountMismatchError(SatsJarError):
    """
    Raised when a payment confirmation reports a different amount than the
    invoice was issued for. The settlement is aborted; a manipulated or
    corrupted confirmation must never credit an unintended amount.
    """

    status_code = 409
    error_type = "amount_mismatch"

    def __init__(self, payment_hash: str, expected_sats: int, observed_sats: int):
        self.payment_hash = payment_hash
        self.expected_sats = expected_sats
        self.observed_sats = observed_sats
        super().__init__(
            f"Amount mismatch for invoice {payment_hash}: "
            f"expected {expected_sats} sats, observed {observed_sats} sats"
        )

    def extra(self) -> dict[str, Any]:
        return {"expected_sats": self.expected_sats, "observed_sats": self.observed_sats}


class InsufficientFundsError(SatsJarError):
    """
    Raised when a withdrawal would cause a negative balance.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_sats: The amount the caller tried to withdraw.
        available_sats: The balance at the time of the attempt.
    """

    status_code = 422
    error_type = "insufficient_funds"

    def __init__(self, account_id: uuid.UUID, requested_sats: int, available_sats: int):
        self.account_id = account_id
        self.requested_sats = requested_sats
        self.available_sats = available_sats
        super().__init__(
            f"Insufficient funds: requested {requested_sats} sats, "
            f"available {available_sats} sats"
        )

    def extra(self) -> dict[str, Any]:
        return {"requested_sats": self.requested_sats, "available_sats": self.available_sats}


# ---------------------------------------------------------------------------
# Server / upstream errors
# ---------------------------------------------------------------------------

class SettlementFailedError(SatsJarError):
    """
    Raised when a settlement transaction could not commit after the bounded
    number of attempts. The payment may be confirmed by the provider but not
    credited internally; an operator has to reconcile it.
    """

    status_code = 500
    error_type = "settlement_failed"

    def __init__(self, payment_hash: str, attempts: int):
        self.payment_hash = payment_hash
        self.attempts = attempts
        super().__init__(
            f"Settlement of invoice {payment_hash} failed after {attempts} attempts; "
            "please contact support"
        )


class InsufficientPermissionError(SatsJarError):
    """Raised when the provider credential lacks rights for the operation."""

    status_code = 502
    error_type = "insufficient_permission"

    def __init__(self, provider: str, operation: str):
        self.provider = provider
        self.operation = operation
        super().__init__(
            f"The {provider} credential is not allowed to perform {operation}; "
            "please contact support"
        )


class PaymentRejectedError(SatsJarError):
    """
    Raised when the provider answers a payout with a definitive 4xx
    rejection (invalid invoice, insufficient platform balance, route not
    found). The money did not leave; sending the same request again will
    fail the same way.
    """

    status_code = 502
    error_type = "payment_rejected"

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Payment provider {provider} rejected the payment: {reason}")


class PayoutMismatchError(SatsJarError):
    """
    Raised when a payout succeeded for a different amount than was debited.
    The money has left, so nothing is refunded; the withdrawal stays pending
    for an operator.
    """

    status_code = 502
    error_type = "payout_mismatch"

    def __init__(self, withdrawal_id: str, expected_sats: int, paid_sats: int):
        self.withdrawal_id = withdrawal_id
        self.expected_sats = expected_sats
        self.paid_sats = paid_sats
        super().__init__(
            f"Withdrawal {withdrawal_id} paid {paid_sats} sats instead of {expected_sats}; "
            "please contact support"
        )

    def extra(self) -> dict[str, Any]:
        return {"expected_sats": self.expected_sats, "paid_sats": self.paid_sats}


class ProviderUnavailableError(SatsJarError):
    """Raised on transient provider failures (network, timeout, auth, 5xx)."""

    status_code = 503
    error_type = "provider_unavailable"
    retryable = True

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Payment provider {provider} is unavailable: {reason}")


# ---------------------------------------------------------------------------
# FastAPI exception handler
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the domain exception handler with the FastAPI application.

    Every SatsJarError is rendered as:
        {"detail": ..., "error_type": ..., "retryable": ..., **exc.extra()}

    This is called once during app construction in main.py.
    """

    @app.exception_handler(SatsJarError)
    async def sats_jar_error_handler(request: Request, exc: SatsJarError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "retryable": exc.retryable,
                **exc.extra(),
            },
        )
