"""
Abstract Lightning provider interface.

The two payment services this system supports (LNbits and OpenNode) expose
materially different native identifiers, status shapes, units and auth
schemes. LightningProvider is the seam that lets the rest of the system
treat "a Lightning invoice" as one type regardless of origin.

Join key:
  payment_hash (never the provider-native id) is the key used everywhere
  else (invoice store, ledger, webhooks). A provider whose native id is not
  the payment hash (OpenNode charge ids) must derive the real hash at
  creation time.

Retries:
  Every operation hits a live financial system. Nothing here retries;
  whether to try again is the caller's decision. HTTP calls carry the
  timeout passed at construction.

Error mapping (done by _request):
  - transport errors, timeouts, 5xx, 408/429, 401 on non-payout calls,
    unparseable bodies                    → ProviderUnavailableError
  - 401/403 on payout/balance calls       → InsufficientPermissionError
  - any other 4xx on a payout             → PaymentRejectedError
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import bolt11
import httpx

from app.exceptions import (
    InsufficientPermissionError,
    InvalidAmountError,
    InvalidPaymentRequestError,
    PaymentRejectedError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

# 4xx answers that say "not now" rather than "never"
_TRANSIENT_CLIENT_ERRORS = frozenset({408, 425, 429})


class ProviderKind(str, enum.Enum):
    """
    The closed set of supported providers.

    Stored on every invoice so "which provider issued this" is a property of
    the record rather than of whatever provider is active right now.
    """
    LNBITS = "lnbits"
    OPENNODE = "opennode"


# ---------------------------------------------------------------------------
# Normalized results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreatedInvoice:
    """A freshly minted invoice."""

    payment_hash: str
    provider_invoice_id: str
    payment_request: str


@dataclass(frozen=True)
class InvoiceStatusSnapshot:
    """Provider's current view of an invoice."""

    paid: bool
    amount_sats: int
    paid_at: datetime | None = None


@dataclass(frozen=True)
class WithdrawalReceipt:
    """
    Result of an outgoing Lightning payment.

    amount_sats is None when the provider did not report what it paid.
    """

    withdrawal_id: str
    amount_sats: int | None
    fee_sats: int


@dataclass(frozen=True)
class ProviderBalance:
    amount_sats: int


@dataclass(frozen=True)
class ProviderPayment:
    """One entry of the platform wallet's history, as the provider reports it."""

    payment_id: str
    outgoing: bool
    amount_sats: int
    fee_sats: int
    paid: bool
    memo: str
    time: datetime | None


def validate_amount(amount_sats: Any) -> int:
    """
    Ensure an amount is a positive integer number of sats.

    bool is a subclass of int in Python, so it is rejected explicitly.
    """
    if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
        raise InvalidAmountError(amount_sats)
    return amount_sats


def validate_payment_request(payment_request: str, amount_sats: int) -> None:
    """
    Ensure a BOLT11 invoice pays exactly amount_sats.

    A payout pays whatever the invoice encodes, so the amount debited for it
    has to be read from the invoice, not trusted from the caller. Amountless
    invoices and sub-satoshi amounts are refused.

    Raises:
        InvalidPaymentRequestError: If the invoice does not decode, has no
                                    amount, or encodes a different amount.
    """
    try:
        decoded = bolt11.decode(payment_request)
    except Exception as exc:  # bolt11 raises a mix of ValueError and its own types
        raise InvalidPaymentRequestError("not a valid BOLT11 invoice") from exc

    amount_msat = decoded.amount_msat
    if not amount_msat:
        raise InvalidPaymentRequestError("invoice has no amount")
    if amount_msat % 1000:
        raise InvalidPaymentRequestError("invoice amount is not a whole number of sats")
    if amount_msat // 1000 != amount_sats:
        raise InvalidPaymentRequestError(
            f"invoice is for {amount_msat // 1000} sats, not {amount_sats}"
        )


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class LightningProvider(ABC):
    """Abstract base class for Lightning payment providers."""

    kind: ProviderKind
    # True when invoices must be minted with a per-wallet key supplied by the caller
    requires_wallet_key: bool = False

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def platform_key(self) -> str | None:
        """Credential for the platform's own wallet, when the provider takes one per call."""
        return None

    @abstractmethod
    async def create_invoice(self, key: str | None, amount_sats: int, memo: str) -> CreatedInvoice:
        """
        Mint a new incoming invoice.

        Raises:
            InvalidAmountError: If amount_sats is not a positive integer.
            ProviderUnavailableError: On network, auth or provider failure.
        """

    @abstractmethod
    async def get_status(self, provider_invoice_id: str, key: str | None = None) -> InvoiceStatusSnapshot:
        """Fetch the provider's current status for an invoice."""

    @abstractmethod
    async def create_withdrawal(self, payment_request: str, key: str | None = None) -> WithdrawalReceipt:
        """
        Pay an external BOLT11 invoice.

        Raises:
            InsufficientPermissionError: If the credential lacks payout rights.
            PaymentRejectedError: If the provider refused the payment outright.
            ProviderUnavailableError: On transient failure (outcome unknown).
        """

    @abstractmethod
    async def get_account_balance(self, key: str | None = None) -> ProviderBalance:
        """Balance of the provider-side wallet/account."""

    @abstractmethod
    async def list_payments(
        self, key: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[ProviderPayment]:
        """Payment history of the provider-side wallet/account, newest first."""

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        operation: str,
        permission_sensitive: bool = False,
        payout: bool = False,
    ) -> Any:
        """
        Perform one HTTP call and return the decoded JSON body.

        Exactly one request is sent; failures are translated into domain
        errors and never retried. With payout=True a definitive 4xx answer
        is a PaymentRejectedError: the caller can then release the funds it
        set aside, which it must not do when the outcome is unknown.
        """
        try:
            response = await self._client.request(method, path, headers=headers, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.warning(
                "Provider request timed out",
                extra={"provider": self.name, "operation": operation},
            )
            raise ProviderUnavailableError(self.name, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Provider request failed",
                extra={"provider": self.name, "operation": operation, "error": str(exc)},
            )
            raise ProviderUnavailableError(self.name, "could not reach provider") from exc

        if permission_sensitive and response.status_code in (401, 403):
            logger.error(
                "Provider credential lacks permission",
                extra={"provider": self.name, "operation": operation, "status": response.status_code},
            )
            raise InsufficientPermissionError(self.name, operation)

        if (
            payout
            and response.is_client_error
            and response.status_code not in _TRANSIENT_CLIENT_ERRORS
        ):
            reason = _error_detail(response)
            logger.error(
                "Provider rejected payout",
                extra={
                    "provider": self.name,
                    "operation": operation,
                    "status": response.status_code,
                    "reason": reason,
                },
            )
            raise PaymentRejectedError(self.name, reason)

        if response.is_error:
            logger.warning(
                "Provider returned an error status",
                extra={"provider": self.name, "operation": operation, "status": response.status_code},
            )
            raise ProviderUnavailableError(
                self.name, f"{operation} returned HTTP {response.status_code}"
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(self.name, f"{operation} returned a non-JSON body") from exc


def _error_detail(response: httpx.Response) -> str:
    """Best human-readable reason from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return f"HTTP {response.status_code}"
