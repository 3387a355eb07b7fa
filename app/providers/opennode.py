"""
OpenNode provider client (provider B).

OpenNode is merchant-account oriented: one API key for the whole platform,
so the per-call `key` argument is ignored. Its native invoice id is a
charge id, which is NOT the payment hash. The real payment hash is taken
from the charge's lightning_invoice block or, when OpenNode omits it,
decoded from the BOLT11 payment request.

API notes:
  - Auth header: Authorization: <api key>
  - Amounts are sats.
  - Responses are wrapped in {"data": {...}}.
  - Charge callbacks carry hashed_order = HMAC-SHA256(api_key, charge_id).
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

import bolt11
import httpx

from app.exceptions import InsufficientPermissionError, ProviderUnavailableError
from app.providers.base import (
    CreatedInvoice,
    InvoiceStatusSnapshot,
    LightningProvider,
    ProviderBalance,
    ProviderKind,
    ProviderPayment,
    WithdrawalReceipt,
    validate_amount,
)

logger = logging.getLogger(__name__)


def payment_hash_from_bolt11(payment_request: str) -> str | None:
    """Decode a BOLT11 invoice and return its payment hash, or None if undecodable."""
    try:
        return bolt11.decode(payment_request).payment_hash
    except Exception as exc:  # bolt11 raises a mix of ValueError and its own types
        logger.warning("Could not decode payment hash from bolt11", extra={"error": str(exc)})
        return None


class OpenNodeProvider(LightningProvider):
    kind = ProviderKind.OPENNODE

    def __init__(
        self,
        base_url: str,
        timeout: float,
        api_key: str | None,
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout, transport=transport)
        self._api_key = api_key
        self._callback_url = callback_url
        if not api_key:
            logger.warning("OpenNode API key not configured")

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderUnavailableError(self.name, "API key not configured")
        return {"Authorization": self._api_key}

    @staticmethod
    def _data(body: Any, operation: str) -> dict[str, Any]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ProviderUnavailableError(ProviderKind.OPENNODE.value, f"{operation} response missing data")
        return data

    def verify_callback(self, charge_id: str, hashed_order: str | None) -> bool:
        """Check a charge callback's hashed_order in constant time."""
        if not self._api_key or not hashed_order:
            return False
        expected = hmac.new(self._api_key.encode(), charge_id.encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode(), hashed_order.encode())

    async def create_invoice(self, key: str | None, amount_sats: int, memo: str) -> CreatedInvoice:
        validate_amount(amount_sats)
        body: dict[str, Any] = {
            "amount": amount_sats,
            "description": memo,
            "currency": "BTC",
            # Keep funds in BTC; no fiat conversion
            "auto_settle": False,
        }
        if self._callback_url:
            body["callback_url"] = self._callback_url

        charge = self._data(
            await self._request(
                "POST", "charges", headers=self._headers(), json=body, operation="create_invoice"
            ),
            "create_invoice",
        )
        charge_id = charge.get("id")
        lightning_invoice = charge.get("lightning_invoice") or {}
        payment_request = lightning_invoice.get("payreq")
        if not charge_id or not payment_request:
            raise ProviderUnavailableError(self.name, "charge response missing id or payreq")

        payment_hash = lightning_invoice.get("payment_hash") or payment_hash_from_bolt11(payment_request)
        if not payment_hash:
            # The charge id is not a payment hash; storing it as one would break settlement joins
            raise ProviderUnavailableError(self.name, "could not determine payment hash for charge")

        logger.info(
            "OpenNode charge created",
            extra={"provider": self.name, "charge_id": charge_id, "amount_sats": amount_sats},
        )
        return CreatedInvoice(
            payment_hash=payment_hash,
            provider_invoice_id=charge_id,
            payment_request=payment_request,
        )

    async def get_status(self, provider_invoice_id: str, key: str | None = None) -> InvoiceStatusSnapshot:
        charge = self._data(
            await self._request(
                "GET", f"charge/{provider_invoice_id}", headers=self._headers(), operation="get_status"
            ),
            "get_status",
        )
        if "amount" not in charge:
            raise ProviderUnavailableError(self.name, "charge response missing amount")

        paid = charge.get("status") == "paid"
        paid_at = None
        if paid and isinstance(charge.get("paid_at"), (int, float)):
            paid_at = datetime.fromtimestamp(charge["paid_at"], tz=timezone.utc)
        return InvoiceStatusSnapshot(paid=paid, amount_sats=int(charge["amount"]), paid_at=paid_at)

    async def create_withdrawal(self, payment_request: str, key: str | None = None) -> WithdrawalReceipt:
        if not self._api_key:
            # Nothing is sent, so the money certainly stays put
            raise InsufficientPermissionError(self.name, "create_withdrawal")
        body: dict[str, Any] = {"type": "ln", "address": payment_request}
        if self._callback_url:
            body["callback_url"] = self._callback_url
        withdrawal = self._data(
            await self._request(
                "POST",
                "withdrawals",
                headers=self._headers(),
                json=body,
                operation="create_withdrawal",
                permission_sensitive=True,
                payout=True,
            ),
            "create_withdrawal",
        )
        amount = withdrawal.get("amount")
        return WithdrawalReceipt(
            withdrawal_id=str(withdrawal.get("id")),
            amount_sats=int(amount) if amount is not None else None,
            fee_sats=int(withdrawal.get("fee") or 0),
        )

    async def get_account_balance(self, key: str | None = None) -> ProviderBalance:
        data = self._data(
            await self._request(
                "GET",
                "account/balance",
                headers=self._headers(),
                operation="get_account_balance",
                permission_sensitive=True,
            ),
            "get_account_balance",
        )
        # Shape is {"balance": {"BTC": <sats>}}
        balance = data.get("balance")
        sats = balance.get("BTC") if isinstance(balance, dict) else data.get("BTC")
        if sats is None:
            raise ProviderUnavailableError(self.name, "balance response missing BTC amount")
        return ProviderBalance(amount_sats=int(sats))

    async def list_payments(
        self, key: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[ProviderPayment]:
        """
        Charges on the merchant account, newest first.

        OpenNode has no combined payment history and does not page charges,
        so the slice is taken here.
        """
        body = await self._request(
            "GET", "charges", headers=self._headers(), operation="list_payments"
        )
        charges = body.get("data") if isinstance(body, dict) else None
        if not isinstance(charges, list):
            raise ProviderUnavailableError(self.name, "charges response missing data")

        charges.sort(key=lambda charge: charge.get("created_at") or 0, reverse=True)
        payments = []
        for charge in charges[offset:offset + limit]:
            created_at = charge.get("created_at")
            payments.append(
                ProviderPayment(
                    payment_id=str(charge.get("id")),
                    outgoing=False,
                    amount_sats=int(charge.get("amount") or 0),
                    fee_sats=int(charge.get("fee") or 0),
                    paid=charge.get("status") == "paid",
                    memo=charge.get("description") or "",
                    time=(
                        datetime.fromtimestamp(created_at, tz=timezone.utc)
                        if isinstance(created_at, (int, float))
                        else None
                    ),
                )
            )
        return payments
