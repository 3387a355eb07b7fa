"""
LNbits provider client (provider A).

LNbits is wallet-oriented: every wallet has an invoice key (mint invoices,
read payments) and an admin key (spend). Each jar account holds its own
wallet keys, so callers pass the key per call.

API notes:
  - Auth header: X-Api-Key
  - Native invoice id IS the payment hash, so provider_invoice_id and
    payment_hash are the same string.
  - Amounts in payment details and wallet balance are millisatoshis and are
    normalized to sats here. Invoice creation takes sats.
"""

import logging
from datetime import datetime, timezone
from typing import Any

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


def _msat_to_sat(value: Any) -> int:
    return abs(int(value)) // 1000


def _parse_time(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class LnbitsProvider(LightningProvider):
    kind = ProviderKind.LNBITS
    requires_wallet_key = True

    def __init__(
        self,
        base_url: str,
        timeout: float,
        webhook_url: str | None = None,
        platform_admin_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout, transport=transport)
        self._webhook_url = webhook_url
        self._platform_admin_key = platform_admin_key

    @staticmethod
    def _auth(key: str | None, operation: str) -> dict[str, str]:
        if not key:
            raise InsufficientPermissionError(ProviderKind.LNBITS.value, operation)
        return {"X-Api-Key": key}

    async def create_invoice(self, key: str | None, amount_sats: int, memo: str) -> CreatedInvoice:
        validate_amount(amount_sats)
        if not key:
            raise ProviderUnavailableError(self.name, "no invoice key supplied")

        body: dict[str, Any] = {"out": False, "amount": amount_sats, "memo": memo}
        if self._webhook_url:
            body["webhook"] = self._webhook_url

        data = await self._request(
            "POST", "payments", headers={"X-Api-Key": key}, json=body, operation="create_invoice"
        )
        payment_hash = data.get("payment_hash")
        payment_request = data.get("payment_request") or data.get("bolt11")
        if not payment_hash or not payment_request:
            raise ProviderUnavailableError(self.name, "invoice response missing payment_hash or bolt11")

        logger.info(
            "LNbits invoice created",
            extra={"provider": self.name, "amount_sats": amount_sats},
        )
        return CreatedInvoice(
            payment_hash=payment_hash,
            provider_invoice_id=payment_hash,
            payment_request=payment_request,
        )

    async def get_status(self, provider_invoice_id: str, key: str | None = None) -> InvoiceStatusSnapshot:
        headers = {"X-Api-Key": key} if key else None
        data = await self._request(
            "GET", f"payments/{provider_invoice_id}", headers=headers, operation="get_status"
        )
        details = data.get("details") or {}
        if "amount" not in details:
            raise ProviderUnavailableError(self.name, "status response missing amount")

        paid = bool(data.get("paid"))
        return InvoiceStatusSnapshot(
            paid=paid,
            amount_sats=_msat_to_sat(details["amount"]),
            paid_at=_parse_time(details.get("time")) if paid else None,
        )

    @property
    def platform_key(self) -> str | None:
        return self._platform_admin_key

    async def create_withdrawal(self, payment_request: str, key: str | None = None) -> WithdrawalReceipt:
        headers = self._auth(key, "create_withdrawal")
        data = await self._request(
            "POST",
            "payments",
            headers=headers,
            json={"out": True, "bolt11": payment_request},
            operation="create_withdrawal",
            permission_sensitive=True,
            payout=True,
        )
        payment_hash = data.get("payment_hash") or data.get("checking_id")
        if not payment_hash:
            raise ProviderUnavailableError(self.name, "withdrawal response missing payment_hash")

        # The pay endpoint only echoes the hash; amount and fee live on the payment.
        # The payment has gone through at this point, so a failed lookup only
        # costs us the details.
        try:
            detail = await self._request(
                "GET", f"payments/{payment_hash}", headers=headers, operation="create_withdrawal"
            )
        except ProviderUnavailableError:
            logger.warning(
                "Withdrawal sent but its details could not be read",
                extra={"provider": self.name, "withdrawal_id": payment_hash},
            )
            return WithdrawalReceipt(withdrawal_id=payment_hash, amount_sats=None, fee_sats=0)

        details = detail.get("details") or {}
        amount = details.get("amount")
        return WithdrawalReceipt(
            withdrawal_id=payment_hash,
            amount_sats=_msat_to_sat(amount) if amount is not None else None,
            fee_sats=_msat_to_sat(details.get("fee", 0)),
        )

    async def get_account_balance(self, key: str | None = None) -> ProviderBalance:
        headers = self._auth(key or self._platform_admin_key, "get_account_balance")
        data = await self._request(
            "GET", "wallet", headers=headers, operation="get_account_balance", permission_sensitive=True
        )
        if "balance" not in data:
            raise ProviderUnavailableError(self.name, "wallet response missing balance")
        return ProviderBalance(amount_sats=_msat_to_sat(data["balance"]))

    async def list_payments(
        self, key: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[ProviderPayment]:
        headers = self._auth(key or self._platform_admin_key, "list_payments")
        data = await self._request(
            "GET",
            "payments",
            headers=headers,
            params={"limit": limit, "offset": offset},
            operation="list_payments",
            permission_sensitive=True,
        )
        if not isinstance(data, list):
            raise ProviderUnavailableError(self.name, "payments response is not a list")

        payments = []
        for item in data:
            amount_msat = int(item.get("amount") or 0)
            # Newer LNbits reports status; older versions only a pending flag
            if "status" in item:
                paid = item["status"] == "success"
            else:
                paid = not item.get("pending", True)
            payments.append(
                ProviderPayment(
                    payment_id=item.get("payment_hash") or item.get("checking_id") or "",
                    outgoing=amount_msat < 0,
                    amount_sats=_msat_to_sat(amount_msat),
                    fee_sats=_msat_to_sat(item.get("fee") or 0),
                    paid=paid,
                    memo=item.get("memo") or "",
                    time=_parse_time(item.get("time")),
                )
            )
        return payments
