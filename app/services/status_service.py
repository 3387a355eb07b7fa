"""
Status service — the pull confirmation path.

A client waiting on an invoice polls GET /wallet/invoice/{payment_hash}.
check_invoice_status answers from the database when it can and asks the
provider only when it must:

  - Invoice already paid → answer from the row, zero provider calls
  - Otherwise ask the provider that MINTED the invoice (invoice.provider,
    not whichever provider is primary now), with the key stored on the
    invoice at creation time
  - Provider says paid → settle(via=poll), the same primitive the webhook
    uses, so whichever path is first wins and the other no-ops

Degraded answers:
  A provider outage or a missing client for the invoice's provider is not
  the caller's error. The answer is the current pending state with
  verified=False and a message; nothing is written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from app.exceptions import ProviderUnavailableError
from app.logging_config import LogContext
from app.models.invoice import Invoice, InvoiceStatus, SettlementPath
from app.providers.selector import ProviderSelector
from app.security import decrypt_optional
from app.services.settlement_service import SettlementReconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvoiceStatusReport:
    payment_hash: str
    paid: bool
    status: InvoiceStatus
    amount_sats: int
    memo: str
    created_at: datetime
    paid_at: datetime | None = None
    processed_via: SettlementPath | None = None
    # False when the provider could not be asked; the answer is our last known state
    verified: bool = True
    message: str | None = None


def _report(invoice: Invoice, *, verified: bool = True, message: str | None = None) -> InvoiceStatusReport:
    return InvoiceStatusReport(
        payment_hash=invoice.payment_hash,
        paid=invoice.status == InvoiceStatus.PAID,
        status=invoice.status,
        amount_sats=invoice.amount_sats,
        memo=invoice.memo,
        created_at=invoice.created_at,
        paid_at=invoice.paid_at,
        processed_via=invoice.processed_via,
        verified=verified,
        message=message,
    )


async def check_invoice_status(
    selector: ProviderSelector,
    reconciler: SettlementReconciler,
    invoice: Invoice,
) -> InvoiceStatusReport:
    """
    Report an invoice's status, settling it if the provider says it is paid.

    Args:
        selector: The provider selector built at startup.
        reconciler: The settlement primitive.
        invoice: The invoice, already authorized for the caller.

    Returns:
        An InvoiceStatusReport. verified=False means the provider could not
        be asked and the state shown is the last one recorded.

    Raises:
        AmountMismatchError: The provider reports a different amount.
        SettlementFailedError: The provider says paid but the credit could
                               not be committed.
    """
    if invoice.status == InvoiceStatus.PAID:
        return _report(invoice)

    with LogContext.bind(payment_hash=invoice.payment_hash, via=SettlementPath.POLL):
        client = selector.client_for(invoice.provider)
        if client is None:
            logger.warning(
                "No configured client for the provider that issued this invoice",
                extra={"provider": invoice.provider.value},
            )
            return _report(
                invoice,
                verified=False,
                message=f"Payment provider {invoice.provider.value} is not configured; status not verified",
            )

        try:
            snapshot = await client.get_status(
                invoice.provider_invoice_id,
                decrypt_optional(invoice.encrypted_status_key),
            )
        except ProviderUnavailableError as exc:
            logger.warning("Status check could not reach provider", extra={"reason": exc.reason})
            return _report(
                invoice,
                verified=False,
                message="Could not reach the payment provider; please try again shortly",
            )

        if not snapshot.paid:
            return _report(invoice)

        result = await reconciler.settle(invoice.payment_hash, snapshot.amount_sats, SettlementPath.POLL)

    return InvoiceStatusReport(
        payment_hash=invoice.payment_hash,
        paid=True,
        status=InvoiceStatus.PAID,
        amount_sats=result.amount_sats,
        memo=invoice.memo,
        created_at=invoice.created_at,
        paid_at=result.paid_at,
        processed_via=result.processed_via,
    )
