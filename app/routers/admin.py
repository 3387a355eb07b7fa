"""
Admin router — operator endpoints for the platform wallet.

All endpoints require the ADMIN role.

Endpoints:
  GET  /admin/provider                              — Active provider and fallback
  GET  /admin/provider/balance                      — Platform wallet balance
  GET  /admin/wallet/transactions                   — Platform wallet payment history
  POST /admin/wallet/withdrawal-invoice             — Invoice paying into the platform wallet
  POST /admin/wallet/withdraw                       — Pay a BOLT11 invoice from the platform wallet
  POST /admin/invoices/{payment_hash}/settle        — Settle an invoice by hand
  GET  /admin/withdrawals/pending                   — Jar withdrawals with an unknown outcome
  POST /admin/withdrawals/{transaction_id}/resolve  — Close a pending jar withdrawal

Manual settlement goes through the same SettlementReconciler as the
webhook and the status poller. It exists for the cases those paths cannot
close on their own (a SettlementFailedError after a confirmed payment, a
provider that lost the webhook and is unreachable for polling). It obeys
the same rules: exactly-once, and the stated amount must match.

Pending withdrawals are the other side of the same story: a payout whose
provider call timed out keeps its debit until an operator has checked the
provider's records and resolves it as completed (debit stays) or failed
(debit refunded).
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_provider_selector, get_reconciler, require_admin
from app.logging_config import LogContext
from app.models.account import Account
from app.models.invoice import SettlementPath
from app.models.transaction import TransactionStatus
from app.providers.selector import ProviderSelector
from app.schemas.admin import (
    ManualSettleRequest,
    PlatformInvoiceRequest,
    PlatformInvoiceResponse,
    PlatformWithdrawalRequest,
    PlatformWithdrawalResponse,
    ProviderBalanceResponse,
    ProviderInfoResponse,
    ProviderPaymentResponse,
    ResolveWithdrawalRequest,
    SettlementResponse,
)
from app.schemas.wallet import TransactionResponse
from app.services import platform_service, withdrawal_service
from app.services.settlement_service import SettlementReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/provider",
    response_model=ProviderInfoResponse,
    summary="[Admin] Active Lightning provider",
)
async def get_provider_info(
    admin: Account = Depends(require_admin),
    selector: ProviderSelector = Depends(get_provider_selector),
):
    """Which provider mints invoices, and whether a fallback is enabled."""
    return ProviderInfoResponse(**selector.describe())


@router.get(
    "/provider/balance",
    response_model=ProviderBalanceResponse,
    summary="[Admin] Platform wallet balance",
)
async def get_provider_balance(
    admin: Account = Depends(require_admin),
    selector: ProviderSelector = Depends(get_provider_selector),
):
    """
    Balance of the platform's provider account, read live from the provider.

    Returns 502 if the configured platform credential lacks the rights to
    read it, 503 if the provider is unreachable.
    """
    balance = await selector.primary.get_account_balance()
    return ProviderBalanceResponse(provider=selector.primary.name, balance_sats=balance.amount_sats)


# ---------------------------------------------------------------------------
# Platform wallet
# ---------------------------------------------------------------------------

@router.get(
    "/wallet/transactions",
    response_model=list[ProviderPaymentResponse],
    summary="[Admin] Platform wallet payment history",
)
async def list_platform_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: Account = Depends(require_admin),
    selector: ProviderSelector = Depends(get_provider_selector),
):
    """Payments on the platform wallet as the provider reports them, newest first."""
    payments = await platform_service.list_platform_payments(selector, limit=limit, offset=offset)
    return [
        ProviderPaymentResponse(
            payment_id=payment.payment_id,
            direction="outgoing" if payment.outgoing else "incoming",
            amount_sats=payment.amount_sats,
            fee_sats=payment.fee_sats,
            status="completed" if payment.paid else "pending",
            memo=payment.memo,
            time=payment.time,
        )
        for payment in payments
    ]


@router.post(
    "/wallet/withdrawal-invoice",
    response_model=PlatformInvoiceResponse,
    status_code=201,
    summary="[Admin] Create an invoice on the platform wallet",
)
async def create_platform_invoice(
    request: PlatformInvoiceRequest,
    admin: Account = Depends(require_admin),
    selector: ProviderSelector = Depends(get_provider_selector),
):
    """Mint an invoice on the platform wallet. No jar is credited when it is paid."""
    invoice = await platform_service.create_platform_invoice(selector, request.amount_sats, request.memo)
    return PlatformInvoiceResponse(
        payment_request=invoice.payment_request,
        payment_hash=invoice.payment_hash,
        amount_sats=request.amount_sats,
    )


@router.post(
    "/wallet/withdraw",
    response_model=PlatformWithdrawalResponse,
    summary="[Admin] Withdraw from the platform wallet",
)
async def withdraw_from_platform(
    request: PlatformWithdrawalRequest,
    admin: Account = Depends(require_admin),
    selector: ProviderSelector = Depends(get_provider_selector),
):
    """
    Pay an external BOLT11 invoice from the platform wallet.

    No jar balance changes. The invoice must be for exactly `amount_sats`.
    """
    with LogContext.bind(account_id=admin.id):
        receipt = await platform_service.withdraw_from_platform(
            selector, request.amount_sats, request.payment_request
        )
    return PlatformWithdrawalResponse(
        provider=selector.primary.name,
        withdrawal_id=receipt.withdrawal_id,
        amount_sats=request.amount_sats,
        fee_sats=receipt.fee_sats,
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

@router.post(
    "/invoices/{payment_hash}/settle",
    response_model=SettlementResponse,
    summary="[Admin] Settle an invoice manually",
)
async def settle_invoice(
    payment_hash: str,
    request: ManualSettleRequest,
    admin: Account = Depends(require_admin),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    """
    Mark an invoice paid after the operator has verified the payment.

    Idempotent: settling an already-paid invoice returns
    `already_settled: true` and changes nothing.
    """
    with LogContext.bind(account_id=admin.id):
        logger.warning(
            "Manual settlement requested",
            extra={"payment_hash": payment_hash, "amount_sats": request.amount_sats},
        )
        return await reconciler.settle(payment_hash, request.amount_sats, SettlementPath.MANUAL)


@router.get(
    "/withdrawals/pending",
    response_model=list[TransactionResponse],
    summary="[Admin] Jar withdrawals waiting for review",
)
async def list_pending_withdrawals(
    limit: int = Query(50, ge=1, le=200),
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Withdrawals whose provider outcome is unknown, oldest first."""
    return await withdrawal_service.list_pending_withdrawals(db, limit=limit)


@router.post(
    "/withdrawals/{transaction_id}/resolve",
    response_model=TransactionResponse,
    summary="[Admin] Resolve a pending jar withdrawal",
)
async def resolve_withdrawal(
    transaction_id: uuid.UUID,
    request: ResolveWithdrawalRequest,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Record what the provider's records show for a pending withdrawal.

    `failed` refunds the jar. Resolving a withdrawal that is no longer
    pending returns 409.
    """
    return await withdrawal_service.resolve_withdrawal(
        db,
        transaction_id,
        TransactionStatus(request.outcome),
        provider_reference=request.provider_reference,
        fee_sats=request.fee_sats,
    )
