"""
Wallet router — invoices, status checks, balances, ledger and withdrawals.

Endpoints:
  POST /wallet/invoice                      — Child creates an invoice for own jar
  POST /wallet/child/{child_id}/invoice     — Parent creates an invoice for own child
  GET  /wallet/invoice/{payment_hash}       — Check (and settle) an invoice
  GET  /wallet/pending-invoices             — Recent pending invoices
  GET  /wallet/balance                      — Caller's balance
  GET  /wallet/transactions                 — Caller's ledger
  GET  /wallet/child/{child_id}/balance     — Parent views own child's balance
  GET  /wallet/child/{child_id}/transactions — Parent views own child's ledger
  POST /wallet/withdraw                     — Pay a BOLT11 invoice from the jar

All amounts are integer sats.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import (
    get_current_account,
    get_provider_selector,
    get_reconciler,
    require_child,
    require_jar_account,
    require_parent,
)
from app.models.account import Account
from app.providers.selector import ProviderSelector
from app.schemas.invoice import (
    InvoiceCreateRequest,
    InvoiceCreateResponse,
    InvoiceStatusResponse,
    PendingInvoiceResponse,
)
from app.schemas.wallet import (
    BalanceResponse,
    ChildBalanceResponse,
    TransactionResponse,
    WithdrawalRequest,
)
from app.services import invoice_service, status_service, wallet_service, withdrawal_service
from app.services.settlement_service import SettlementReconciler

router = APIRouter()


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

@router.post(
    "/invoice",
    response_model=InvoiceCreateResponse,
    status_code=201,
    summary="Create an invoice for your own jar",
)
async def create_own_invoice(
    request: InvoiceCreateRequest,
    child: Account = Depends(require_child),
    selector: ProviderSelector = Depends(get_provider_selector),
    db: AsyncSession = Depends(get_db),
):
    """
    Mint a Lightning invoice that credits the caller's jar when paid.

    The invoice is minted with the child's own wallet key.
    """
    return await invoice_service.create_invoice(
        db, selector, issuer=child, child=child,
        amount_sats=request.amount_sats, memo=request.memo,
    )


@router.post(
    "/child/{child_id}/invoice",
    response_model=InvoiceCreateResponse,
    status_code=201,
    summary="Create an invoice for your child's jar",
)
async def create_child_invoice(
    child_id: uuid.UUID,
    request: InvoiceCreateRequest,
    parent: Account = Depends(require_parent),
    selector: ProviderSelector = Depends(get_provider_selector),
    db: AsyncSession = Depends(get_db),
):
    """
    Mint a Lightning invoice, paid from the parent's side, that credits one
    of the parent's children.

    The invoice is minted with the PARENT's wallet key.
    """
    child = await wallet_service.get_child_for_parent(db, parent, child_id)
    return await invoice_service.create_invoice(
        db, selector, issuer=parent, child=child,
        amount_sats=request.amount_sats, memo=request.memo,
    )


@router.get(
    "/invoice/{payment_hash}",
    response_model=InvoiceStatusResponse,
    summary="Check an invoice's payment status",
)
async def check_invoice(
    payment_hash: str,
    account: Account = Depends(get_current_account),
    selector: ProviderSelector = Depends(get_provider_selector),
    reconciler: SettlementReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """
    Report whether an invoice is paid, asking its provider if needed.

    If the provider confirms payment, the invoice is settled right here;
    this is the same settlement the webhook performs, so whichever happens
    first credits the jar and the other is a no-op.

    When the provider cannot be reached the last known state is returned
    with `verified: false`.
    """
    invoice = await invoice_service.get_invoice_by_hash(db, payment_hash)
    invoice_service.ensure_can_view(invoice, account)
    return await status_service.check_invoice_status(selector, reconciler, invoice)


@router.get(
    "/pending-invoices",
    response_model=list[PendingInvoiceResponse],
    summary="List recent pending invoices",
)
async def list_pending_invoices(
    account: Account = Depends(require_jar_account),
    db: AsyncSession = Depends(get_db),
):
    """Up to 10 most recent unpaid invoices for the caller (or the caller's children)."""
    return await invoice_service.list_pending_invoices(db, account)


# ---------------------------------------------------------------------------
# Balances and ledger
# ---------------------------------------------------------------------------

@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Get your balance",
)
async def get_balance(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    balance = await wallet_service.get_balance(db, account.id)
    return BalanceResponse(account_id=account.id, balance_sats=balance)


@router.get(
    "/transactions",
    response_model=list[TransactionResponse],
    summary="List your ledger",
)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """
    Ledger rows, newest first. Parents also see their children's rows.
    Withdrawals have negative amounts.
    """
    return await wallet_service.list_transactions(db, account, limit=limit, offset=offset)


@router.get(
    "/child/{child_id}/balance",
    response_model=ChildBalanceResponse,
    summary="Get your child's balance",
)
async def get_child_balance(
    child_id: uuid.UUID,
    parent: Account = Depends(require_parent),
    db: AsyncSession = Depends(get_db),
):
    child = await wallet_service.get_child_for_parent(db, parent, child_id)
    balance = await wallet_service.get_balance(db, child.id)
    return ChildBalanceResponse(child_id=child.id, display_name=child.display_name, balance_sats=balance)


@router.get(
    "/child/{child_id}/transactions",
    response_model=list[TransactionResponse],
    summary="List your child's ledger",
)
async def list_child_transactions(
    child_id: uuid.UUID,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    parent: Account = Depends(require_parent),
    db: AsyncSession = Depends(get_db),
):
    """One child's ledger rows, newest first."""
    child = await wallet_service.get_child_for_parent(db, parent, child_id)
    return await wallet_service.list_child_transactions(db, child, limit=limit, offset=offset)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

@router.post(
    "/withdraw",
    response_model=TransactionResponse,
    summary="Withdraw from your jar over Lightning",
)
async def withdraw(
    request: WithdrawalRequest,
    account: Account = Depends(require_jar_account),
    selector: ProviderSelector = Depends(get_provider_selector),
    db: AsyncSession = Depends(get_db),
):
    """
    Pay an external BOLT11 invoice from the caller's balance.

    The invoice must be for exactly `amount_sats`; amountless invoices are
    refused (400). The balance is debited before the provider is called
    and refunded if the provider refuses the payout. If the provider
    cannot be reached the outcome is unknown: the withdrawal stays pending
    for review and the response is 503.
    """
    return await withdrawal_service.withdraw(
        db, selector, account,
        amount_sats=request.amount_sats, payment_request=request.payment_request,
    )
