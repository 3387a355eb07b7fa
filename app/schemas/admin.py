"""Pydantic schemas for operator endpoints."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.models.invoice import SettlementPath


class ProviderInfoResponse(BaseModel):
    """Response body for GET /admin/provider."""
    provider: str
    fallback: str | None
    fallback_enabled: bool


class ProviderBalanceResponse(BaseModel):
    """Response body for GET /admin/provider/balance."""
    provider: str
    balance_sats: int


class ManualSettleRequest(BaseModel):
    """
    Request body for POST /admin/invoices/{payment_hash}/settle.

    The operator states the amount they saw arrive; it must equal the
    invoice amount exactly, like any other confirmation.
    """
    amount_sats: int = Field(gt=0, strict=True)


class SettlementResponse(BaseModel):
    payment_hash: str
    already_settled: bool
    amount_sats: int
    account_id: uuid.UUID
    paid_at: datetime | None
    processed_via: SettlementPath | None

    model_config = {"from_attributes": True}


class PlatformInvoiceRequest(BaseModel):
    """Request body for POST /admin/wallet/withdrawal-invoice."""
    amount_sats: int = Field(gt=0, strict=True)
    memo: str | None = Field(default=None, max_length=255)


class PlatformInvoiceResponse(BaseModel):
    payment_request: str
    payment_hash: str
    amount_sats: int


class PlatformWithdrawalRequest(BaseModel):
    """
    Request body for POST /admin/wallet/withdraw.

    payment_request must be a BOLT11 invoice for exactly amount_sats.
    """
    amount_sats: int = Field(gt=0, strict=True)
    payment_request: str = Field(min_length=1)


class PlatformWithdrawalResponse(BaseModel):
    provider: str
    withdrawal_id: str
    amount_sats: int
    fee_sats: int


class ProviderPaymentResponse(BaseModel):
    """One entry of GET /admin/wallet/transactions."""
    payment_id: str
    direction: Literal["incoming", "outgoing"]
    amount_sats: int
    fee_sats: int
    status: Literal["completed", "pending"]
    memo: str
    time: datetime | None


class ResolveWithdrawalRequest(BaseModel):
    """
    Request body for POST /admin/withdrawals/{transaction_id}/resolve.

    "completed": the provider shows the payment went out; the debit stays.
    "failed": the provider has no such payment; the debit is refunded.
    """
    outcome: Literal["completed", "failed"]
    provider_reference: str | None = Field(default=None, max_length=128)
    fee_sats: int | None = Field(default=None, ge=0, strict=True)
