"""
Pydantic schemas for balance, ledger and withdrawal endpoints.

All monetary amounts are integer sats.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.transaction import TransactionSource, TransactionStatus, TransactionType


class BalanceResponse(BaseModel):
    """Response body for GET /wallet/balance."""
    account_id: uuid.UUID
    balance_sats: int


class ChildBalanceResponse(BaseModel):
    """Response body for GET /wallet/child/{child_id}/balance."""
    child_id: uuid.UUID
    display_name: str
    balance_sats: int


class TransactionResponse(BaseModel):
    """Public representation of a ledger row. Withdrawals have negative amounts."""
    id: uuid.UUID
    account_id: uuid.UUID
    creator_id: uuid.UUID | None
    type: TransactionType
    source: TransactionSource
    amount_sats: int
    payment_hash: str | None
    status: TransactionStatus
    provider_reference: str | None
    fee_sats: int
    description: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class WithdrawalRequest(BaseModel):
    """Request body for POST /wallet/withdraw."""
    amount_sats: int = Field(gt=0, strict=True, description="Amount in sats (positive integer)")
    payment_request: str = Field(min_length=1, description="BOLT11 invoice for exactly amount_sats")
