"""
Pydantic schemas for invoice endpoints.

All amounts are integer sats. Request amounts are strict integers: "100",
100.5 and true are all rejected with 422 before any provider is called.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.invoice import InvoiceStatus, SettlementPath


class InvoiceCreateRequest(BaseModel):
    """Request body for POST /wallet/invoice and POST /wallet/child/{child_id}/invoice."""
    amount_sats: int = Field(gt=0, strict=True, description="Amount in sats (positive integer)")
    memo: str | None = Field(None, max_length=255)


class InvoiceCreateResponse(BaseModel):
    """What the payer needs: the BOLT11 string, and the hash to poll with."""
    payment_hash: str
    payment_request: str
    amount_sats: int

    model_config = {"from_attributes": True}


class InvoiceStatusResponse(BaseModel):
    """
    Response body for GET /wallet/invoice/{payment_hash}.

    verified=False means the provider could not be asked; the status shown
    is the last one recorded and `message` says why.
    """
    payment_hash: str
    paid: bool
    status: InvoiceStatus
    amount_sats: int
    memo: str
    created_at: datetime
    paid_at: datetime | None = None
    processed_via: SettlementPath | None = None
    verified: bool = True
    message: str | None = None

    model_config = {"from_attributes": True}


class PendingInvoiceResponse(BaseModel):
    payment_hash: str
    payment_request: str
    amount_sats: int
    memo: str
    account_id: uuid.UUID
    creator_id: uuid.UUID | None
    created_at: datetime

    model_config = {"from_attributes": True}
