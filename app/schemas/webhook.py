"""
Pydantic schemas for provider webhooks.

Providers add fields over time; unknown fields are ignored rather than
rejected so a provider upgrade cannot silently stop settlements.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LnbitsWebhookEvent(BaseModel):
    """
    Body LNbits posts to the invoice's webhook URL.

    `amount` is sats unless LNBITS_WEBHOOK_AMOUNT_MSAT is set.
    """
    model_config = ConfigDict(extra="ignore")

    payment_hash: str = Field(min_length=1)
    amount: int
    paid: bool = False
    pending: bool = False

    @property
    def confirmed(self) -> bool:
        return self.paid and not self.pending


class OpenNodeCallback(BaseModel):
    """Charge callback OpenNode posts to callback_url (form-encoded or JSON)."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: str
    hashed_order: str = Field(min_length=1)
    price: int | None = None


class WebhookAck(BaseModel):
    status: str = "received"


class WebhookTestResponse(BaseModel):
    status: str
    message: str
    timestamp: datetime
