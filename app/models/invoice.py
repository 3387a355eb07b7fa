"""
Invoice model — every Lightning invoice this system has issued.

Identity:
  - payment_hash: the provider-agnostic settlement key. UNIQUE; webhooks,
    status checks and the ledger all join on it.
  - provider_invoice_id: the provider's own id, used only when talking to
    that provider (OpenNode charge id; equal to payment_hash on LNbits).
  - provider: which provider issued it. Status checks route by this stored
    value, never by whichever provider happens to be active.

Ownership:
  - account_id: the child whose jar is credited on payment
  - creator_id: the parent who created it on the child's behalf, or NULL
    when the child created it

Credential:
  encrypted_status_key is the wallet key used to mint the invoice, copied
  at creation time. Status checks use it directly instead of re-deriving
  "whose key was this" from the creator relationship.

Status:
  pending → paid is the only transition, performed exclusively by
  SettlementReconciler with a conditional UPDATE (... WHERE status =
  'pending'). There is no code path that writes pending over paid.
  processed_via records which confirmation path won; it is diagnostic only.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, LargeBinary, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.providers.base import ProviderKind


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class SettlementPath(str, enum.Enum):
    """Which confirmation path performed the pending → paid transition."""
    WEBHOOK = "webhook"
    POLL = "poll"
    MANUAL = "manual"


class Invoice(Base):
    __tablename__ = "invoices"

    __table_args__ = (
        # Amount is fixed at creation and must be positive
        CheckConstraint("amount_sats > 0", name="ck_invoices_positive_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    payment_hash: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
        index=True,
    )

    provider_invoice_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )

    provider: Mapped[ProviderKind] = mapped_column(
        Enum(ProviderKind),
        nullable=False,
    )

    # The child account credited when this invoice is paid
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )

    # The parent who created it for the child (NULL when self-created)
    creator_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    amount_sats: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    memo: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    # BOLT11 string handed to the payer
    payment_request: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Minting credential, Fernet-encrypted (NULL for providers without per-wallet keys)
    encrypted_status_key: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
    )

    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus),
        nullable=False,
        default=InvoiceStatus.PENDING,
        index=True,
    )

    processed_via: Mapped[SettlementPath | None] = mapped_column(
        Enum(SettlementPath),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    # Set only by the settlement transition
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
