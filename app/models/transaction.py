"""
Transaction model — the append-only ledger of balance movements.

Every change to an account's balance_sats has exactly one Transaction row
written in the same DB transaction:

  - A settled Lightning invoice creates one DEPOSIT (positive amount)
  - A withdrawal creates one WITHDRAWAL (negative amount)

Key fields:
  - type: "deposit" or "withdrawal"
  - source: "lightning" for everything this service moves; "other" is kept
    for rows imported from rails this service does not operate
  - amount_sats: SIGNED — deposits positive, withdrawals negative, so the
    sum of an account's completed and pending rows equals its balance
  - payment_hash: UNIQUE when present. A second deposit for the same
    invoice fails with IntegrityError no matter which code path tries it.
  - status: deposits are written "completed". Withdrawals start "pending"
    and move to "completed" or "failed" once the provider answers.

Rows are never deleted. A failed withdrawal is not removed; its debit is
reversed by the refund that marks it failed.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionSource(str, enum.Enum):
    LIGHTNING = "lightning"
    OTHER = "other"


class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        # A zero-amount movement is meaningless; the sign carries the direction
        CheckConstraint("amount_sats != 0", name="ck_transactions_non_zero_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # The account whose balance moved
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )

    # The parent who funded the deposit (NULL when self-funded or a withdrawal)
    creator_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType),
        nullable=False,
    )

    source: Mapped[TransactionSource] = mapped_column(
        Enum(TransactionSource),
        nullable=False,
        default=TransactionSource.LIGHTNING,
    )

    # Signed amount in sats
    amount_sats: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Links a deposit to the invoice it settled; at most one row per hash
    payment_hash: Mapped[str | None] = mapped_column(
        String(128),
        unique=True,
        nullable=True,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    # Provider withdrawal id, once known
    provider_reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    fee_sats: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Indexed for newest-first ledger listing
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
