"""
Account model — a jar owner (child), a funder (parent), or an operator (admin).

Each account has:
  - A role: "parent", "child" or "admin"
  - For children, the parent account that funds them
  - A balance in integer sats
  - Its own Lightning wallet credentials, chosen at provisioning time

Balance management:
  `balance_sats` is the running balance. Application code never reads it,
  adds in Python and writes it back; every change is a single SQL statement
  of the form `balance_sats = balance_sats + :delta`, executed in the same
  DB transaction as the ledger row that explains it. Two concurrent
  settlements therefore cannot lose each other's increment.

  A CHECK constraint at the database level enforces that the balance can
  never go negative. Withdrawals additionally guard the debit with
  `WHERE balance_sats >= :amount`, so the constraint is the last line of
  defense rather than the first.

Wallet credentials:
  LNbits wallets have an invoice key (mint invoices, read payments) and an
  admin key (spend). Both are stored Fernet-encrypted; only the last four
  characters are ever shown. OpenNode uses a single platform key from
  configuration, so accounts on OpenNode may have no stored keys.

Why integer sats?
  The satoshi is the smallest Bitcoin unit this system handles, so every
  amount is an exact integer and no rounding can occur.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String, Boolean, Integer, DateTime, Enum, ForeignKey, LargeBinary, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.providers.base import ProviderKind


class AccountRole(str, enum.Enum):
    """
    Defines the role an account holds.

    Inherits from str so the enum value serializes naturally to JSON
    and can be stored as a simple string in the database.
    """
    PARENT = "parent"   # Funds children's jars
    CHILD = "child"     # Owns a jar
    ADMIN = "admin"     # Operator: platform wallet and manual settlement


class Account(Base):
    __tablename__ = "accounts"

    # Database-level constraint: balance can never be negative
    __table_args__ = (
        CheckConstraint(
            "balance_sats >= 0",
            name="ck_accounts_non_negative_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    role: Mapped[AccountRole] = mapped_column(
        Enum(AccountRole),
        nullable=False,
    )

    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Set for children only: the parent allowed to fund and view this jar
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    # Balance in sats, mutated only by atomic SQL increments
    balance_sats: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Which provider the stored credentials belong to
    wallet_provider: Mapped[ProviderKind | None] = mapped_column(
        Enum(ProviderKind),
        nullable=True,
    )

    # Fernet-encrypted wallet invoice key (mints invoices)
    encrypted_invoice_key: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
    )

    # Fernet-encrypted wallet admin key (payout rights)
    encrypted_admin_key: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
