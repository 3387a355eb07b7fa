"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all runs at startup
  2. Other modules can import from app.models directly
"""

from app.models.account import Account, AccountRole  # noqa: F401
from app.models.invoice import Invoice, InvoiceStatus, SettlementPath  # noqa: F401
from app.models.transaction import (  # noqa: F401
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
