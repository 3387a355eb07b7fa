"""
Wallet service — balance and ledger reads.

Balances are read with a column SELECT rather than from an Account object
already in the session: settlement and withdrawals change balance_sats with
SQL-side increments, so an ORM instance loaded earlier in the request may
hold a stale value.

Ledger visibility:
  - Children see their own rows
  - Parents see their own rows and every row of their children
  - Admins see their own rows (the operator views live under /admin)
"""

import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AccountNotFoundError, UnauthorizedAccessError
from app.models.account import Account, AccountRole
from app.models.transaction import Transaction


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    """
    Fetch an active account by ID.

    Raises:
        AccountNotFoundError: If the account doesn't exist or is deactivated.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None or not account.is_active:
        raise AccountNotFoundError(account_id)
    return account


async def get_balance(db: AsyncSession, account_id: uuid.UUID) -> int:
    """Current balance in sats, read straight from the database."""
    balance = await db.scalar(select(Account.balance_sats).where(Account.id == account_id))
    if balance is None:
        raise AccountNotFoundError(account_id)
    return balance


async def get_child_for_parent(db: AsyncSession, parent: Account, child_id: uuid.UUID) -> Account:
    """
    Fetch a child account and verify the caller is its parent.

    Raises:
        AccountNotFoundError: If the child doesn't exist.
        UnauthorizedAccessError: If the child belongs to another parent.
    """
    child = await get_account(db, child_id)
    if child.role != AccountRole.CHILD:
        raise AccountNotFoundError(child_id)
    if child.parent_id != parent.id:
        raise UnauthorizedAccessError("You do not have permission to access this child")
    return child


async def list_transactions(
    db: AsyncSession,
    account: Account,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """
    Ledger rows visible to the caller, newest first.

    Args:
        db: Database session.
        account: The authenticated account.
        limit: Maximum rows to return.
        offset: Rows to skip (pagination).
    """
    query = select(Transaction)
    if account.role == AccountRole.PARENT:
        child_ids = select(Account.id).where(Account.parent_id == account.id)
        query = query.where(
            or_(Transaction.account_id == account.id, Transaction.account_id.in_(child_ids))
        )
    else:
        query = query.where(Transaction.account_id == account.id)

    result = await db.execute(
        query.order_by(Transaction.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def list_child_transactions(
    db: AsyncSession,
    child: Account,
    limit: int = 20,
    offset: int = 0,
) -> list[Transaction]:
    """One child's ledger rows, newest first. The caller checks parentage."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.account_id == child.id)
        .order_by(Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())
