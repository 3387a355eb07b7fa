"""
Withdrawal service — paying a BOLT11 invoice out of a jar.

Order of operations:
  0. Check the invoice. The provider pays whatever amount the BOLT11
     string encodes, so it must encode exactly the amount being debited.
     Amountless and undecodable invoices are refused before anything is
     written.
  1. Debit. In one DB transaction:
       UPDATE accounts SET balance_sats = balance_sats - :amount
        WHERE id = :id AND balance_sats >= :amount
     plus a PENDING withdrawal Transaction with a negative amount. Zero
     rows updated means insufficient funds; nothing is written. Two
     concurrent withdrawals can therefore never both pass a balance check
     that only one of them fits.
  2. Call the provider with the account's admin (payout) key.
  3. Record the outcome:
       - Success → transaction COMPLETED with the provider's withdrawal id
         and fee
       - InsufficientPermissionError or PaymentRejectedError → the money
         certainly did not leave; the debit is refunded and the
         transaction marked FAILED
       - ProviderUnavailableError → the money may or may not have left.
         The debit stays and the transaction stays PENDING; the error
         propagates to the caller (503). An operator settles it with
         resolve_withdrawal() once the provider's records are checked.
       - The provider reports paying a different amount → the money left,
         so the debit stays and the transaction stays PENDING for an
         operator (PayoutMismatchError)

The provider call happens outside any open DB transaction, so a slow
provider does not hold a write lock on the account.

Fees:
  The provider fee is recorded on the transaction but not charged to the
  jar; it is paid by the platform wallet.
"""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    InsufficientFundsError,
    InsufficientPermissionError,
    PaymentRejectedError,
    PayoutMismatchError,
    ProviderUnavailableError,
    TransactionNotFoundError,
    WithdrawalAlreadyResolvedError,
)
from app.logging_config import LogContext
from app.models.account import Account
from app.models.transaction import Transaction, TransactionSource, TransactionStatus, TransactionType
from app.providers.base import validate_amount, validate_payment_request
from app.providers.selector import ProviderSelector
from app.security import decrypt_optional

logger = logging.getLogger(__name__)


async def _refund(db: AsyncSession, account_id: uuid.UUID, txn: Transaction, amount_sats: int) -> None:
    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_sats=Account.balance_sats + amount_sats)
        .execution_options(synchronize_session=False)
    )
    txn.status = TransactionStatus.FAILED
    await db.commit()


async def withdraw(
    db: AsyncSession,
    selector: ProviderSelector,
    account: Account,
    amount_sats: int,
    payment_request: str,
) -> Transaction:
    """
    Withdraw sats from an account's jar to an external Lightning invoice.

    Args:
        db: Database session.
        selector: The provider selector built at startup.
        account: The authenticated account withdrawing from its own balance.
        amount_sats: Positive integer amount.
        payment_request: BOLT11 invoice to pay; must be for amount_sats.

    Returns:
        The withdrawal Transaction, COMPLETED.

    Raises:
        InvalidAmountError: If amount_sats is not a positive integer.
        InvalidPaymentRequestError: If the invoice is not for amount_sats.
        InsufficientFundsError: If the balance is lower than amount_sats.
        InsufficientPermissionError: If the payout credential is missing or
                                     lacks rights (the debit is refunded).
        PaymentRejectedError: If the provider refused the payment (the
                              debit is refunded).
        ProviderUnavailableError: If the outcome is unknown (the debit stays
                                  and the transaction stays pending).
        PayoutMismatchError: If the provider paid a different amount (the
                             debit stays and the transaction stays pending).
    """
    validate_amount(amount_sats)
    validate_payment_request(payment_request, amount_sats)

    with LogContext.bind(account_id=account.id):
        # Step 1: guarded debit + pending ledger row, committed together
        debit = await db.execute(
            update(Account)
            .where(Account.id == account.id, Account.balance_sats >= amount_sats)
            .values(balance_sats=Account.balance_sats - amount_sats)
            .execution_options(synchronize_session=False)
        )
        if debit.rowcount != 1:
            available = await db.scalar(select(Account.balance_sats).where(Account.id == account.id))
            logger.info(
                "Withdrawal rejected for insufficient funds",
                extra={"requested_sats": amount_sats, "available_sats": available},
            )
            raise InsufficientFundsError(account.id, amount_sats, available or 0)

        txn = Transaction(
            account_id=account.id,
            type=TransactionType.WITHDRAWAL,
            source=TransactionSource.LIGHTNING,
            amount_sats=-amount_sats,
            status=TransactionStatus.PENDING,
            description="Lightning withdrawal",
        )
        db.add(txn)
        await db.commit()

        # Step 2: pay out with the account's admin key
        provider = selector.primary
        admin_key = None
        if account.wallet_provider == provider.kind:
            admin_key = decrypt_optional(account.encrypted_admin_key)
        if provider.requires_wallet_key and not admin_key:
            logger.error("Withdrawal attempted without a payout key", extra={"provider": provider.name})
            await _refund(db, account.id, txn, amount_sats)
            raise InsufficientPermissionError(provider.name, "create_withdrawal")

        try:
            receipt = await provider.create_withdrawal(payment_request, admin_key)
        except (InsufficientPermissionError, PaymentRejectedError) as exc:
            await _refund(db, account.id, txn, amount_sats)
            logger.error(
                "Withdrawal refused by provider; debit refunded",
                extra={"provider": provider.name, "error_type": exc.error_type},
            )
            raise
        except ProviderUnavailableError:
            logger.error(
                "Withdrawal outcome unknown; left pending for reconciliation",
                extra={"provider": provider.name, "transaction_id": str(txn.id)},
            )
            raise

        # Step 3: record the outcome
        txn.provider_reference = receipt.withdrawal_id
        txn.fee_sats = receipt.fee_sats
        if receipt.amount_sats is not None and receipt.amount_sats != amount_sats:
            await db.commit()
            logger.critical(
                "Provider paid a different amount than was debited; left pending for reconciliation",
                extra={
                    "provider": provider.name,
                    "transaction_id": str(txn.id),
                    "expected_sats": amount_sats,
                    "paid_sats": receipt.amount_sats,
                },
            )
            raise PayoutMismatchError(receipt.withdrawal_id, amount_sats, receipt.amount_sats)

        txn.status = TransactionStatus.COMPLETED
        await db.commit()

        logger.info(
            "Withdrawal completed",
            extra={"amount_sats": amount_sats, "fee_sats": receipt.fee_sats, "provider": provider.name},
        )
    return txn


async def list_pending_withdrawals(db: AsyncSession, limit: int = 50) -> list[Transaction]:
    """Withdrawals waiting for an operator, oldest first."""
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.type == TransactionType.WITHDRAWAL,
            Transaction.status == TransactionStatus.PENDING,
        )
        .order_by(Transaction.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def resolve_withdrawal(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    outcome: TransactionStatus,
    provider_reference: str | None = None,
    fee_sats: int | None = None,
) -> Transaction:
    """
    Close a PENDING withdrawal after checking the provider's records.

    COMPLETED keeps the debit. FAILED refunds it in the same DB
    transaction. The status change is conditional on the row still being
    PENDING, so two operators resolving the same withdrawal cannot refund
    it twice.

    Raises:
        TransactionNotFoundError: If no withdrawal has this ID.
        WithdrawalAlreadyResolvedError: If it is no longer pending.
    """
    if outcome not in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
        raise ValueError(f"A withdrawal cannot be resolved as {outcome.value}")

    txn = await db.scalar(select(Transaction).where(Transaction.id == transaction_id))
    if txn is None or txn.type != TransactionType.WITHDRAWAL:
        raise TransactionNotFoundError(transaction_id)

    values: dict = {"status": outcome}
    if provider_reference is not None:
        values["provider_reference"] = provider_reference
    if fee_sats is not None:
        values["fee_sats"] = fee_sats

    with LogContext.bind(account_id=txn.account_id):
        transition = await db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if transition.rowcount != 1:
            await db.rollback()
            await db.refresh(txn)
            raise WithdrawalAlreadyResolvedError(transaction_id, txn.status.value)

        if outcome == TransactionStatus.FAILED:
            await db.execute(
                update(Account)
                .where(Account.id == txn.account_id)
                .values(balance_sats=Account.balance_sats - txn.amount_sats)
                .execution_options(synchronize_session=False)
            )
        await db.commit()
        await db.refresh(txn)

        logger.warning(
            "Withdrawal resolved by operator",
            extra={"transaction_id": str(transaction_id), "outcome": outcome.value},
        )
    return txn
