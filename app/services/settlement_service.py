"""
Settlement service — the single idempotent pending → paid transition.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. A Lightning payment is
confirmed to us by two independent paths:

  - Push: the provider's webhook (app/routers/webhooks.py)
  - Pull: a client polling GET /wallet/invoice/{payment_hash}

Either can fire first, twice, or at the same moment as the other, and an
operator can also settle by hand. Every path calls
SettlementReconciler.settle(), and settle() guarantees that the invoice is
credited exactly once.

One attempt, one DB transaction:
  1. Read the invoice by payment_hash (InvoiceNotFoundError if absent)
  2. Already paid → report already_settled, write nothing
  3. Observed amount != invoiced amount → AmountMismatchError, write nothing
  4. UPDATE invoices SET status='paid' ... WHERE id=:id AND status='pending'
     Zero rows means another writer won between step 1 and here; the
     attempt is abandoned and retried (and will then see step 2).
  5. UPDATE accounts SET balance_sats = balance_sats + :amount
  6. INSERT the deposit Transaction carrying the same payment_hash
  7. COMMIT

Concurrency:
  There is no lock held across attempts and no in-process mutex, so this
  works unchanged with several worker processes. Three things make the
  transition safe under races:
    - The conditional UPDATE in step 4 (compare-and-set on status)
    - The atomic increment in step 5 (no read-modify-write of the balance)
    - The UNIQUE constraint on transactions.payment_hash, which turns a
      duplicate credit into an IntegrityError even if steps 2 and 4 were
      somehow bypassed

  A stale transition, IntegrityError or OperationalError (SQLite "database
  is locked", PostgreSQL serialization failure) rolls the attempt back and
  retries after a short linear backoff, up to max_attempts. Exhausting the
  attempts raises SettlementFailedError and logs CRITICAL: the provider
  may hold the money while the jar shows nothing, and an operator must
  reconcile.

Sessions:
  Each attempt opens its own session from the injected session factory and
  never borrows the caller's request session. A settlement triggered by a
  request that the client abandons still runs to completion.

Notifications:
  Only after COMMIT, the notifier is handed a PaymentNotice. It schedules
  delivery in the background and returns, so notifications can never hold
  the transaction open or undo a settlement.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import AmountMismatchError, InvoiceNotFoundError, SettlementFailedError
from app.logging_config import LogContext
from app.models.account import Account
from app.models.invoice import Invoice, InvoiceStatus, SettlementPath
from app.models.transaction import Transaction, TransactionSource, TransactionStatus, TransactionType
from app.services.notification_service import PaymentNotice, PaymentNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    """
    Outcome of settle().

    already_settled=True is the normal answer for a redelivered webhook or a
    poll that lost the race; it is not an error.
    """

    payment_hash: str
    already_settled: bool
    amount_sats: int
    account_id: uuid.UUID
    paid_at: datetime | None
    # The path that performed the transition (not necessarily the caller)
    processed_via: SettlementPath | None


class _StaleTransition(Exception):
    """The conditional status update matched no row; another writer settled first."""


class SettlementReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: PaymentNotifier | None = None,
        max_attempts: int = 5,
        retry_backoff: float = 0.05,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self._notifier = notifier
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff

    async def settle(
        self,
        payment_hash: str,
        observed_amount_sats: int,
        via: SettlementPath,
    ) -> SettlementResult:
        """
        Transition an invoice from pending to paid exactly once.

        Args:
            payment_hash: The invoice's payment hash.
            observed_amount_sats: The amount the confirmation reports.
            via: Which confirmation path is calling (diagnostic only).

        Returns:
            SettlementResult; already_settled tells whether this call
            performed the transition.

        Raises:
            InvoiceNotFoundError: No invoice with this payment hash.
            AmountMismatchError: The confirmation's amount differs from the invoice.
            SettlementFailedError: The transaction could not commit after
                                   max_attempts attempts.
        """
        with LogContext.bind(payment_hash=payment_hash, via=via):
            for attempt in range(1, self._max_attempts + 1):
                try:
                    result, notice = await self._attempt(payment_hash, observed_amount_sats, via)
                except _StaleTransition:
                    logger.info("Invoice settled concurrently; re-reading", extra={"attempt": attempt})
                except (IntegrityError, OperationalError) as exc:
                    logger.warning(
                        "Settlement attempt rolled back",
                        extra={"attempt": attempt, "error": exc.__class__.__name__},
                    )
                else:
                    if notice is not None:
                        self._notify(notice)
                    return result

                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_backoff * attempt)

            logger.critical(
                "Settlement failed; payment may be confirmed but not credited",
                extra={"attempts": self._max_attempts, "observed_amount_sats": observed_amount_sats},
            )
            raise SettlementFailedError(payment_hash, self._max_attempts)

    async def _attempt(
        self,
        payment_hash: str,
        observed_amount_sats: int,
        via: SettlementPath,
    ) -> tuple[SettlementResult, PaymentNotice | None]:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Invoice).where(Invoice.payment_hash == payment_hash)
                )
                invoice = result.scalar_one_or_none()

                if invoice is None:
                    logger.warning("Settlement requested for unknown invoice")
                    raise InvoiceNotFoundError(payment_hash)

                if invoice.status == InvoiceStatus.PAID:
                    logger.info("Invoice already settled", extra={"processed_via": invoice.processed_via})
                    return (
                        SettlementResult(
                            payment_hash=payment_hash,
                            already_settled=True,
                            amount_sats=invoice.amount_sats,
                            account_id=invoice.account_id,
                            paid_at=invoice.paid_at,
                            processed_via=invoice.processed_via,
                        ),
                        None,
                    )

                if observed_amount_sats != invoice.amount_sats:
                    logger.error(
                        "Payment amount does not match invoice; refusing to settle",
                        extra={
                            "expected_sats": invoice.amount_sats,
                            "observed_sats": observed_amount_sats,
                        },
                    )
                    raise AmountMismatchError(payment_hash, invoice.amount_sats, observed_amount_sats)

                paid_at = datetime.now(timezone.utc)

                # Compare-and-set: only a still-pending invoice transitions
                transition = await session.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice.id, Invoice.status == InvoiceStatus.PENDING)
                    .values(status=InvoiceStatus.PAID, paid_at=paid_at, processed_via=via)
                    .execution_options(synchronize_session=False)
                )
                if transition.rowcount != 1:
                    raise _StaleTransition()

                await session.execute(
                    update(Account)
                    .where(Account.id == invoice.account_id)
                    .values(balance_sats=Account.balance_sats + invoice.amount_sats)
                    .execution_options(synchronize_session=False)
                )

                session.add(
                    Transaction(
                        account_id=invoice.account_id,
                        creator_id=invoice.creator_id,
                        type=TransactionType.DEPOSIT,
                        source=TransactionSource.LIGHTNING,
                        amount_sats=invoice.amount_sats,
                        payment_hash=payment_hash,
                        status=TransactionStatus.COMPLETED,
                        description=invoice.memo or "Lightning deposit",
                    )
                )
                await session.flush()

        logger.info(
            "Invoice settled",
            extra={"amount_sats": invoice.amount_sats, "account_id": str(invoice.account_id)},
        )
        notice = PaymentNotice(
            payment_hash=payment_hash,
            account_id=invoice.account_id,
            creator_id=invoice.creator_id,
            amount_sats=invoice.amount_sats,
            paid_at=paid_at,
            via=via,
        )
        return (
            SettlementResult(
                payment_hash=payment_hash,
                already_settled=False,
                amount_sats=invoice.amount_sats,
                account_id=invoice.account_id,
                paid_at=paid_at,
                processed_via=via,
            ),
            notice,
        )

    def _notify(self, notice: PaymentNotice) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.payment_received(notice)
        except Exception:  # the settlement is committed; a notifier fault must not surface
            logger.exception("Could not schedule payment notification")
