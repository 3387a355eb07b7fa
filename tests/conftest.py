"""
Test fixtures for the Sats Jar API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory / db_session: Fresh SQLite database per test
  - fake_provider / selector: A scripted Lightning provider (no network)
  - notifier / reconciler: The real settlement stack, wired to the test DB
  - client: Async HTTP test client with all app dependencies overridden
  - accounts: A parent with two children, a second family, and an admin,
    each with a bearer token
  - make_invoice: Insert a pending invoice row directly
  - read_balance / read_ledger / read_invoice: Re-read state on a fresh
    session, the way a second request would see it
  - provider_factory: The FakeProvider class, for multi-provider setups
  - bolt11_invoice: Make BOLT11 strings the (patched) bolt11.decode understands

Key design decisions:
  - The database is a FILE in pytest's tmp_path, not in-memory. In-memory
    aiosqlite shares a single connection, which would hide exactly the
    races the settlement tests are meant to exercise. With a file, every
    session gets its own connection and SQLite's real locking applies.
  - We override FastAPI's dependencies (get_db, the provider selector, the
    reconciler, ...) so the application code runs exactly as it does in
    production, only against the test database and the fake provider.
  - Environment variables are set BEFORE the app is imported, because
    app.config builds its Settings singleton at import time.
"""

import hashlib
import os
import uuid
from dataclasses import dataclass
from types import SimpleNamespace

from cryptography.fernet import Fernet

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("WALLET_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import bolt11  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.database import SQLITE_BUSY_TIMEOUT, Base, get_db  # noqa: E402
from app.dependencies import (  # noqa: E402
    get_notifier,
    get_provider_selector,
    get_reconciler,
    get_session_factory,
)
from app.exceptions import ProviderUnavailableError  # noqa: E402
from app.main import app  # noqa: E402
from app.models.account import Account, AccountRole  # noqa: E402
from app.models.invoice import Invoice, InvoiceStatus  # noqa: E402
from app.models.transaction import Transaction  # noqa: E402
from app.providers.base import (  # noqa: E402
    CreatedInvoice,
    InvoiceStatusSnapshot,
    LightningProvider,
    ProviderBalance,
    ProviderKind,
    ProviderPayment,
    WithdrawalReceipt,
    validate_amount,
)
from app.providers.selector import ProviderSelector  # noqa: E402
from app.routers.notifications import get_ws_notifier, get_ws_session_factory  # noqa: E402
from app.security import create_access_token, encrypt_value  # noqa: E402
from app.services.notification_service import PaymentNotifier  # noqa: E402
from app.services.settlement_service import SettlementReconciler  # noqa: E402


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider(LightningProvider):
    """
    In-memory Lightning provider with scripted behavior.

    Invoices it mints are unpaid until mark_paid() is called. Setting
    `unavailable` makes every call raise ProviderUnavailableError;
    `withdrawal_error` is raised from create_withdrawal. Payouts pay the
    amount the BOLT11 string encodes unless `payout_amount_sats` says
    otherwise.
    """

    def __init__(self, kind: ProviderKind = ProviderKind.LNBITS, requires_wallet_key: bool = True):
        self.kind = kind
        self.requires_wallet_key = requires_wallet_key
        self.invoices: dict[str, dict] = {}
        self.created_with_keys: list[str | None] = []
        self.status_keys: list[str | None] = []
        self.status_calls = 0
        self.unavailable = False
        self.withdrawal_error: Exception | None = None
        self.withdrawals: list[tuple[str, str | None]] = []
        self.payout_amount_sats: int | None = None
        self.balance_sats = 0
        self.payments: list[ProviderPayment] = []
        self.payment_list_keys: list[str | None] = []
        self._platform_key: str | None = "platform-admin-key"
        self._counter = 0

    @property
    def platform_key(self):
        return self._platform_key

    def _check_available(self) -> None:
        if self.unavailable:
            raise ProviderUnavailableError(self.name, "scripted outage")

    async def create_invoice(self, key, amount_sats, memo):
        validate_amount(amount_sats)
        self._check_available()
        self._counter += 1
        payment_hash = hashlib.sha256(f"{self.kind.value}-{self._counter}".encode()).hexdigest()
        provider_invoice_id = (
            payment_hash if self.kind == ProviderKind.LNBITS else f"charge-{self._counter}"
        )
        self.invoices[provider_invoice_id] = {
            "amount": amount_sats,
            "reported_amount": amount_sats,
            "paid": False,
            "memo": memo,
        }
        self.created_with_keys.append(key)
        return CreatedInvoice(
            payment_hash=payment_hash,
            provider_invoice_id=provider_invoice_id,
            payment_request=f"lnbc{amount_sats}n1fake{self._counter}",
        )

    def mark_paid(self, provider_invoice_id: str, reported_amount: int | None = None) -> None:
        invoice = self.invoices[provider_invoice_id]
        invoice["paid"] = True
        if reported_amount is not None:
            invoice["reported_amount"] = reported_amount

    async def get_status(self, provider_invoice_id, key=None):
        self.status_calls += 1
        self.status_keys.append(key)
        self._check_available()
        invoice = self.invoices[provider_invoice_id]
        return InvoiceStatusSnapshot(paid=invoice["paid"], amount_sats=invoice["reported_amount"])

    async def create_withdrawal(self, payment_request, key=None):
        self._check_available()
        if self.withdrawal_error is not None:
            raise self.withdrawal_error
        self.withdrawals.append((payment_request, key))
        paid = self.payout_amount_sats
        if paid is None:
            paid = bolt11.decode(payment_request).amount_msat // 1000
        return WithdrawalReceipt(withdrawal_id=f"wd-{len(self.withdrawals)}", amount_sats=paid, fee_sats=2)

    async def get_account_balance(self, key=None):
        self._check_available()
        return ProviderBalance(amount_sats=self.balance_sats)

    async def list_payments(self, key=None, limit=50, offset=0):
        self._check_available()
        self.payment_list_keys.append(key)
        return self.payments[offset:offset + limit]

    async def aclose(self):
        pass


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh file-backed SQLite database with all tables for each test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'satsjar-test.db'}",
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Application services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def fake_provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def selector(fake_provider):
    return ProviderSelector(primary=fake_provider)


@pytest_asyncio.fixture
async def notifier():
    notifier = PaymentNotifier()
    yield notifier
    await notifier.drain()


@pytest_asyncio.fixture
async def reconciler(session_factory, notifier):
    return SettlementReconciler(session_factory, notifier, max_attempts=5, retry_backoff=0.01)


@pytest_asyncio.fixture
async def client(session_factory, selector, reconciler, notifier):
    """
    Async HTTP test client with the test database and fake provider injected.

    The selector is resolved per request from the `selector` fixture, so a
    test can override that fixture to run against a different provider
    setup.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_selector] = lambda: selector
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_ws_notifier] = lambda: notifier
    app.dependency_overrides[get_ws_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@dataclass
class Seeded:
    parent: Account
    child: Account
    unfunded_child: Account
    other_parent: Account
    other_child: Account
    admin: Account

    def token(self, account: Account) -> str:
        return create_access_token({"sub": str(account.id)})

    def headers(self, account: Account) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(account)}"}


def _account(role: AccountRole, name: str, parent: Account | None = None, key_prefix: str | None = None) -> Account:
    account = Account(
        id=uuid.uuid4(),
        role=role,
        display_name=name,
        parent_id=parent.id if parent else None,
        balance_sats=0,
    )
    if key_prefix:
        account.wallet_provider = ProviderKind.LNBITS
        account.encrypted_invoice_key = encrypt_value(f"{key_prefix}-invoice-key")
        account.encrypted_admin_key = encrypt_value(f"{key_prefix}-admin-key")
    return account


@pytest_asyncio.fixture
async def accounts(session_factory) -> Seeded:
    """
    Two families and an admin:
      - parent → child (both with LNbits keys), unfunded_child (no keys)
      - other_parent → other_child
    """
    parent = _account(AccountRole.PARENT, "Pat", key_prefix="parent")
    child = _account(AccountRole.CHILD, "Alice", parent=parent, key_prefix="alice")
    unfunded_child = _account(AccountRole.CHILD, "Bob", parent=parent)
    other_parent = _account(AccountRole.PARENT, "Olive", key_prefix="olive")
    other_child = _account(AccountRole.CHILD, "Carol", parent=other_parent, key_prefix="carol")
    admin = _account(AccountRole.ADMIN, "Operator")

    async with session_factory() as session:
        session.add(parent)
        session.add(other_parent)
        await session.flush()
        session.add_all([child, unfunded_child, other_child, admin])
        await session.commit()

    return Seeded(
        parent=parent,
        child=child,
        unfunded_child=unfunded_child,
        other_parent=other_parent,
        other_child=other_child,
        admin=admin,
    )


@pytest_asyncio.fixture
async def make_invoice(session_factory):
    """Insert a pending LNbits invoice for an account and return it."""
    counter = 0

    async def _make(
        account: Account,
        amount_sats: int,
        creator: Account | None = None,
        provider: ProviderKind = ProviderKind.LNBITS,
        payment_hash: str | None = None,
    ) -> Invoice:
        nonlocal counter
        counter += 1
        payment_hash = payment_hash or hashlib.sha256(f"seeded-{counter}".encode()).hexdigest()
        invoice = Invoice(
            payment_hash=payment_hash,
            provider_invoice_id=payment_hash,
            provider=provider,
            account_id=account.id,
            creator_id=creator.id if creator else None,
            amount_sats=amount_sats,
            memo=f"Deposit to {account.display_name}'s jar",
            payment_request=f"lnbc{amount_sats}n1seeded{counter}",
            status=InvoiceStatus.PENDING,
        )
        async with session_factory() as session:
            session.add(invoice)
            await session.commit()
        return invoice

    return _make


@pytest.fixture
def provider_factory():
    """The FakeProvider class, for tests that need more than one provider."""
    return FakeProvider


@pytest.fixture
def bolt11_invoice(monkeypatch):
    """
    Patch bolt11.decode and return a factory of invoices it can decode.

    bolt11_invoice(400) is an invoice for 400 sats; bolt11_invoice(None)
    has no amount. Any other string fails to decode.
    """
    issued: dict[str, SimpleNamespace] = {}

    def fake_decode(payment_request):
        try:
            return issued[payment_request]
        except KeyError:
            raise ValueError("invalid bolt11 string") from None

    monkeypatch.setattr(bolt11, "decode", fake_decode)

    def _make(amount_sats: int | None, amount_msat: int | None = None) -> str:
        payment_request = f"lnbc{amount_sats or 0}n1ptest{len(issued)}"
        if amount_msat is None and amount_sats is not None:
            amount_msat = amount_sats * 1000
        issued[payment_request] = SimpleNamespace(
            amount_msat=amount_msat,
            payment_hash=hashlib.sha256(payment_request.encode()).hexdigest(),
        )
        return payment_request

    return _make


@pytest_asyncio.fixture
async def read_balance(session_factory):
    """Read an account's balance on a fresh session."""

    async def _read(account: Account) -> int:
        async with session_factory() as session:
            return await session.scalar(select(Account.balance_sats).where(Account.id == account.id))

    return _read


@pytest_asyncio.fixture
async def read_ledger(session_factory):
    """All ledger rows for an account, oldest first."""

    async def _read(account: Account) -> list[Transaction]:
        async with session_factory() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.account_id == account.id)
                .order_by(Transaction.created_at)
            )
            return list(result.scalars().all())

    return _read


@pytest_asyncio.fixture
async def read_invoice(session_factory):
    """Re-read an invoice by payment hash on a fresh session."""

    async def _read(payment_hash: str) -> Invoice:
        async with session_factory() as session:
            result = await session.execute(select(Invoice).where(Invoice.payment_hash == payment_hash))
            return result.scalar_one()

    return _read
