#!/usr/bin/env python3
"""
Demo provisioning script — creates a family and an operator for demos.

!! NOT FOR PRODUCTION !!
This script writes accounts straight into the database with wallet keys
taken from the command line, then prints bearer tokens signed with the
local SECRET_KEY. Real deployments get accounts and tokens from the
identity service.

Usage:
    # Create accounts only:
    python demo/provision.py --invoice-key <key> --admin-key <key>

    # Also mint a 1,000 sat invoice for the first child through the running API:
    python demo/provision.py --invoice-key <key> --admin-key <key> --invoice 1000

    # Custom server URL:
    python demo/provision.py --invoice-key <key> --base-url http://localhost:9000

Accounts created:
    ┌──────────────┬────────┬──────────────────────────────┐
    │ Name         │ Role   │ Wallet keys                  │
    ├──────────────┼────────┼──────────────────────────────┤
    │ Operator     │ ADMIN  │ none                         │
    │ Sam          │ PARENT │ --invoice-key / --admin-key  │
    │ Maya         │ CHILD  │ --invoice-key / --admin-key  │
    │ Leo          │ CHILD  │ none (funded by Sam)         │
    └──────────────┴────────┴──────────────────────────────┘
"""

import argparse
import asyncio
import sys
import uuid
from datetime import timedelta

import httpx

BASE_URL = "http://localhost:8000"

# Demo tokens outlive the normal 30-minute expiry
TOKEN_LIFETIME = timedelta(days=7)


def log(msg: str) -> None:
    print(f"  {msg}")


async def create_accounts(invoice_key: str | None, admin_key: str | None) -> dict[str, uuid.UUID]:
    """Insert the demo accounts directly; there is no signup endpoint."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from app.config import settings
    from app.database import Base
    from app.models.account import Account, AccountRole
    from app.security import encrypt_value

    def with_keys(account: Account) -> Account:
        if invoice_key:
            account.wallet_provider = settings.LIGHTNING_PROVIDER
            account.encrypted_invoice_key = encrypt_value(invoice_key)
            if admin_key:
                account.encrypted_admin_key = encrypt_value(admin_key)
        return account

    admin = Account(id=uuid.uuid4(), role=AccountRole.ADMIN, display_name="Operator")
    parent = with_keys(Account(id=uuid.uuid4(), role=AccountRole.PARENT, display_name="Sam"))
    funded_child = with_keys(
        Account(id=uuid.uuid4(), role=AccountRole.CHILD, display_name="Maya", parent_id=parent.id)
    )
    child = Account(id=uuid.uuid4(), role=AccountRole.CHILD, display_name="Leo", parent_id=parent.id)

    engine = create_async_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession)
    async with session_factory() as session:
        session.add_all([admin, parent])
        await session.flush()
        session.add_all([funded_child, child])
        await session.commit()

    await engine.dispose()
    return {"Operator": admin.id, "Sam": parent.id, "Maya": funded_child.id, "Leo": child.id}


async def mint_invoice(client: httpx.AsyncClient, token: str, amount_sats: int) -> dict:
    resp = await client.post(
        f"{BASE_URL}/wallet/invoice",
        json={"amount_sats": amount_sats},
        headers={"Authorization": f"Bearer {token}"},
    )
    resp.raise_for_status()
    return resp.json()


async def provision(args: argparse.Namespace) -> None:
    global BASE_URL
    BASE_URL = args.base_url

    from app import models  # noqa: F401
    from app.security import create_access_token

    print("\n========================================")
    print("  DEMO PROVISIONING — NOT FOR PRODUCTION")
    print("========================================\n")

    print("Creating accounts...")
    ids = await create_accounts(args.invoice_key, args.admin_key)
    tokens = {
        name: create_access_token({"sub": str(account_id)}, expires_delta=TOKEN_LIFETIME)
        for name, account_id in ids.items()
    }
    for name, account_id in ids.items():
        log(f"{name:<10} {account_id}")

    print("\nBearer tokens:")
    for name, token in tokens.items():
        log(f"{name}: {token}")

    if args.invoice:
        print(f"\nMinting a {args.invoice} sat invoice for Maya...")
        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                health = await client.get(f"{BASE_URL}/health")
                health.raise_for_status()
            except (httpx.ConnectError, httpx.HTTPStatusError):
                print(f"  ERROR: Cannot connect to {BASE_URL}")
                print("  Start the server first: uvicorn app.main:app --reload\n")
                sys.exit(1)

            invoice = await mint_invoice(client, tokens["Maya"], args.invoice)
            log(f"payment_hash:    {invoice['payment_hash']}")
            log(f"payment_request: {invoice['payment_request']}")

    print("\nDone.\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision demo accounts for the Sats Jar API")
    parser.add_argument("--invoice-key", help="Provider invoice key for Sam and Maya")
    parser.add_argument("--admin-key", help="Provider admin (payout) key for Sam and Maya")
    parser.add_argument("--invoice", type=int, help="Mint an invoice of this many sats for Maya")
    parser.add_argument("--base-url", default=BASE_URL, help="API base URL")
    asyncio.run(provision(parser.parse_args()))


if __name__ == "__main__":
    main()
