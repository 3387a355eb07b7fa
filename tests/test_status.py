"""
Tests for GET /wallet/invoice/{payment_hash} (the pull confirmation path).

These tests verify:
  - Paid invoices are answered from the database with no provider call
  - Unpaid invoices are checked with the provider that minted them, using
    the key stored on the invoice
  - A provider "paid" answer settles the invoice via the poll path, and
    a later webhook for the same payment does not credit again
  - Provider outages degrade to verified=false instead of an error
  - Amount mismatches are reported as 409 and nothing is credited
  - Only the credited account, its funding parent, or an admin may look
"""

import asyncio

from app.models.invoice import InvoiceStatus, SettlementPath
from app.providers.base import ProviderKind


async def create_invoice(client, accounts, amount_sats: int) -> str:
    response = await client.post(
        "/wallet/invoice",
        json={"amount_sats": amount_sats},
        headers=accounts.headers(accounts.child),
    )
    assert response.status_code == 201, response.text
    return response.json()["payment_hash"]


class TestStatusCheck:
    async def test_unpaid_invoice_reports_pending(self, client, accounts, fake_provider):
        payment_hash = await create_invoice(client, accounts, 1000)

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["paid"] is False
        assert data["status"] == "pending"
        assert data["verified"] is True
        assert data["amount_sats"] == 1000
        assert fake_provider.status_calls == 1

    async def test_status_uses_the_key_stored_on_the_invoice(self, client, accounts, fake_provider):
        """An invoice minted by the parent is checked with the parent's key."""
        response = await client.post(
            f"/wallet/child/{accounts.child.id}/invoice",
            json={"amount_sats": 100},
            headers=accounts.headers(accounts.parent),
        )
        payment_hash = response.json()["payment_hash"]

        await client.get(f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child))

        assert fake_provider.status_keys == ["parent-invoice-key"]

    async def test_provider_paid_settles_via_poll(
        self, client, accounts, fake_provider, read_balance, read_invoice
    ):
        payment_hash = await create_invoice(client, accounts, 1000)
        fake_provider.mark_paid(payment_hash)

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
        )

        data = response.json()
        assert data["paid"] is True
        assert data["status"] == "paid"
        assert data["processed_via"] == "poll"
        assert data["paid_at"] is not None
        assert await read_balance(accounts.child) == 1000
        assert (await read_invoice(payment_hash)).processed_via == SettlementPath.POLL

    async def test_paid_invoice_makes_no_provider_call(self, client, accounts, fake_provider):
        payment_hash = await create_invoice(client, accounts, 1000)
        fake_provider.mark_paid(payment_hash)
        await client.get(f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child))
        calls_after_settlement = fake_provider.status_calls

        for _ in range(3):
            response = await client.get(
                f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
            )
            assert response.json()["paid"] is True

        assert fake_provider.status_calls == calls_after_settlement

    async def test_poll_then_webhook_credits_once(
        self, client, accounts, fake_provider, read_balance, read_ledger
    ):
        """1,000 sat invoice: poll before payment, poll after, then a late webhook."""
        payment_hash = await create_invoice(client, accounts, 1000)
        headers = accounts.headers(accounts.child)

        before = await client.get(f"/wallet/invoice/{payment_hash}", headers=headers)
        assert before.json()["paid"] is False

        fake_provider.mark_paid(payment_hash)
        after = await client.get(f"/wallet/invoice/{payment_hash}", headers=headers)
        assert after.json()["paid"] is True

        webhook = await client.post(
            "/webhooks/lnbits",
            json={"payment_hash": payment_hash, "amount": 1000, "paid": True, "pending": False},
        )
        assert webhook.status_code == 200

        assert await read_balance(accounts.child) == 1000
        assert len(await read_ledger(accounts.child)) == 1

    async def test_webhook_then_poll_reports_webhook_path(self, client, accounts, fake_provider):
        payment_hash = await create_invoice(client, accounts, 400)
        await client.post(
            "/webhooks/lnbits",
            json={"payment_hash": payment_hash, "amount": 400, "paid": True, "pending": False},
        )

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
        )

        data = response.json()
        assert data["paid"] is True
        assert data["processed_via"] == "webhook"
        assert fake_provider.status_calls == 0

    async def test_concurrent_poll_and_webhook_credit_once(
        self, client, accounts, fake_provider, read_balance, read_ledger
    ):
        payment_hash = await create_invoice(client, accounts, 2000)
        fake_provider.mark_paid(payment_hash)

        responses = await asyncio.gather(
            client.get(f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)),
            client.post(
                "/webhooks/lnbits",
                json={"payment_hash": payment_hash, "amount": 2000, "paid": True, "pending": False},
            ),
            client.get(f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)),
        )

        assert all(r.status_code == 200 for r in responses)
        assert await read_balance(accounts.child) == 2000
        assert len(await read_ledger(accounts.child)) == 1


class TestDegradedStatus:
    async def test_unreachable_provider_is_unverified(self, client, accounts, fake_provider, read_invoice):
        payment_hash = await create_invoice(client, accounts, 1000)
        fake_provider.unavailable = True

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["paid"] is False
        assert data["verified"] is False
        assert "try again" in data["message"]
        assert (await read_invoice(payment_hash)).status == InvoiceStatus.PENDING

    async def test_invoice_from_unconfigured_provider_is_unverified(
        self, client, accounts, fake_provider, make_invoice
    ):
        """An OpenNode invoice is never checked against the LNbits client."""
        invoice = await make_invoice(accounts.child, 500, provider=ProviderKind.OPENNODE)

        response = await client.get(
            f"/wallet/invoice/{invoice.payment_hash}", headers=accounts.headers(accounts.child)
        )

        data = response.json()
        assert data["verified"] is False
        assert "opennode" in data["message"]
        assert fake_provider.status_calls == 0

    async def test_provider_amount_mismatch_is_409(
        self, client, accounts, fake_provider, read_balance, read_invoice
    ):
        payment_hash = await create_invoice(client, accounts, 1000)
        fake_provider.mark_paid(payment_hash, reported_amount=100000)

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.child)
        )

        assert response.status_code == 409
        data = response.json()
        assert data["error_type"] == "amount_mismatch"
        assert data["expected_sats"] == 1000
        assert data["observed_sats"] == 100000
        assert await read_balance(accounts.child) == 0
        assert (await read_invoice(payment_hash)).status == InvoiceStatus.PENDING


class TestStatusAccess:
    async def test_unknown_invoice_is_404(self, client, accounts):
        response = await client.get(f"/wallet/invoice/{'0' * 64}", headers=accounts.headers(accounts.child))
        assert response.status_code == 404
        assert response.json()["error_type"] == "invoice_not_found"

    async def test_other_family_cannot_view(self, client, accounts, fake_provider):
        payment_hash = await create_invoice(client, accounts, 1000)

        for account in (accounts.other_parent, accounts.other_child, accounts.unfunded_child):
            response = await client.get(
                f"/wallet/invoice/{payment_hash}", headers=accounts.headers(account)
            )
            assert response.status_code == 403

        assert fake_provider.status_calls == 0

    async def test_funding_parent_can_view(self, client, accounts):
        response = await client.post(
            f"/wallet/child/{accounts.child.id}/invoice",
            json={"amount_sats": 100},
            headers=accounts.headers(accounts.parent),
        )
        payment_hash = response.json()["payment_hash"]

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.parent)
        )
        assert response.status_code == 200

    async def test_admin_can_view(self, client, accounts):
        payment_hash = await create_invoice(client, accounts, 1000)

        response = await client.get(
            f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.admin)
        )
        assert response.status_code == 200
