"""
Tests for the operator endpoints under /admin.

These tests verify:
  - Only admins can reach them
  - Provider info and the live platform balance
  - The platform wallet: payment history, invoices, and withdrawals that
    must match their invoice amount and never touch a jar
  - Manual settlement follows the same rules as every other path:
    exactly once, and only for the invoiced amount

Resolution of pending jar withdrawals is covered in test_withdrawals.py.
"""

from datetime import datetime, timezone

from app.exceptions import InsufficientPermissionError, PaymentRejectedError
from app.models.invoice import InvoiceStatus
from app.providers.base import ProviderPayment


class TestAdminAccess:
    async def test_non_admins_are_forbidden(self, client, accounts):
        for account in (accounts.parent, accounts.child):
            response = await client.get("/admin/provider", headers=accounts.headers(account))
            assert response.status_code == 403

    async def test_requires_authentication(self, client, accounts):
        response = await client.get("/admin/provider")
        assert response.status_code == 401


class TestProviderViews:
    async def test_provider_info(self, client, accounts):
        response = await client.get("/admin/provider", headers=accounts.headers(accounts.admin))

        assert response.status_code == 200
        assert response.json() == {"provider": "lnbits", "fallback": None, "fallback_enabled": False}

    async def test_platform_balance(self, client, accounts, fake_provider):
        fake_provider.balance_sats = 123456

        response = await client.get("/admin/provider/balance", headers=accounts.headers(accounts.admin))

        assert response.status_code == 200
        assert response.json() == {"provider": "lnbits", "balance_sats": 123456}

    async def test_balance_permission_error_is_502(self, client, accounts, fake_provider, monkeypatch):
        async def refuse(key=None):
            raise InsufficientPermissionError("lnbits", "get_account_balance")

        monkeypatch.setattr(fake_provider, "get_account_balance", refuse)

        response = await client.get("/admin/provider/balance", headers=accounts.headers(accounts.admin))

        assert response.status_code == 502
        assert response.json()["error_type"] == "insufficient_permission"

    async def test_balance_outage_is_503(self, client, accounts, fake_provider):
        fake_provider.unavailable = True

        response = await client.get("/admin/provider/balance", headers=accounts.headers(accounts.admin))

        assert response.status_code == 503


class TestManualSettlement:
    async def test_manual_settle_credits_once(
        self, client, accounts, make_invoice, read_balance, read_invoice
    ):
        invoice = await make_invoice(accounts.child, 2500)
        url = f"/admin/invoices/{invoice.payment_hash}/settle"
        headers = accounts.headers(accounts.admin)

        first = await client.post(url, json={"amount_sats": 2500}, headers=headers)
        second = await client.post(url, json={"amount_sats": 2500}, headers=headers)

        assert first.status_code == 200
        assert first.json()["already_settled"] is False
        assert first.json()["processed_via"] == "manual"
        assert second.json()["already_settled"] is True
        assert await read_balance(accounts.child) == 2500
        assert (await read_invoice(invoice.payment_hash)).status == InvoiceStatus.PAID

    async def test_manual_settle_amount_must_match(self, client, accounts, make_invoice, read_balance):
        invoice = await make_invoice(accounts.child, 2500)

        response = await client.post(
            f"/admin/invoices/{invoice.payment_hash}/settle",
            json={"amount_sats": 2400},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 409
        assert await read_balance(accounts.child) == 0

    async def test_manual_settle_unknown_invoice(self, client, accounts):
        response = await client.post(
            f"/admin/invoices/{'e' * 64}/settle",
            json={"amount_sats": 1},
            headers=accounts.headers(accounts.admin),
        )
        assert response.status_code == 404

    async def test_parent_cannot_settle_manually(self, client, accounts, make_invoice):
        invoice = await make_invoice(accounts.child, 100)

        response = await client.post(
            f"/admin/invoices/{invoice.payment_hash}/settle",
            json={"amount_sats": 100},
            headers=accounts.headers(accounts.parent),
        )
        assert response.status_code == 403


class TestPlatformWallet:
    async def test_transaction_history(self, client, accounts, fake_provider):
        fake_provider.payments = [
            ProviderPayment(
                payment_id="out-1", outgoing=True, amount_sats=500, fee_sats=1, paid=True,
                memo="", time=datetime(2026, 1, 2, tzinfo=timezone.utc),
            ),
            ProviderPayment(
                payment_id="in-1", outgoing=False, amount_sats=2100, fee_sats=0, paid=False,
                memo="Deposit to Alice's jar", time=None,
            ),
        ]

        response = await client.get(
            "/admin/wallet/transactions?limit=10", headers=accounts.headers(accounts.admin)
        )

        assert response.status_code == 200
        first, second = response.json()
        assert first["payment_id"] == "out-1"
        assert first["direction"] == "outgoing"
        assert first["status"] == "completed"
        assert second["direction"] == "incoming"
        assert second["status"] == "pending"
        assert second["memo"] == "Deposit to Alice's jar"
        # Read with the platform credential
        assert fake_provider.payment_list_keys == ["platform-admin-key"]

    async def test_transaction_history_pagination(self, client, accounts, fake_provider):
        fake_provider.payments = [
            ProviderPayment(
                payment_id=f"p-{i}", outgoing=False, amount_sats=i + 1, fee_sats=0, paid=True,
                memo="", time=None,
            )
            for i in range(5)
        ]

        response = await client.get(
            "/admin/wallet/transactions?limit=2&offset=2", headers=accounts.headers(accounts.admin)
        )

        assert [p["payment_id"] for p in response.json()] == ["p-2", "p-3"]

    async def test_history_without_platform_key_is_502(self, client, accounts, fake_provider):
        fake_provider._platform_key = None

        response = await client.get("/admin/wallet/transactions", headers=accounts.headers(accounts.admin))

        assert response.status_code == 502
        assert fake_provider.payment_list_keys == []

    async def test_withdrawal_invoice(self, client, accounts, fake_provider):
        response = await client.post(
            "/admin/wallet/withdrawal-invoice",
            json={"amount_sats": 5000},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["amount_sats"] == 5000
        assert data["payment_request"].startswith("lnbc5000")
        assert fake_provider.created_with_keys == ["platform-admin-key"]
        [minted] = fake_provider.invoices.values()
        assert minted["memo"] == "Admin withdrawal from Lightning wallet"

    async def test_withdrawal_invoice_is_not_a_jar_invoice(self, client, accounts):
        response = await client.post(
            "/admin/wallet/withdrawal-invoice",
            json={"amount_sats": 5000, "memo": "Sweep to cold storage"},
            headers=accounts.headers(accounts.admin),
        )
        payment_hash = response.json()["payment_hash"]

        lookup = await client.get(f"/wallet/invoice/{payment_hash}", headers=accounts.headers(accounts.admin))

        assert lookup.status_code == 404

    async def test_platform_withdrawal(self, client, accounts, fake_provider, bolt11_invoice, read_balance, read_ledger):
        payment_request = bolt11_invoice(20_000)

        response = await client.post(
            "/admin/wallet/withdraw",
            json={"amount_sats": 20_000, "payment_request": payment_request},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 200, response.text
        assert response.json() == {
            "provider": "lnbits",
            "withdrawal_id": "wd-1",
            "amount_sats": 20_000,
            "fee_sats": 2,
        }
        assert fake_provider.withdrawals == [(payment_request, "platform-admin-key")]
        # No jar was debited
        assert await read_balance(accounts.admin) == 0
        assert await read_ledger(accounts.admin) == []

    async def test_platform_withdrawal_amount_must_match_invoice(
        self, client, accounts, fake_provider, bolt11_invoice
    ):
        response = await client.post(
            "/admin/wallet/withdraw",
            json={"amount_sats": 1, "payment_request": bolt11_invoice(100_000)},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 400
        assert response.json()["error_type"] == "invalid_payment_request"
        assert fake_provider.withdrawals == []

    async def test_platform_withdrawal_rejected(self, client, accounts, fake_provider, bolt11_invoice):
        fake_provider.withdrawal_error = PaymentRejectedError("lnbits", "Insufficient balance")

        response = await client.post(
            "/admin/wallet/withdraw",
            json={"amount_sats": 100, "payment_request": bolt11_invoice(100)},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 502
        assert response.json()["error_type"] == "payment_rejected"

    async def test_platform_withdrawal_without_platform_key(
        self, client, accounts, fake_provider, bolt11_invoice
    ):
        fake_provider._platform_key = None

        response = await client.post(
            "/admin/wallet/withdraw",
            json={"amount_sats": 100, "payment_request": bolt11_invoice(100)},
            headers=accounts.headers(accounts.admin),
        )

        assert response.status_code == 502
        assert response.json()["error_type"] == "insufficient_permission"
        assert fake_provider.withdrawals == []

    async def test_platform_endpoints_require_admin(self, client, accounts, bolt11_invoice):
        headers = accounts.headers(accounts.parent)

        history = await client.get("/admin/wallet/transactions", headers=headers)
        invoice = await client.post("/admin/wallet/withdrawal-invoice", json={"amount_sats": 1}, headers=headers)
        withdraw = await client.post(
            "/admin/wallet/withdraw",
            json={"amount_sats": 100, "payment_request": bolt11_invoice(100)},
            headers=headers,
        )

        assert [history.status_code, invoice.status_code, withdraw.status_code] == [403, 403, 403]
