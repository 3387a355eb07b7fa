"""
Platform service — the operator's own wallet at the active provider.

The platform wallet is not a jar: it has no Account row and no ledger.
These operations talk to the provider directly with the platform
credential (LNBITS_ADMIN_KEY for LNbits; the merchant API key for
OpenNode) and leave the jar ledger untouched.
"""

import logging

from app.exceptions import InsufficientPermissionError, PayoutMismatchError
from app.providers.base import (
    CreatedInvoice,
    LightningProvider,
    ProviderPayment,
    WithdrawalReceipt,
    validate_amount,
    validate_payment_request,
)
from app.providers.selector import ProviderSelector

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_INVOICE_MEMO = "Admin withdrawal from Lightning wallet"


def _platform_key(provider: LightningProvider, operation: str) -> str | None:
    key = provider.platform_key
    if provider.requires_wallet_key and not key:
        logger.error("Platform credential not configured", extra={"provider": provider.name})
        raise InsufficientPermissionError(provider.name, operation)
    return key


async def create_platform_invoice(
    selector: ProviderSelector, amount_sats: int, memo: str | None = None
) -> CreatedInvoice:
    """
    Mint an invoice on the platform wallet.

    Not stored: paying it moves funds into the platform wallet, and no jar
    is credited. A webhook for it is logged as an unknown hash and ignored.
    """
    validate_amount(amount_sats)
    provider = selector.primary
    key = _platform_key(provider, "create_invoice")
    invoice = await provider.create_invoice(key, amount_sats, memo or DEFAULT_PLATFORM_INVOICE_MEMO)
    logger.info(
        "Platform invoice created",
        extra={"provider": provider.name, "amount_sats": amount_sats},
    )
    return invoice


async def withdraw_from_platform(
    selector: ProviderSelector, amount_sats: int, payment_request: str
) -> WithdrawalReceipt:
    """
    Pay an external invoice from the platform wallet.

    The invoice must encode exactly amount_sats, like a jar withdrawal.

    Raises:
        InvalidPaymentRequestError: If the invoice is not for amount_sats.
        InsufficientPermissionError: If the platform credential is missing
                                     or lacks payout rights.
        PaymentRejectedError: If the provider refused the payment.
        ProviderUnavailableError: If the outcome is unknown.
        PayoutMismatchError: If the provider paid a different amount.
    """
    validate_amount(amount_sats)
    validate_payment_request(payment_request, amount_sats)
    provider = selector.primary
    key = _platform_key(provider, "create_withdrawal")

    logger.warning(
        "Platform withdrawal requested",
        extra={"provider": provider.name, "amount_sats": amount_sats},
    )
    receipt = await provider.create_withdrawal(payment_request, key)
    if receipt.amount_sats is not None and receipt.amount_sats != amount_sats:
        logger.critical(
            "Provider paid a different amount than requested from the platform wallet",
            extra={
                "provider": provider.name,
                "withdrawal_id": receipt.withdrawal_id,
                "expected_sats": amount_sats,
                "paid_sats": receipt.amount_sats,
            },
        )
        raise PayoutMismatchError(receipt.withdrawal_id, amount_sats, receipt.amount_sats)
    return receipt


async def list_platform_payments(
    selector: ProviderSelector, limit: int = 50, offset: int = 0
) -> list[ProviderPayment]:
    """The platform wallet's payment history as the provider reports it."""
    provider = selector.primary
    return await provider.list_payments(_platform_key(provider, "list_payments"), limit=limit, offset=offset)
