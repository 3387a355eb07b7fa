"""
Invoice service — minting invoices and looking them up.

Who funds whom:
  - A child creates an invoice for their own jar with their own wallet key
  - A parent creates an invoice for one of their children with the PARENT's
    wallet key; creator_id records the parent

Credential capture:
  The wallet key used to mint an invoice is copied (still encrypted) onto
  the invoice row. Status checks later use exactly that key and never
  re-derive it from the creator relationship, so a parent rotating or
  removing keys cannot strand their children's pending invoices.

Provider routing:
  The invoice records which provider minted it. Normally that is the
  selector's primary; it is the fallback only when the primary is
  unavailable and ENABLE_LIGHTNING_FALLBACK was set at startup.

Commit point:
  create_invoice commits before returning. The payer can pay the BOLT11
  string the instant they see it, and the webhook for that payment is
  processed on a different session that must be able to find the row.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    InvoiceNotFoundError,
    ProviderUnavailableError,
    UnauthorizedAccessError,
    WalletNotConfiguredError,
)
from app.logging_config import LogContext
from app.models.account import Account, AccountRole
from app.models.invoice import Invoice, InvoiceStatus
from app.providers.base import LightningProvider, ProviderKind, validate_amount
from app.providers.selector import ProviderSelector
from app.security import decrypt_optional

logger = logging.getLogger(__name__)

PENDING_INVOICE_LIMIT = 10


def _credential_for(provider: LightningProvider, issuer: Account) -> bytes | None:
    """The issuer's encrypted invoice key, if it belongs to this provider."""
    if issuer.wallet_provider != provider.kind:
        return None
    return issuer.encrypted_invoice_key


async def create_invoice(
    db: AsyncSession,
    selector: ProviderSelector,
    issuer: Account,
    child: Account,
    amount_sats: int,
    memo: str | None = None,
) -> Invoice:
    """
    Mint a Lightning invoice that credits `child`'s jar when paid.

    Args:
        db: Database session.
        selector: The provider selector built at startup.
        issuer: The account whose wallet mints the invoice (the child
                itself, or the parent funding the child).
        child: The account credited on payment.
        amount_sats: Positive integer amount.
        memo: Optional description; defaults to "Deposit to <name>'s jar".

    Returns:
        The persisted, committed pending Invoice.

    Raises:
        InvalidAmountError: If amount_sats is not a positive integer.
        WalletNotConfiguredError: If the provider needs a per-wallet key and
                                  the issuer has none.
        ProviderUnavailableError: If the provider (and any fallback) failed.
    """
    validate_amount(amount_sats)
    memo = memo or f"Deposit to {child.display_name}'s jar"

    provider = selector.primary
    encrypted_key = _credential_for(provider, issuer)
    if provider.requires_wallet_key and encrypted_key is None:
        raise WalletNotConfiguredError(issuer.id)

    with LogContext.bind(account_id=child.id):
        try:
            created = await provider.create_invoice(decrypt_optional(encrypted_key), amount_sats, memo)
        except ProviderUnavailableError:
            fallback = selector.fallback
            if fallback is None:
                raise
            fallback_key = _credential_for(fallback, issuer)
            if fallback.requires_wallet_key and fallback_key is None:
                raise
            logger.warning(
                "Primary provider unavailable; issuing invoice through fallback wallet",
                extra={"provider": provider.name, "fallback": fallback.name},
            )
            provider, encrypted_key = fallback, fallback_key
            created = await provider.create_invoice(decrypt_optional(encrypted_key), amount_sats, memo)

        invoice = Invoice(
            payment_hash=created.payment_hash,
            provider_invoice_id=created.provider_invoice_id,
            provider=provider.kind,
            account_id=child.id,
            creator_id=issuer.id if issuer.id != child.id else None,
            amount_sats=amount_sats,
            memo=memo,
            payment_request=created.payment_request,
            encrypted_status_key=encrypted_key,
            status=InvoiceStatus.PENDING,
        )
        db.add(invoice)
        await db.commit()

        logger.info(
            "Invoice created",
            extra={
                "payment_hash": created.payment_hash,
                "provider": provider.name,
                "amount_sats": amount_sats,
            },
        )
    return invoice


async def get_invoice_by_hash(db: AsyncSession, payment_hash: str) -> Invoice:
    """
    Fetch an invoice by payment hash.

    Raises:
        InvoiceNotFoundError: If no invoice has this payment hash.
    """
    result = await db.execute(select(Invoice).where(Invoice.payment_hash == payment_hash))
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise InvoiceNotFoundError(payment_hash)
    return invoice


async def get_invoice_by_provider_id(
    db: AsyncSession,
    provider: ProviderKind,
    provider_invoice_id: str,
) -> Invoice | None:
    """Resolve a provider-native id (e.g. an OpenNode charge id) to our invoice."""
    result = await db.execute(
        select(Invoice).where(
            Invoice.provider == provider,
            Invoice.provider_invoice_id == provider_invoice_id,
        )
    )
    return result.scalar_one_or_none()


def ensure_can_view(invoice: Invoice, account: Account) -> None:
    """
    Only the credited account, the parent who created the invoice, or an
    admin may see an invoice.

    Raises:
        UnauthorizedAccessError: For anyone else.
    """
    if account.role == AccountRole.ADMIN:
        return
    if account.id in (invoice.account_id, invoice.creator_id):
        return
    raise UnauthorizedAccessError("You do not have access to this invoice")


async def list_pending_invoices(
    db: AsyncSession,
    account: Account,
    limit: int = PENDING_INVOICE_LIMIT,
) -> list[Invoice]:
    """
    Most recent pending invoices visible to the caller.

    Children see invoices crediting their own jar. Parents see invoices
    they created and invoices crediting any of their children.
    """
    query = select(Invoice).where(Invoice.status == InvoiceStatus.PENDING)

    if account.role == AccountRole.PARENT:
        child_ids = select(Account.id).where(Account.parent_id == account.id)
        query = query.where(
            or_(Invoice.creator_id == account.id, Invoice.account_id.in_(child_ids))
        )
    else:
        query = query.where(Invoice.account_id == account.id)

    result = await db.execute(query.order_by(Invoice.created_at.desc()).limit(limit))
    return list(result.scalars().all())

