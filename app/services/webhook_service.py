"""
Webhook service — the push confirmation path.

The webhook routes authenticate the request, answer 200 immediately and
hand the payload to one of the functions below as a FastAPI background
task. From here on there is no HTTP caller to report to, so these
functions never raise: every failure is logged and the event dropped.

A dropped event is not lost money. The invoice stays pending and the
status poller (or an operator) settles it through the same primitive.

LNbits:
  Only events with paid=true and pending=false are settled. The amount is
  converted from millisatoshis when the deployment is configured that way.

OpenNode:
  Callbacks carry the charge id, not the payment hash, so the charge id is
  first resolved to our invoice through (provider, provider_invoice_id).
"""

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import AmountMismatchError, InvoiceNotFoundError, SettlementFailedError
from app.models.invoice import SettlementPath
from app.providers.base import ProviderKind
from app.schemas.webhook import LnbitsWebhookEvent, OpenNodeCallback
from app.services import invoice_service
from app.services.settlement_service import SettlementReconciler

logger = logging.getLogger(__name__)


async def _settle_quietly(
    reconciler: SettlementReconciler,
    payment_hash: str,
    amount_sats: int,
    provider: str,
) -> None:
    try:
        result = await reconciler.settle(payment_hash, amount_sats, SettlementPath.WEBHOOK)
    except InvoiceNotFoundError:
        logger.warning(
            "Webhook for unknown invoice ignored",
            extra={"provider": provider, "payment_hash": payment_hash},
        )
    except AmountMismatchError:
        # Already logged at ERROR by the reconciler
        pass
    except SettlementFailedError:
        # Already logged at CRITICAL by the reconciler
        pass
    except Exception:
        logger.exception(
            "Unexpected error while processing webhook",
            extra={"provider": provider, "payment_hash": payment_hash},
        )
    else:
        if result.already_settled:
            logger.info(
                "Duplicate webhook for settled invoice",
                extra={"provider": provider, "payment_hash": payment_hash},
            )


async def process_lnbits_event(
    reconciler: SettlementReconciler,
    raw_body: bytes,
    amount_in_msat: bool = False,
) -> None:
    """
    Parse and settle one LNbits payment webhook.

    Args:
        reconciler: The settlement primitive.
        raw_body: The request body exactly as received.
        amount_in_msat: Treat `amount` as millisatoshis.
    """
    try:
        event = LnbitsWebhookEvent.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning("Malformed LNbits webhook dropped", extra={"errors": exc.error_count()})
        return

    if not event.confirmed:
        logger.info(
            "LNbits webhook for unconfirmed payment ignored",
            extra={"payment_hash": event.payment_hash, "paid": event.paid, "pending": event.pending},
        )
        return

    amount_sats = abs(event.amount) // 1000 if amount_in_msat else event.amount
    await _settle_quietly(reconciler, event.payment_hash, amount_sats, ProviderKind.LNBITS.value)


async def process_opennode_callback(
    reconciler: SettlementReconciler,
    session_factory: async_sessionmaker[AsyncSession],
    payload: dict[str, Any],
) -> None:
    """
    Resolve an OpenNode charge callback to our invoice and settle it.

    The callback has already been authenticated by the route.
    """
    try:
        callback = OpenNodeCallback.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Malformed OpenNode callback dropped", extra={"errors": exc.error_count()})
        return

    if callback.status != "paid":
        logger.info(
            "OpenNode callback for unpaid charge ignored",
            extra={"charge_id": callback.id, "charge_status": callback.status},
        )
        return
    if callback.price is None:
        logger.warning("OpenNode paid callback without price dropped", extra={"charge_id": callback.id})
        return

    try:
        async with session_factory() as db:
            invoice = await invoice_service.get_invoice_by_provider_id(
                db, ProviderKind.OPENNODE, callback.id
            )
    except Exception:
        logger.exception("Could not look up invoice for OpenNode charge", extra={"charge_id": callback.id})
        return

    if invoice is None:
        logger.warning("OpenNode callback for unknown charge ignored", extra={"charge_id": callback.id})
        return

    await _settle_quietly(reconciler, invoice.payment_hash, callback.price, ProviderKind.OPENNODE.value)
