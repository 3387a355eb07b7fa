"""
Webhooks router — provider payment confirmations (the push path).

Endpoints:
  POST /webhooks/lnbits        — LNbits payment webhook (HMAC-signed body)
  POST /webhooks/opennode      — OpenNode charge callback (hashed_order)
  GET  /webhooks/lnbits/test   — Reachability check for webhook configuration

Request handling is split in two:
  1. In the request: authenticate. A bad signature is a 401 and nothing
     else happens.
  2. After the response: parse and settle in a background task. The
     provider always gets 200 {"status": "received"} once authenticated,
     so it never retries because of our own processing errors; a failed
     settlement is picked up by the status poller instead.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.dependencies import get_provider_selector, get_reconciler, get_session_factory
from app.exceptions import WebhookSignatureError
from app.providers.base import ProviderKind
from app.providers.opennode import OpenNodeProvider
from app.providers.selector import ProviderSelector
from app.schemas.webhook import WebhookAck, WebhookTestResponse
from app.security import verify_webhook_signature
from app.services import webhook_service
from app.services.settlement_service import SettlementReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/lnbits",
    response_model=WebhookAck,
    summary="LNbits payment webhook",
)
async def lnbits_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    """
    Receive an LNbits payment notification.

    When LNBITS_WEBHOOK_SECRET is set, X-LNbits-Signature must be the hex
    HMAC-SHA256 of the raw body.
    """
    raw_body = await request.body()

    if settings.LNBITS_WEBHOOK_SECRET:
        signature = request.headers.get("X-LNbits-Signature")
        if not verify_webhook_signature(raw_body, signature, settings.LNBITS_WEBHOOK_SECRET):
            logger.error("Rejected LNbits webhook with invalid signature")
            raise WebhookSignatureError(ProviderKind.LNBITS.value)

    background_tasks.add_task(
        webhook_service.process_lnbits_event,
        reconciler,
        raw_body,
        settings.LNBITS_WEBHOOK_AMOUNT_MSAT,
    )
    return WebhookAck()


async def _callback_payload(request: Request) -> dict[str, Any]:
    """OpenNode posts form-encoded callbacks; JSON is accepted too."""
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    # application/x-www-form-urlencoded
    return dict(parse_qsl((await request.body()).decode("utf-8", errors="replace")))


@router.post(
    "/opennode",
    response_model=WebhookAck,
    summary="OpenNode charge callback",
)
async def opennode_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    selector: ProviderSelector = Depends(get_provider_selector),
    reconciler: SettlementReconciler = Depends(get_reconciler),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Receive an OpenNode charge callback.

    hashed_order must equal HMAC-SHA256(api_key, charge id).
    """
    payload = await _callback_payload(request)
    client = selector.client_for(ProviderKind.OPENNODE)

    charge_id = str(payload.get("id") or "")
    hashed_order = payload.get("hashed_order")
    if (
        not isinstance(client, OpenNodeProvider)
        or not charge_id
        or not client.verify_callback(charge_id, str(hashed_order) if hashed_order else None)
    ):
        logger.error("Rejected OpenNode callback with invalid hashed_order", extra={"charge_id": charge_id})
        raise WebhookSignatureError(ProviderKind.OPENNODE.value)

    background_tasks.add_task(
        webhook_service.process_opennode_callback,
        reconciler,
        session_factory,
        payload,
    )
    return WebhookAck()


@router.get(
    "/lnbits/test",
    response_model=WebhookTestResponse,
    summary="Webhook endpoint check",
)
async def lnbits_webhook_test():
    return WebhookTestResponse(
        status="ok",
        message="LNbits webhook endpoint is working",
        timestamp=datetime.now(timezone.utc),
    )
