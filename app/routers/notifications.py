"""
Notifications router — the payment websocket.

  WS /ws/payments?token=<JWT>

Browsers cannot set an Authorization header on a websocket handshake, so
the bearer token travels as a query parameter. An invalid token closes the
socket with code 1008 (policy violation) before it is registered.

Once connected the client receives:
  - {"type": "connection_established", ...} immediately
  - {"type": "payment_received", ...} whenever one of its invoices settles
  - {"type": "pong", ...} in answer to {"type": "ping"}
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.dependencies import authenticate_token
from app.services.notification_service import (
    PaymentNotifier,
    connection_established_message,
    pong_message,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ws_notifier(websocket: WebSocket) -> PaymentNotifier:
    return websocket.app.state.notifier


def get_ws_session_factory(websocket: WebSocket) -> async_sessionmaker[AsyncSession]:
    return websocket.app.state.session_factory


@router.websocket("/payments")
async def payments_socket(
    websocket: WebSocket,
    token: str | None = None,
    notifier: PaymentNotifier = Depends(get_ws_notifier),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_ws_session_factory),
):
    async with session_factory() as db:
        account = await authenticate_token(db, token)

    if account is None:
        logger.info("Websocket connection rejected: invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    notifier.register(account.id, websocket)
    try:
        await websocket.send_json(connection_established_message(account.id, account.role.value))
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json(pong_message())
    except WebSocketDisconnect:
        pass
    except ValueError:
        # Non-JSON frame; treat as a protocol error and hang up
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        notifier.unregister(account.id, websocket)
