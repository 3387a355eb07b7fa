"""
Notification service — best-effort payment push to connected clients.

PaymentNotifier keeps the websocket connections opened on /ws/payments,
keyed by account id (an account may have several tabs open). After a
settlement commits, the reconciler hands it a PaymentNotice:

  - The child who owns the jar receives a "payment_received" message
  - The parent who created the invoice receives the same message with
    data.childId added

Decoupling:
  payment_received() never awaits delivery. It schedules one asyncio task
  per notice and returns immediately, so a slow or broken socket can never
  delay, fail or roll back a settlement that has already been committed.
  Tasks are tracked so drain() can wait for in-flight deliveries at
  shutdown. A socket whose send fails is dropped from the registry.

Delivery is at-most-once: a client that is not connected when the
payment settles simply learns about it from the status endpoint.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from app.models.invoice import SettlementPath

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Anything that can receive a JSON message (a Starlette WebSocket in production)."""

    async def send_json(self, data: Any) -> None: ...


@dataclass(frozen=True)
class PaymentNotice:
    """What the notifier needs to know about a committed settlement."""

    payment_hash: str
    account_id: uuid.UUID
    creator_id: uuid.UUID | None
    amount_sats: int
    paid_at: datetime
    via: SettlementPath


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def connection_established_message(account_id: uuid.UUID, role: str) -> dict[str, Any]:
    return {
        "type": "connection_established",
        "data": {
            "accountId": str(account_id),
            "role": role,
            "timestamp": _timestamp(),
            "message": "Real-time notifications enabled",
        },
    }


def pong_message() -> dict[str, Any]:
    return {"type": "pong", "timestamp": _timestamp()}


class PaymentNotifier:
    def __init__(self):
        self._connections: dict[uuid.UUID, set[NotificationChannel]] = {}
        self._tasks: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Connection registry
    # -----------------------------------------------------------------------

    def register(self, account_id: uuid.UUID, channel: NotificationChannel) -> None:
        self._connections.setdefault(account_id, set()).add(channel)
        logger.info("Notification channel registered", extra={"account_id": str(account_id)})

    def unregister(self, account_id: uuid.UUID, channel: NotificationChannel) -> None:
        channels = self._connections.get(account_id)
        if not channels:
            return
        channels.discard(channel)
        if not channels:
            del self._connections[account_id]

    def connection_count(self, account_id: uuid.UUID) -> int:
        return len(self._connections.get(account_id, ()))

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    def payment_received(self, notice: PaymentNotice) -> None:
        """
        Schedule delivery of a settlement notice and return immediately.

        Must be called from a running event loop. Never raises because of
        a delivery problem.
        """
        task = asyncio.get_running_loop().create_task(self._deliver(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, notice: PaymentNotice) -> None:
        message = {
            "type": "payment_received",
            "data": {
                "paymentHash": notice.payment_hash,
                "amount": notice.amount_sats,
                "timestamp": notice.paid_at.isoformat(),
                "message": f"Payment of {notice.amount_sats} sats received!",
            },
        }
        await self._send(notice.account_id, message)

        if notice.creator_id is not None and notice.creator_id != notice.account_id:
            parent_message = {
                "type": "payment_received",
                "data": {
                    **message["data"],
                    "childId": str(notice.account_id),
                    "message": f"Child received payment of {notice.amount_sats} sats!",
                },
            }
            await self._send(notice.creator_id, parent_message)

    async def _send(self, account_id: uuid.UUID, message: dict[str, Any]) -> None:
        for channel in list(self._connections.get(account_id, ())):
            try:
                await channel.send_json(message)
            except Exception as exc:  # a dead socket must not affect other recipients
                logger.warning(
                    "Dropping notification channel after failed send",
                    extra={"account_id": str(account_id), "error": str(exc)},
                )
                self.unregister(account_id, channel)
