"""
Realtime room registry and the order notifications pushed through it.

Delivery is best-effort: a room with no attached listener drops the message,
and nothing is queued for later. The order record stays the source of truth.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin_room"

ORDER_PAID_EVENT = "order_paid_notification"
ORDER_STATUS_EVENT = "order_status_updated"


def user_room(user_id) -> str:
    return f"user_{user_id}"


def chat_room(customer_id) -> str:
    return f"chat_{customer_id}"


class Listener(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Notifier(Protocol):
    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RoomRegistry:
    """Room id -> attached listeners (WebSocket connections in production)."""

    def __init__(self):
        # WebSocket objects are unhashable Mappings
        self._rooms: Dict[str, List[Listener]] = {}

    def attach(self, room: str, listener: Listener) -> None:
        listeners = self._rooms.setdefault(room, [])
        if not any(existing is listener for existing in listeners):
            listeners.append(listener)
        logger.info("Listener attached to %s (%d total)", room, len(self._rooms[room]))

    def detach(self, room: str, listener: Listener) -> None:
        listeners = self._rooms.get(room)
        if not listeners:
            return
        listeners[:] = [existing for existing in listeners if existing is not listener]
        if not listeners:
            del self._rooms[room]
        logger.info("Listener detached from %s", room)

    def listener_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        listeners = list(self._rooms.get(room, ()))
        if not listeners:
            logger.debug("No listeners in %s; dropping %s", room, event)
            return 0

        envelope = {"room": room, "type": event, "payload": payload, "timestamp": _now_iso()}
        delivered = 0
        for listener in listeners:
            try:
                await listener.send_json(envelope)
                delivered += 1
            except Exception:
                logger.warning("Dropping dead listener in %s after failed %s", room, event, exc_info=True)
                self.detach(room, listener)
        logger.info("Emitted %s to %s (%d listener(s))", event, room, delivered)
        return delivered


async def notify_admin_order_paid(notifier: Notifier, order_id: int, user_id: int, amount, status: str) -> int:
    return await notifier.emit_to_room(ADMIN_ROOM, ORDER_PAID_EVENT, {
        "type": "order_paid",
        "orderReviewId": order_id,
        "userId": user_id,
        "amount": str(amount) if amount is not None else None,
        "status": status,
        "message": f"Payment received for order #{order_id} (${amount})",
        "timestamp": _now_iso(),
    })


async def notify_user_status_changed(
    notifier: Notifier,
    order_id: int,
    user_id: int,
    previous_status: str,
    status: str,
    reviewed_at: datetime,
    correlation: Dict[str, str],
) -> int:
    status_data = {
        "userId": user_id,
        "status": status,
        "originalStatus": previous_status,
        "reviewedAt": reviewed_at.isoformat(),
    }
    status_data.update(correlation)
    return await notifier.emit_to_room(user_room(user_id), ORDER_STATUS_EVENT, {
        "orderId": order_id,
        "statusData": status_data,
        "timestamp": _now_iso(),
    })
