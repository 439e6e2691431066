import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
)
from fastapi.responses import JSONResponse

from storefront.auth import decode_admin_token, verify_token
from storefront.config import WEBHOOK_MAX_BODY_BYTES
from storefront.database import SessionLocal
from storefront.events import (
    dispatch_event, get_event_category, get_event_priority, is_critical_event, is_supported_event_type
)
from storefront.models import PaymentLedgerEntry
from storefront.notifications import ADMIN_ROOM, RoomRegistry, chat_room, user_room
from storefront.schemas import LedgerEntryOut, LedgerPage
from storefront.stripe_service import WebhookSignatureError, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def get_notifier(request: Request) -> RoomRegistry:
    return request.app.state.rooms


async def raw_body(request: Request) -> bytes:
    """The body exactly as received; signature checks depend on it."""
    payload = await request.body()
    if len(payload) > WEBHOOK_MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")
    return payload


def _rejection(message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": message, "code": code})


@router.post("/payments/webhook")
async def payment_webhook(
    background_tasks: BackgroundTasks,
    payload: bytes = Depends(raw_body),
    stripe_signature: Optional[str] = Header(None),
    notifier: RoomRegistry = Depends(get_notifier),
):
    if not stripe_signature:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        return _rejection("Missing Stripe signature", "MISSING_SIGNATURE")

    try:
        event = verify_webhook_signature(payload, stripe_signature)
    except WebhookSignatureError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        return _rejection("Invalid signature", "INVALID_SIGNATURE")

    logger.info(
        "Processing webhook event %s (%s) category=%s critical=%s priority=%s",
        event.id, event.type, get_event_category(event.type),
        is_critical_event(event.type), get_event_priority(event.type),
    )

    if not is_supported_event_type(event.type):
        logger.warning("Unsupported event type: %s", event.type)
        return {"received": True, "message": "Event type not supported"}

    # Acknowledge first; the gateway retries anything slower than its timeout
    background_tasks.add_task(dispatch_event, event, notifier)

    return {
        "success": True,
        "message": "Webhook processed successfully",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/payments/ledger", response_model=LedgerPage)
def list_ledger_entries(
    order_id: Optional[int] = None,
    status: Optional[str] = None,
    provider: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    auth=Depends(verify_token),
):
    db = SessionLocal()
    try:
        query = db.query(PaymentLedgerEntry)
        if order_id is not None:
            query = query.filter_by(order_id=order_id)
        if status:
            query = query.filter_by(status=status)
        if provider:
            query = query.filter_by(provider=provider)

        total = query.count()
        entries = (
            query.order_by(PaymentLedgerEntry.created_at.desc(), PaymentLedgerEntry.id.desc())
            .offset(max(offset, 0))
            .limit(min(max(limit, 1), 200))
            .all()
        )
        return LedgerPage(entries=[LedgerEntryOut.model_validate(e) for e in entries], total=total)
    finally:
        db.close()


@router.get("/payments/ledger/{transaction_id}", response_model=LedgerEntryOut)
def get_ledger_entry(transaction_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        entry = db.query(PaymentLedgerEntry).filter_by(transaction_id=transaction_id).first()
        if not entry:
            raise HTTPException(status_code=404, detail="Ledger entry not found")
        return LedgerEntryOut.model_validate(entry)
    finally:
        db.close()


async def _hold_room(websocket: WebSocket, room: str):
    rooms: RoomRegistry = websocket.app.state.rooms
    await websocket.accept()
    rooms.attach(room, websocket)
    try:
        await websocket.send_json({"room": room, "type": "connected", "payload": {}})
        while True:
            # Inbound frames are not used; reading keeps the disconnect observable
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        rooms.detach(room, websocket)


@router.websocket("/ws/admin")
async def admin_socket(websocket: WebSocket, token: str = ""):
    try:
        decode_admin_token(token)
    except ValueError:
        await websocket.close(code=1008)
        return
    await _hold_room(websocket, ADMIN_ROOM)


@router.websocket("/ws/users/{user_id}")
async def user_socket(websocket: WebSocket, user_id: int):
    await _hold_room(websocket, user_room(user_id))


@router.websocket("/ws/chat/{customer_id}")
async def chat_socket(websocket: WebSocket, customer_id: int):
    await _hold_room(websocket, chat_room(customer_id))
