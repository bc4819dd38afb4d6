"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time exchange chat
    - GET /exchanges/{exchange_id}/messages: Paginated message history

The WebSocket protocol supports:
    - Token authentication on connect (query ``token`` or Bearer header)
    - Room join with participant authorization
    - History replay on join, or only the gap on reconnect (``since``)
    - Real-time message fan-out to every session of both participants
    - Typing indicators with self-expiry

Protocol Flow:
    1. Client connects with a token
       → invalid token: socket closed with 1008 before accept
       → Server sends: {type: "connected", userId, sessionId}
    2. Client sends: {type: "join", exchangeId, since?}
       → non-participant / unknown exchange: {type: "error"} then close 1008
       → Server sends: {type: "history", exchangeId, messages, isRecovery}
    3. Client sends: {type: "send_message", exchangeId, content, images, clientId}
       → Server broadcasts: {type: "message_received", ...message}
       → on failure, sender only: {type: "error", code, message, clientId}
    4. Client sends: {type: "typing", exchangeId, isTyping?}
       → other participant receives: {type: "typing_changed", userId, isTyping}
    5. On disconnect → implicit leave
"""
import asyncio
import json
import logging
import math
from typing import Optional

from fastapi import APIRouter, Header, Query, Request, WebSocket, WebSocketDisconnect

from exchange_chat.auth import decode_access_token, extract_bearer_token
from exchange_chat.errors import Forbidden, NotFound, Unauthenticated

from .gateway import ChatGateway
from .schemas import EventType, error_event
from .store import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter()

# Close codes
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


@router.get("/exchanges/{exchange_id}/messages")
async def get_message_history(
    exchange_id: str,
    request: Request,
    page: int = Query(1, ge=1, description="Page number, 1 = most recent messages"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Messages per page"),
    authorization: Optional[str] = Header(default=None),
) -> dict:
    """Get paginated message history for an exchange.

    Only the exchange's participants may read it. Each page is returned
    oldest message first.

    Returns:
        JSON with messages array and pagination info.

    Example:
        GET /exchanges/ex1/messages?page=1&limit=50
    """
    gateway: ChatGateway = request.app.state.gateway
    user_id = decode_access_token(extract_bearer_token(authorization))

    participants = await gateway.exchanges.get_participants(exchange_id)
    if not participants.contains(user_id):
        raise Forbidden("Access to this exchange is denied")

    messages, total = await gateway.store.list_page(exchange_id, page, limit)
    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token"),
) -> None:
    """WebSocket endpoint for real-time exchange chat.

    Handles the complete lifecycle of one client connection: authentication,
    room membership, inbound frames and cleanup on disconnect.
    """
    gateway: ChatGateway = websocket.app.state.gateway

    # Connecting -> Authenticated; failure leaves no state behind
    token = token or extract_bearer_token(websocket.headers.get("authorization"))
    try:
        user_id = decode_access_token(token)
    except Unauthenticated as e:
        logger.warning(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()

    connection = gateway.open_connection(user_id, websocket.send_json)

    async def _write() -> None:
        await connection.outbox.run()
        if connection.outbox.overflowed:
            # Too slow to keep up; the client reconnects and replays history
            logger.warning(f"[WS] Closing slow session {connection.session_id} of user {user_id}")
            await websocket.close(code=TRY_AGAIN_LATER)

    writer = asyncio.create_task(_write())
    connection.outbox.offer({
        "type": EventType.CONNECTED.value,
        "userId": user_id,
        "sessionId": connection.session_id,
    })

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                connection.outbox.offer(error_event("invalid_argument", "Binary frames are not supported"))
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                connection.outbox.offer(error_event("invalid_argument", "Frame is not valid JSON"))
                continue
            logger.debug("[WS] Session %s received: type=%s", connection.session_id, data.get("type", "?") if isinstance(data, dict) else "?")

            try:
                await gateway.handle_frame(connection, data)
            except (Forbidden, NotFound) as e:
                # Authorization failures on join are fatal to the connection
                logger.warning(f"[WS] Join refused for user {user_id}: {e.message}")
                connection.outbox.offer(error_event(e.code, e.message))
                connection.outbox.close(drain=True)
                await writer
                await websocket.close(code=POLICY_VIOLATION)
                return

    except WebSocketDisconnect:
        logger.info(f"[WS] Session {connection.session_id} of user {user_id} disconnected")
    finally:
        await gateway.disconnect(connection)
        if not writer.done():
            writer.cancel()
