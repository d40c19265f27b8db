"""
Chat socket endpoint.

Clients connect to /ws?token=<access token> (or send an Authorization bearer header)
and exchange JSON envelopes of the form {"event": str, "data": {...}}.

Client events: send_message, typing, mark_read
Server events: connected, new_message, notification, message_sent,
               user_typing, message_read, error
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from config import get_db
from routers.auth.auth import authenticate_token
from routers.chat.schemas import MessageCreate, TypingEvent, MarkReadEvent
from routers.chat.helpers import create_message, deliver_message, mark_message_read
from utils.errors import first_validation_message
from .connection_manager import manager
from contextlib import asynccontextmanager
from typing import Any, Optional
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

UNAUTHORIZED_CLOSE_CODE = 4401


def _token_from_request(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    authorization = websocket.headers.get("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


def _session_scope(websocket: WebSocket):
    """One short-lived session per unit of socket work, honouring app-level get_db overrides"""
    session_provider = websocket.app.dependency_overrides.get(get_db, get_db)
    return asynccontextmanager(session_provider)()


async def _send_error(user_id: uuid.UUID, message: str) -> None:
    await manager.send_event(user_id, "error", {"message": message})


async def handle_client_event(db: AsyncSession, user_id: uuid.UUID, payload: Any) -> None:
    """Dispatch one client envelope; failures are reported back to the sender as `error` events"""
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        await _send_error(user_id, "Invalid event format")
        return

    event = payload["event"]
    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        await _send_error(user_id, "Invalid event format")
        return

    try:
        if event == "send_message":
            message, notification = await create_message(db, user_id, MessageCreate(**data))
            response = await deliver_message(message, notification)
            await manager.send_event(user_id, "message_sent", response.model_dump())

        elif event == "typing":
            typing = TypingEvent(**data)
            await manager.send_event(
                typing.receiver_id,
                "user_typing",
                {"user_id": str(user_id), "is_typing": typing.is_typing}
            )

        elif event == "mark_read":
            read = MarkReadEvent(**data)
            await mark_message_read(db, read.message_id, user_id)

        else:
            await _send_error(user_id, f"Unknown event: {event}")

    except ValidationError as e:
        await _send_error(user_id, first_validation_message(e))
    except HTTPException as e:
        await _send_error(user_id, str(e.detail))


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None)
):
    access_token = _token_from_request(websocket, token)
    try:
        if not access_token:
            raise HTTPException(status_code=401, detail="Authentication required")
        async with _session_scope(websocket) as db:
            current_user = await authenticate_token(access_token, db)
    except HTTPException as e:
        logger.info(f"Rejected chat socket: {e.detail}")
        await websocket.accept()
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason=str(e.detail))
        return

    user_id = current_user["user_id"]
    await manager.connect(websocket, user_id)
    await manager.send_event(user_id, "connected", {"user_id": str(user_id)})

    try:
        while True:
            payload = await websocket.receive_json()
            async with _session_scope(websocket) as db:
                await handle_client_event(db, user_id, payload)
    except WebSocketDisconnect:
        logger.debug(f"Chat socket closed by user {user_id}")
    except ValueError as e:
        logger.warning(f"Malformed frame from user {user_id}: {str(e)}")
    finally:
        manager.disconnect(user_id, websocket)
