"""Real-time event channel over WebSockets.

Clients connect to ``/ws?token=<access token>`` and receive frames of
the form ``{"event": <name>, "data": <payload>}``. Broadcasts are
fire-and-forget: nothing is acknowledged or replayed, and a socket
that fails to receive is dropped.
"""

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from . import crud
from .auth import decode_token
from .database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class ConnectionManager:
    """Tracks open sockets and the rooms they joined."""

    def __init__(self):
        self.active: set[WebSocket] = set()
        self.rooms: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.active.discard(websocket)
        for room in list(self.rooms):
            self.rooms[room].discard(websocket)
            if not self.rooms[room]:
                del self.rooms[room]

    def join(self, websocket: WebSocket, room: str) -> None:
        self.rooms[room].add(websocket)

    async def emit(
        self,
        event: str,
        data: dict,
        room: str | None = None,
        exclude: WebSocket | None = None,
    ) -> int:
        """
        Send an event to every socket, or only to the members of ``room``.

        Args:
            event (str): Event name, e.g. ``emergency-alert``.
            data (dict): JSON-serializable payload.
            room (str | None): Target room; ``None`` broadcasts.
            exclude (WebSocket | None): Socket to skip, usually the sender.

        Returns:
            int: Number of sockets the frame was delivered to.
        """
        targets = self.rooms.get(room, set()) if room else self.active
        frame = {"event": event, "data": jsonable_encoder(data)}
        delivered = 0
        for websocket in list(targets):
            if websocket is exclude:
                continue
            try:
                await websocket.send_json(frame)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.warning("Dropping socket after failed send of %s: %s", event, exc)
                self.disconnect(websocket)
        return delivered


manager = ConnectionManager()


def get_event_bus() -> ConnectionManager:
    return manager


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "error", "data": {"message": message}})


async def handle_client_message(
    bus: ConnectionManager,
    websocket: WebSocket,
    user_id: int,
    message: dict,
    owns_emergency: Callable[[object], bool],
) -> None:
    """
    Apply one client frame.

    Supported actions:

    * ``join-user-room``: join ``user-<id>``, own id only.
    * ``join-emergency-room``: join ``emergency-<id>`` for an emergency
      the caller owns.
    * ``location-update``: relay to the other members of the emergency
      room as ``location-updated``.
    * ``emergency-alert``: send ``emergency-notification`` to the
      ``user-<id>`` room of every id in ``emergencyContacts``.

    Args:
        bus (ConnectionManager): Room registry to act on.
        websocket (WebSocket): Sending socket.
        user_id (int): Authenticated sender.
        message (dict): Decoded frame.
        owns_emergency (Callable): Returns True when the sender owns the
            given emergency id.
    """
    action = message.get("action")
    if action == "join-user-room":
        if str(message.get("userId")) != str(user_id):
            await _send_error(websocket, "Forbidden room")
            return
        bus.join(websocket, f"user-{user_id}")
        logger.info("User %s joined their room", user_id)
    elif action == "join-emergency-room":
        emergency_id = message.get("emergencyId")
        if not owns_emergency(emergency_id):
            await _send_error(websocket, "Forbidden room")
            return
        bus.join(websocket, f"emergency-{emergency_id}")
    elif action == "location-update":
        emergency_id = message.get("emergencyId")
        if not owns_emergency(emergency_id):
            await _send_error(websocket, "Forbidden room")
            return
        payload = {key: value for key, value in message.items() if key != "action"}
        await bus.emit(
            "location-updated", payload, room=f"emergency-{emergency_id}", exclude=websocket
        )
    elif action == "emergency-alert":
        contacts = message.get("emergencyContacts") or []
        if not isinstance(contacts, list):
            await _send_error(websocket, "emergencyContacts must be a list")
            return
        notification = {
            "type": "emergency",
            "message": f"{message.get('userName')} has triggered an emergency alert",
            "location": message.get("location"),
            "timestamp": datetime.utcnow(),
            "emergencyId": message.get("emergencyId"),
        }
        for contact_id in contacts:
            await bus.emit(
                "emergency-notification",
                notification,
                room=f"user-{contact_id}",
                exclude=websocket,
            )
    else:
        await _send_error(websocket, f"Unknown action: {action}")


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Authenticated event stream for the mobile client."""
    payload = decode_token(token) if token else None
    if payload is None or payload.get("uid") is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = payload["uid"]

    def owns_emergency(emergency_id) -> bool:
        return crud.emergency_belongs_to(db, emergency_id, user_id)

    await manager.connect(websocket)
    logger.info("User %s connected", user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Invalid JSON")
                continue
            if not isinstance(message, dict):
                await _send_error(websocket, "Invalid frame")
                continue
            await handle_client_message(manager, websocket, user_id, message, owns_emergency)
    except WebSocketDisconnect:
        logger.info("User %s disconnected", user_id)
    finally:
        manager.disconnect(websocket)
