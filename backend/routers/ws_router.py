"""
WebSocket Hub: real-time room connections.

URL: /ws/{room_id}?participantId={participant_id}

Connection flow:
  0. Room ids that are blank or too long are closed with code 4400
  1. Accept connection, register it under the room
  2. RoomCoordinator.on_participant_join (persists + broadcasts STATE_UPDATE)
  3. Send private "connected" message with the participant id and a snapshot
  4. Message loop: every text frame goes to RoomCoordinator.on_client_event
  5. On disconnect or failure: unregister, RoomCoordinator.on_participant_leave
     (failures close with code 1011)

Client → server message types:
  ping         keep-alive heartbeat, answered with "pong" (never reaches the room)
  START_GAME   leave the lobby
  VOTE         {"choice": "1" | "2" | "3"}
  RESET_STATE  back to a fresh lobby

Server → client:
  connected     private, once per connection
  STATE_UPDATE  broadcast after every room mutation, full snapshot in "data"
  pong / error
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from agents.room_coordinator import RoomRegistry, get_room_registry
from models.room import is_valid_room_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_id: {connection_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, room_id: str, connection_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._rooms.setdefault(room_id, {})[connection_id] = ws
        logger.debug(f"[{room_id}] {connection_id} connected ({len(self._rooms[room_id])} total)")

    def disconnect(self, room_id: str, connection_id: str) -> None:
        room_conns = self._rooms.get(room_id, {})
        room_conns.pop(connection_id, None)
        if not room_conns:
            self._rooms.pop(room_id, None)

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, room_id: str, connection_id: str, message: Dict) -> None:
        """Send a private message to a single connection."""
        ws = self._rooms.get(room_id, {}).get(connection_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] send_to {connection_id} failed: {exc}")
                self.disconnect(room_id, connection_id)

    async def broadcast(self, room_id: str, message: Dict) -> None:
        """Broadcast a message to every connection in a room."""
        for cid, ws in list(self._rooms.get(room_id, {}).items()):
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] broadcast to {cid} failed: {exc}")
                self.disconnect(room_id, cid)

    async def broadcast_state(self, room_id: str, snapshot: Dict[str, Any]) -> None:
        await self.broadcast(room_id, {"type": "STATE_UPDATE", "data": snapshot})


# Module-level singleton, also used by the room coordinator's publisher
manager = ConnectionManager()


def _new_participant_id() -> str:
    return "P_" + uuid.uuid4().hex[:8]


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{room_id}")
async def websocket_endpoint(
    ws: WebSocket,
    room_id: str,
    participantId: Optional[str] = Query(None, description="Stable participant id; generated when absent"),
    registry: RoomRegistry = Depends(get_room_registry),
):
    # ── Validate room id ───────────────────────────────────────────────────────
    if not is_valid_room_id(room_id):
        await ws.close(code=4400, reason="Invalid room id")
        return

    participant_id = (participantId or "").strip()[:64] or _new_participant_id()
    # One participant may hold several tabs; each socket is its own connection
    connection_id = f"{participant_id}:{uuid.uuid4().hex[:6]}"
    room = None
    joined = False

    try:
        await manager.connect(room_id, connection_id, ws)
        room = await registry.get(room_id)
        # The join is always accepted and counted before it is saved, so a failed
        # save still needs the matching leave
        joined = True
        await room.on_participant_join(participant_id)

        await manager.send_to(room_id, connection_id, {
            "type": "connected",
            "participantId": participant_id,
            "state": room.state.to_public(),
        })

        while True:
            raw = await ws.receive_text()
            await _handle_message(room_id, connection_id, participant_id, raw, registry)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("[%s] Connection for %s failed", room_id, participant_id)
        if ws.application_state == WebSocketState.CONNECTED:
            await ws.close(code=1011, reason="Internal server error")
    finally:
        manager.disconnect(room_id, connection_id)
        if joined:
            await room.on_participant_leave(participant_id)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    room_id: str,
    connection_id: str,
    participant_id: str,
    raw: str,
    registry: RoomRegistry,
) -> None:
    if _is_ping(raw):
        await manager.send_to(room_id, connection_id, {"type": "pong"})
        return
    try:
        room = await registry.get(room_id)
        await room.on_client_event(participant_id, raw)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("[%s] Unhandled error handling message from %s", room_id, participant_id)
        await manager.send_to(room_id, connection_id, {
            "type": "error", "message": "Internal server error", "code": "SERVER_ERROR"
        })


def _is_ping(raw: str) -> bool:
    if '"ping"' not in raw:
        return False
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return False
    return isinstance(data, dict) and data.get("type") == "ping"
