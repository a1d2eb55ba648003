"""
Room HTTP endpoints.

Routes:
  GET /api/rooms/{room_id}  Public room snapshot (same payload as STATE_UPDATE)
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from agents.room_coordinator import RoomRegistry, get_room_registry
from models.room import is_valid_room_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])


@router.get("/rooms/{room_id}")
async def get_room(room_id: str, registry: RoomRegistry = Depends(get_room_registry)):
    if not is_valid_room_id(room_id):
        raise HTTPException(status_code=400, detail="Invalid room id")
    room = await registry.get(room_id)
    return room.state.to_public()
