import asyncio
import os
from typing import Dict, Optional

from models.room import RoomState
from config import settings


class InMemoryRoomStore:
    """Process-local store. Rooms survive reconnects but not restarts."""

    def __init__(self):
        self._rooms: Dict[str, Dict] = {}

    async def load(self, room_id: str) -> Optional[RoomState]:
        data = self._rooms.get(room_id)
        if data is None:
            return None
        return RoomState.model_validate(data)

    async def save(self, state: RoomState) -> None:
        # Stored as plain JSON data so callers can never alias the live state
        self._rooms[state.room_id] = state.model_dump(mode="json")


class FirestoreRoomStore:
    """
    Async-friendly Firestore store using run_in_executor to avoid
    blocking the event loop. One document per room, full snapshot per write.
    """

    def __init__(self, collection: Optional[str] = None):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)
        self.collection = collection or settings.firestore_collection

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _room_ref(self, room_id: str):
        return self.db.collection(self.collection).document(room_id)

    async def load(self, room_id: str) -> Optional[RoomState]:
        doc = await self._run(lambda: self._room_ref(room_id).get())
        if doc.exists:
            return RoomState.model_validate(doc.to_dict())
        return None

    async def save(self, state: RoomState) -> None:
        data = state.model_dump(mode="json")
        await self._run(lambda: self._room_ref(state.room_id).set(data))


_room_store = None


def get_room_store():
    """Lazy singleton, initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _room_store
    if _room_store is None:
        if settings.storage_backend == "firestore":
            _room_store = FirestoreRoomStore()
        elif settings.storage_backend == "memory":
            _room_store = InMemoryRoomStore()
        else:
            raise ValueError(f"Unknown storage backend: {settings.storage_backend!r}")
    return _room_store
