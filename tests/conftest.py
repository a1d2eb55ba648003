"""Shared pytest fixtures: fake collaborators for the room coordinator and a fixed clock."""

import random
from datetime import datetime, timezone
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.game_master import GameMaster
from agents.room_coordinator import RoomCoordinator
from models.room import RoomState
from services.room_store import InMemoryRoomStore

NOW = datetime(2026, 3, 14, 18, 30, tzinfo=timezone.utc)

SAMPLE_NARRATION = (
    "You wake in a moonlit clearing. A lantern sways between the trees, "
    "and something large shifts in the branches above.\n\n"
    "1. [Follow the lantern light]\n"
    "2. [Climb the old oak]\n"
    "3. [Call out into the dark]"
)


class SnapshotRecorder:
    """Async publisher that keeps every snapshot the coordinator broadcasts."""

    def __init__(self):
        self.snapshots: List[Dict[str, Any]] = []

    async def __call__(self, room_id: str, snapshot: Dict[str, Any]) -> None:
        self.snapshots.append(snapshot)

    @property
    def phases(self) -> List[str]:
        return [s["phase"] for s in self.snapshots]


@pytest.fixture
def game_master() -> GameMaster:
    """Rules engine with a seeded tie-breaker and the default 20 second window"""
    return GameMaster(voting_window_seconds=20, rng=random.Random(42))


@pytest.fixture
def room_store() -> InMemoryRoomStore:
    return InMemoryRoomStore()


@pytest.fixture
def scheduler() -> MagicMock:
    """Stand-in for WakeupScheduler; records arm/cancel calls without real timers"""
    mock = MagicMock()
    mock.cancel.return_value = True
    return mock


@pytest.fixture
def narrator() -> MagicMock:
    """Narration generator that always answers with SAMPLE_NARRATION"""
    mock = MagicMock()
    mock.narrate = AsyncMock(return_value=SAMPLE_NARRATION)
    return mock


@pytest.fixture
def publisher() -> SnapshotRecorder:
    return SnapshotRecorder()


@pytest.fixture
def make_coordinator(game_master, room_store, scheduler, narrator, publisher):
    """Factory for coordinators wired to the fake collaborators"""

    def _make(state: RoomState = None, room_id: str = "room-1") -> RoomCoordinator:
        return RoomCoordinator(
            state=state or RoomState(room_id=room_id),
            store=room_store,
            scheduler=scheduler,
            narrator=narrator,
            game_master=game_master,
            publish=publisher,
            clock=lambda: NOW,
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator) -> RoomCoordinator:
    return make_coordinator()
