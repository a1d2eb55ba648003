"""
Room Coordinator: the single writer of one room's state.

One RoomCoordinator per room, handed out by the RoomRegistry singleton.
Transport, timer and narration events all enter through the public on_* methods;
GameMaster.apply decides what changes, and the coordinator executes the
resulting effects in order:

  PERSIST         save the snapshot, then broadcast it to the room
  CANCEL_TIMER    best-effort cancel of the pending voting deadline
  ARM_TIMER       (re)arm the deadline, fenced with the round number
  CALL_GENERATOR  await the narrator, feed the outcome back as an event

Everything runs on the event loop, so an apply + state swap never interleaves
with another handler. Interleaving happens only at awaits (store writes and
the narrator call), and the round-advance guard in RoomState.round_status
covers the long one.
"""
import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from agents.game_master import (
    CastVote,
    DeadlineFired,
    Effect,
    EffectKind,
    GameMaster,
    NarrationCompleted,
    NarrationFailed,
    ParticipantJoined,
    ParticipantLeft,
    ResetRoom,
    RoomEvent,
    RoomRestored,
    StartGame,
)
from config import settings
from models.room import (
    ResetStateMessage,
    RoomState,
    StartGameMessage,
    VoteMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[str, Dict[str, Any]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoomCoordinator:

    def __init__(
        self,
        state: RoomState,
        store,
        scheduler,
        narrator,
        game_master: GameMaster,
        publish: Optional[Publisher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.state = state
        self.store = store
        self.scheduler = scheduler
        self.narrator = narrator
        self.game_master = game_master
        self.publish = publish
        self.clock = clock
        # Serialises store writes so snapshots land in transition order
        self._commit_lock = asyncio.Lock()

    @property
    def room_id(self) -> str:
        return self.state.room_id

    # ── Transport-facing operations ────────────────────────────────────────────

    async def on_participant_join(self, participant_id: str) -> bool:
        accepted = await self._dispatch(ParticipantJoined(participant_id))
        logger.info(
            "[%s] %s joined (%d connected)", self.room_id, participant_id, self.state.connected_participants
        )
        return accepted

    async def on_participant_leave(self, participant_id: str) -> bool:
        accepted = await self._dispatch(ParticipantLeft(participant_id))
        logger.info(
            "[%s] %s left (%d connected)", self.room_id, participant_id, self.state.connected_participants
        )
        return accepted

    async def on_client_event(self, participant_id: str, raw: Union[str, bytes]) -> bool:
        """Handle one inbound client message. Returns True if it changed the room."""
        message = parse_client_message(raw)
        if message is None:
            return False
        if isinstance(message, StartGameMessage):
            event: RoomEvent = StartGame(participant_id)
        elif isinstance(message, VoteMessage):
            event = CastVote(participant_id, message.choice)
        elif isinstance(message, ResetStateMessage):
            event = ResetRoom(participant_id)
        else:
            return False
        return await self._dispatch(event)

    async def on_deadline_fired(self, round_number: Optional[int] = None) -> bool:
        return await self._dispatch(DeadlineFired(round_number))

    async def restore(self) -> None:
        """Bring a room loaded from the store back to a playable state."""
        await self._dispatch(RoomRestored())

    # ── Event loop plumbing ───────────────────────────────────────────────────

    async def _dispatch(self, event: RoomEvent) -> bool:
        transition = self.game_master.apply(self.state, event, self.clock())
        if not transition.accepted:
            return False
        self.state = transition.state

        advance = next(
            (e for e in transition.effects if e.kind == EffectKind.CALL_GENERATOR), None
        )
        if advance is None:
            for effect in transition.effects:
                await self._run_effect(effect)
        else:
            async with self._advancing_round(advance.round_number):
                for effect in transition.effects:
                    await self._run_effect(effect)
        return True

    async def _run_effect(self, effect: Effect) -> None:
        if effect.kind == EffectKind.PERSIST:
            await self._commit(effect.snapshot)
        elif effect.kind == EffectKind.CANCEL_TIMER:
            if self.scheduler.cancel(self.room_id):
                logger.debug("[%s] Pending deadline cancelled", self.room_id)
        elif effect.kind == EffectKind.ARM_TIMER:
            self._arm(effect)
        elif effect.kind == EffectKind.CALL_GENERATOR:
            await self._narrate(effect)
        else:
            raise ValueError(f"Unknown effect: {effect.kind}")

    def _arm(self, effect: Effect) -> None:
        self.scheduler.schedule(
            self.room_id,
            effect.deadline,
            functools.partial(self.on_deadline_fired, effect.round_number),
        )

    async def _commit(self, snapshot: RoomState) -> None:
        async with self._commit_lock:
            await self.store.save(snapshot)
            if self.publish is not None:
                await self.publish(self.room_id, snapshot.to_public())

    async def _narrate(self, effect: Effect) -> None:
        round_number = effect.round_number
        try:
            text = await self.narrator.narrate(self.state.narration_history, effect.action)
        except Exception as exc:
            logger.warning(
                "[%s] Narration failed for round %d: %s", self.room_id, round_number, exc, exc_info=True
            )
            await self._dispatch(NarrationFailed(round_number, reason=str(exc)))
        else:
            await self._dispatch(NarrationCompleted(round_number, text))

    @asynccontextmanager
    async def _advancing_round(self, round_number: int):
        """
        Guarantees the round-advance guard is released, whatever happens between
        entering NARRATING and reopening the vote (a store write raising, the
        handler being cancelled ...). An aborted round takes the fallback path.
        """
        try:
            yield
        finally:
            if self.state.is_advancing and self.state.round_number == round_number:
                logger.error("[%s] Round %d advance aborted, releasing", self.room_id, round_number)
                transition = self.game_master.apply(
                    self.state, NarrationFailed(round_number, reason="aborted"), self.clock()
                )
                self.state = transition.state
                for effect in transition.effects:
                    if effect.kind == EffectKind.ARM_TIMER:
                        self._arm(effect)
                    elif effect.kind == EffectKind.PERSIST:
                        try:
                            await self._commit(effect.snapshot)
                        except Exception:
                            logger.exception("[%s] Could not persist released round", self.room_id)


# ── Registry ──────────────────────────────────────────────────────────────────

async def _publish_to_room(room_id: str, snapshot: Dict[str, Any]) -> None:
    from routers.ws_router import manager as ws_manager

    await ws_manager.broadcast_state(room_id, snapshot)


class RoomRegistry:
    """
    Hands out exactly one RoomCoordinator per room id.
    Rooms are created lazily on first access, from the store if it has a copy.
    """

    def __init__(
        self,
        store=None,
        scheduler=None,
        narrator=None,
        game_master: Optional[GameMaster] = None,
        publish: Optional[Publisher] = _publish_to_room,
    ):
        if store is None:
            from services.room_store import get_room_store
            store = get_room_store()
        if scheduler is None:
            from services.wakeup_scheduler import wakeup_scheduler
            scheduler = wakeup_scheduler
        if narrator is None:
            from agents.narrator_agent import GeminiNarrator
            narrator = GeminiNarrator()
        self.store = store
        self.scheduler = scheduler
        self.narrator = narrator
        self.game_master = game_master or GameMaster(
            voting_window_seconds=settings.voting_window_seconds
        )
        self.publish = publish
        self._rooms: Dict[str, RoomCoordinator] = {}
        self._lock = asyncio.Lock()

    async def get(self, room_id: str) -> RoomCoordinator:
        coordinator = self._rooms.get(room_id)
        if coordinator is not None:
            return coordinator

        async with self._lock:
            coordinator = self._rooms.get(room_id)
            if coordinator is not None:
                return coordinator
            stored = await self.store.load(room_id)
            coordinator = RoomCoordinator(
                state=stored or RoomState(room_id=room_id),
                store=self.store,
                scheduler=self.scheduler,
                narrator=self.narrator,
                game_master=self.game_master,
                publish=self.publish,
            )
            if stored is not None:
                logger.info("[%s] Restoring room from store (round %d)", room_id, stored.round_number)
                await coordinator.restore()
            self._rooms[room_id] = coordinator
        return coordinator


_room_registry: Optional[RoomRegistry] = None


def get_room_registry() -> RoomRegistry:
    """Lazy singleton. Use as a FastAPI dependency: Depends(get_room_registry)"""
    global _room_registry
    if _room_registry is None:
        _room_registry = RoomRegistry()
    return _room_registry
