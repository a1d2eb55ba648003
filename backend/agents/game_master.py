"""
Game Master: pure deterministic Python, no LLM, no I/O.

Responsibilities:
- Phase transitions (LOBBY → NARRATING → VOTING → NARRATING …, terminal GAME_OVER / VICTORY)
- Vote counting, duplicate-vote rejection, full-turnout detection
- Vote resolution and tie-breaking
- Option label extraction from the latest narration
- Narration directives ([HP: -10], [ITEM: +Key], [VICTORY] …)
- Fallback narration when the generator fails

Every entry point is `apply(state, event, now)`, which never mutates its input
and returns the next state together with the side effects the RoomCoordinator
must execute, in order. The effect set is closed: PERSIST, CANCEL_TIMER,
ARM_TIMER, CALL_GENERATOR.
"""
import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Union

from models.room import (
    MAX_HEALTH,
    OPTION_IDS,
    Phase,
    RoomState,
    RoundStatus,
    Speaker,
    Turn,
    empty_tally,
    default_history,
)

logger = logging.getLogger(__name__)

ADVENTURE_BEGINS = "The adventure begins."

FALLBACK_NARRATION = (
    "The narrator's voice falters, and for a moment the world grows hazy. "
    "When the mist clears, the path ahead splits in three.\n\n"
    "1. [Press on down the main road]\n"
    "2. [Search the surroundings for clues]\n"
    "3. [Set up camp and wait for the mist to lift]"
)


# ── Events ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParticipantJoined:
    participant_id: str


@dataclass(frozen=True)
class ParticipantLeft:
    participant_id: str


@dataclass(frozen=True)
class StartGame:
    participant_id: str


@dataclass(frozen=True)
class CastVote:
    participant_id: str
    choice: str


@dataclass(frozen=True)
class ResetRoom:
    participant_id: str


@dataclass(frozen=True)
class DeadlineFired:
    round_number: Optional[int] = None  # None = trust the phase check alone


@dataclass(frozen=True)
class NarrationCompleted:
    round_number: int
    text: str


@dataclass(frozen=True)
class NarrationFailed:
    round_number: int
    reason: str = ""


@dataclass(frozen=True)
class RoomRestored:
    """The room was loaded from the store by a fresh process."""


RoomEvent = Union[
    ParticipantJoined, ParticipantLeft, StartGame, CastVote, ResetRoom,
    DeadlineFired, NarrationCompleted, NarrationFailed, RoomRestored,
]


# ── Effects ───────────────────────────────────────────────────────────────────

class EffectKind(str, Enum):
    PERSIST = "persist"
    CANCEL_TIMER = "cancel_timer"
    ARM_TIMER = "arm_timer"
    CALL_GENERATOR = "call_generator"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    snapshot: Optional[RoomState] = None     # PERSIST
    deadline: Optional[datetime] = None      # ARM_TIMER
    round_number: Optional[int] = None       # ARM_TIMER, CALL_GENERATOR
    action: Optional[str] = None             # CALL_GENERATOR (None = opening scene)


@dataclass
class Transition:
    state: RoomState
    effects: List[Effect] = field(default_factory=list)
    accepted: bool = True

    @property
    def kinds(self) -> List[EffectKind]:
        return [e.kind for e in self.effects]


def _persist(state: RoomState) -> Effect:
    return Effect(kind=EffectKind.PERSIST, snapshot=state.model_copy(deep=True))


# ── Directives ────────────────────────────────────────────────────────────────

_STAT_DIRECTIVE = re.compile(r"\[\s*(HP|HEALTH|GOLD)\s*:\s*([+-]?\s*\d+)\s*\]", re.IGNORECASE)
_ITEM_DIRECTIVE = re.compile(r"\[\s*ITEM\s*:\s*([+-])\s*([^\]]+?)\s*\]", re.IGNORECASE)
_VICTORY_DIRECTIVE = re.compile(r"\[\s*VICTORY\s*\]", re.IGNORECASE)
_GAME_OVER_DIRECTIVE = re.compile(r"\[\s*GAME[_ ]OVER\s*\]", re.IGNORECASE)


def apply_directives(state: RoomState, text: str) -> Optional[Phase]:
    """
    Mutate state.party_stats / state.inventory from tags embedded in narration.
    Returns the terminal phase the story reached, or None.
    """
    for stat, raw_delta in _STAT_DIRECTIVE.findall(text):
        delta = int(raw_delta.replace(" ", ""))
        if stat.upper() == "GOLD":
            state.party_stats.gold = max(0, state.party_stats.gold + delta)
        else:
            state.party_stats.health = min(MAX_HEALTH, max(0, state.party_stats.health + delta))

    for sign, item in _ITEM_DIRECTIVE.findall(text):
        if sign == "+":
            if item not in state.inventory:
                state.inventory.append(item)
        else:
            lowered = item.lower()
            state.inventory = [i for i in state.inventory if i.lower() != lowered]

    if _VICTORY_DIRECTIVE.search(text):
        return Phase.VICTORY
    if _GAME_OVER_DIRECTIVE.search(text) or state.party_stats.health <= 0:
        return Phase.GAME_OVER
    return None


class GameMaster:
    """
    Deterministic room rules engine.
    The random source and the voting window are injected so tests can pin both.
    """

    def __init__(self, voting_window_seconds: float = 20.0, rng: Optional[random.Random] = None):
        self.voting_window = timedelta(seconds=voting_window_seconds)
        self.rng = rng or random.Random()

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def apply(self, state: RoomState, event: RoomEvent, now: datetime) -> Transition:
        handler = {
            ParticipantJoined: self._on_joined,
            ParticipantLeft: self._on_left,
            StartGame: self._on_start,
            CastVote: self._on_vote,
            ResetRoom: self._on_reset,
            DeadlineFired: self._on_deadline,
            NarrationCompleted: self._on_narration_completed,
            NarrationFailed: self._on_narration_failed,
            RoomRestored: self._on_restored,
        }.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown room event: {event!r}")
        next_state = state.model_copy(deep=True)
        next_state.updated_at = now
        return handler(next_state, event, now)

    @staticmethod
    def _reject(state: RoomState, reason: str) -> Transition:
        logger.debug("[%s] Ignored event: %s", state.room_id, reason)
        return Transition(state=state, effects=[], accepted=False)

    # ── Presence ──────────────────────────────────────────────────────────────

    def _on_joined(self, state: RoomState, event: ParticipantJoined, now: datetime) -> Transition:
        state.connected_participants += 1
        return Transition(state=state, effects=[_persist(state)])

    def _on_left(self, state: RoomState, event: ParticipantLeft, now: datetime) -> Transition:
        # Votes already cast stay counted for this round
        state.connected_participants = max(0, state.connected_participants - 1)
        return Transition(state=state, effects=[_persist(state)])

    # ── Player actions ────────────────────────────────────────────────────────

    def _on_start(self, state: RoomState, event: StartGame, now: datetime) -> Transition:
        if state.phase != Phase.LOBBY:
            return self._reject(state, f"START_GAME during {state.phase.value}")
        if state.is_advancing:
            return self._reject(state, "START_GAME while a round is advancing")
        effects: List[Effect] = []
        self._begin_round(state, None, effects)
        return Transition(state=state, effects=effects)

    def _on_vote(self, state: RoomState, event: CastVote, now: datetime) -> Transition:
        if state.phase != Phase.VOTING:
            return self._reject(state, f"VOTE during {state.phase.value}")
        if state.is_advancing:
            return self._reject(state, "VOTE while a round is advancing")
        if event.choice not in OPTION_IDS:
            return self._reject(state, f"VOTE for unknown option {event.choice!r}")
        if state.has_voted(event.participant_id):
            return self._reject(state, f"duplicate vote from {event.participant_id}")

        state.vote_tally[event.choice] += 1
        state.voted_participants.append(event.participant_id)
        effects = [_persist(state)]

        if 0 < state.connected_participants <= len(state.voted_participants):
            logger.info(
                "[%s] Full turnout (%d/%d), resolving round %d early",
                state.room_id, len(state.voted_participants),
                state.connected_participants, state.round_number,
            )
            effects.append(Effect(kind=EffectKind.CANCEL_TIMER))
            self._resolve_votes(state, effects)
        return Transition(state=state, effects=effects)

    def _on_reset(self, state: RoomState, event: ResetRoom, now: datetime) -> Transition:
        if state.is_advancing:
            return self._reject(state, "RESET_STATE while a round is advancing")
        # round_number is kept so wake-ups armed before the reset stay fenced off
        state.narration_history = default_history()
        state.phase = Phase.LOBBY
        state.vote_tally = empty_tally()
        state.voted_participants = []
        state.voting_deadline = None
        state.party_stats.health = MAX_HEALTH
        state.party_stats.gold = 0
        state.inventory = []
        state.last_choice = None
        logger.info("[%s] Room reset to LOBBY by %s", state.room_id, event.participant_id)
        return Transition(state=state, effects=[Effect(kind=EffectKind.CANCEL_TIMER), _persist(state)])

    # ── Timer ─────────────────────────────────────────────────────────────────

    def _on_deadline(self, state: RoomState, event: DeadlineFired, now: datetime) -> Transition:
        # Stale firings are routine: cancellation is best-effort and may lose the race
        if state.phase != Phase.VOTING or state.is_advancing:
            return self._reject(state, f"deadline fired during {state.phase.value}")
        if event.round_number is not None and event.round_number != state.round_number:
            return self._reject(
                state, f"deadline for round {event.round_number} fired in round {state.round_number}"
            )
        effects: List[Effect] = []
        self._resolve_votes(state, effects)
        return Transition(state=state, effects=effects)

    # ── Vote resolution ───────────────────────────────────────────────────────

    def pick_winner(self, tally: Dict[str, int]) -> str:
        """
        Strictly highest tally wins. Ties (including the no-vote case, where all
        three options tie at zero) are broken uniformly at random.
        """
        counts = {option_id: tally.get(option_id, 0) for option_id in OPTION_IDS}
        top = max(counts.values())
        tied = [option_id for option_id, count in counts.items() if count == top]
        return tied[0] if len(tied) == 1 else self.rng.choice(tied)

    @staticmethod
    def extract_label(state: RoomState, option_id: str) -> str:
        label = state.current_options().get(option_id)
        return label or f"Option {option_id}"

    def _resolve_votes(self, state: RoomState, effects: List[Effect]) -> None:
        winner = self.pick_winner(state.vote_tally)
        label = self.extract_label(state, winner)
        logger.info(
            "[%s] Round %d resolved: option %s (%s) with tally %s",
            state.room_id, state.round_number, winner, label, state.vote_tally,
        )
        state.last_choice = label
        self._begin_round(state, label, effects)

    # ── Round advance ─────────────────────────────────────────────────────────

    def _begin_round(self, state: RoomState, action: Optional[str], effects: List[Effect]) -> None:
        state.round_number += 1
        state.narration_history.append(Turn(
            speaker=Speaker.PLAYER,
            text=f"The party chose: {action}" if action else ADVENTURE_BEGINS,
        ))
        state.phase = Phase.NARRATING
        state.round_status = RoundStatus.ADVANCING
        state.vote_tally = empty_tally()
        state.voted_participants = []
        state.voting_deadline = None
        effects.append(_persist(state))
        effects.append(Effect(
            kind=EffectKind.CALL_GENERATOR,
            round_number=state.round_number,
            action=action,
        ))

    def _is_current_advance(self, state: RoomState, round_number: int) -> bool:
        return state.is_advancing and state.round_number == round_number

    def _open_voting(self, state: RoomState, now: datetime, effects: List[Effect]) -> None:
        state.phase = Phase.VOTING
        state.round_status = RoundStatus.IDLE
        state.voting_deadline = now + self.voting_window
        effects.append(Effect(
            kind=EffectKind.ARM_TIMER,
            deadline=state.voting_deadline,
            round_number=state.round_number,
        ))
        effects.append(_persist(state))

    def _on_narration_completed(
        self, state: RoomState, event: NarrationCompleted, now: datetime
    ) -> Transition:
        if not self._is_current_advance(state, event.round_number):
            return self._reject(state, f"stale narration for round {event.round_number}")

        state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text=event.text))
        ending = apply_directives(state, event.text)
        effects: List[Effect] = []
        if ending is not None:
            state.phase = ending
            state.round_status = RoundStatus.IDLE
            effects.append(_persist(state))
            logger.info("[%s] Story ended in round %d: %s", state.room_id, state.round_number, ending.value)
        else:
            self._open_voting(state, now, effects)
            logger.info("[%s] Round %d narrated, voting open", state.room_id, state.round_number)
        return Transition(state=state, effects=effects)

    def _on_narration_failed(
        self, state: RoomState, event: NarrationFailed, now: datetime
    ) -> Transition:
        if not self._is_current_advance(state, event.round_number):
            return self._reject(state, f"stale narration failure for round {event.round_number}")

        state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text=FALLBACK_NARRATION))
        effects: List[Effect] = []
        self._open_voting(state, now, effects)
        logger.info("[%s] Round %d fell back to scripted narration", state.room_id, state.round_number)
        return Transition(state=state, effects=effects)

    # ── Restore ───────────────────────────────────────────────────────────────

    def _on_restored(self, state: RoomState, event: RoomRestored, now: datetime) -> Transition:
        # Connections do not survive a restart; clients rejoin and are recounted
        state.connected_participants = 0
        effects: List[Effect] = []
        if state.is_advancing:
            # The process died while the narrator was writing; that round's reply is lost
            logger.warning(
                "[%s] Restored mid-narration in round %d, falling back", state.room_id, state.round_number
            )
            state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text=FALLBACK_NARRATION))
            self._open_voting(state, now, effects)
        elif state.phase == Phase.VOTING:
            if state.voting_deadline is None:
                state.voting_deadline = now + self.voting_window
            effects.append(Effect(
                kind=EffectKind.ARM_TIMER,
                deadline=state.voting_deadline,
                round_number=state.round_number,
            ))
            effects.append(_persist(state))
        else:
            effects.append(_persist(state))
        return Transition(state=state, effects=effects)
