import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Speaker(str, Enum):
    SYSTEM = "system"
    PLAYER = "player"
    NARRATOR = "narrator"


class Phase(str, Enum):
    LOBBY = "LOBBY"
    NARRATING = "NARRATING"
    VOTING = "VOTING"
    GAME_OVER = "GAME_OVER"  # party wiped out
    VICTORY = "VICTORY"      # story reached its happy ending


TERMINAL_PHASES = frozenset({Phase.GAME_OVER, Phase.VICTORY})


class RoundStatus(str, Enum):
    IDLE = "idle"
    ADVANCING = "advancing"  # narration in flight; mutating events are ignored


OPTION_IDS = ("1", "2", "3")

MAX_HEALTH = 100
MAX_ROOM_ID_LENGTH = 64

STORYTELLER_PROMPT = """You are the Dungeon Master for a collaborative interactive fiction game.
Your goal is to narrate a compelling story based on the votes of the players.
Keep responses concise (under 100 words) and end with 3 distinct options for valid actions the players can take.
Format options as:
1. [Action 1]
2. [Action 2]
3. [Action 3]

You may change the state of the party with bracketed tags placed before the options:
  [HP: -10] or [HP: +5]        the party loses or regains health (the party starts at 100)
  [GOLD: +20] or [GOLD: -5]    the party gains or spends gold
  [ITEM: +Rusty Key]           the party picks up an item
  [ITEM: -Rusty Key]           the party loses or uses up an item
  [VICTORY]                    the story has reached a triumphant ending (no options needed)
  [GAME_OVER]                  the party has been defeated (no options needed)
Use tags sparingly and only when the story calls for it.
Start the story by describing a mysterious setting."""

# Matches "1. [Open the door]", "2) Run", "3: [Hide]" ... one option per line.
_OPTION_LINE = re.compile(r"^\s*\**\s*([1-3])\s*[.):\-]\s*(.+?)\s*$", re.MULTILINE)


def parse_options(text: str) -> Dict[str, str]:
    """Return {option_id: label} for every numbered option line found in text."""
    options: Dict[str, str] = {}
    for match in _OPTION_LINE.finditer(text or ""):
        option_id, label = match.group(1), match.group(2).strip().strip("*").strip()
        if label.startswith("[") and label.endswith("]"):
            label = label[1:-1].strip()
        if label and option_id not in options:
            options[option_id] = label
    return options


def strip_options(text: str) -> str:
    """Remove the numbered option list from a narration, keeping the prose."""
    return _OPTION_LINE.sub("", text or "").strip()


class Turn(BaseModel):
    speaker: Speaker
    text: str


class PartyStats(BaseModel):
    health: int = MAX_HEALTH
    gold: int = 0


def default_history() -> List[Turn]:
    return [Turn(speaker=Speaker.SYSTEM, text=STORYTELLER_PROMPT)]


def empty_tally() -> Dict[str, int]:
    return {option_id: 0 for option_id in OPTION_IDS}


class RoomState(BaseModel):
    room_id: str
    narration_history: List[Turn] = Field(default_factory=default_history)
    phase: Phase = Phase.LOBBY
    round_status: RoundStatus = RoundStatus.IDLE
    vote_tally: Dict[str, int] = Field(default_factory=empty_tally)
    voted_participants: List[str] = []
    connected_participants: int = 0
    voting_deadline: Optional[datetime] = None
    round_number: int = 0
    party_stats: PartyStats = Field(default_factory=PartyStats)
    inventory: List[str] = []
    last_choice: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_advancing(self) -> bool:
        return self.round_status == RoundStatus.ADVANCING

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def has_voted(self, participant_id: str) -> bool:
        return participant_id in self.voted_participants

    def latest_narration(self) -> Optional[str]:
        for turn in reversed(self.narration_history):
            if turn.speaker == Speaker.NARRATOR:
                return turn.text
        return None

    def current_options(self) -> Dict[str, str]:
        return parse_options(self.latest_narration() or "")

    def to_public(self) -> Dict[str, Any]:
        """Full snapshot for clients; they re-render from scratch on every update.
        The storyteller instructions are omitted."""
        deadline_ms = (
            int(self.voting_deadline.timestamp() * 1000)
            if self.voting_deadline else None
        )
        options = self.current_options()
        return {
            "roomId": self.room_id,
            "phase": self.phase.value,
            "roundNumber": self.round_number,
            "isAdvancing": self.is_advancing,
            "voteTally": dict(self.vote_tally),
            "votedParticipants": list(self.voted_participants),
            "votedCount": len(self.voted_participants),
            "connectedParticipants": self.connected_participants,
            "votingDeadline": deadline_ms,
            "history": [
                {"speaker": t.speaker.value, "text": t.text}
                for t in self.narration_history
                if t.speaker != Speaker.SYSTEM
            ],
            "partyStats": self.party_stats.model_dump(),
            "inventory": list(self.inventory),
            "lastChoice": self.last_choice,
            "options": [
                {"id": option_id, "label": options.get(option_id, f"Option {option_id}")}
                for option_id in OPTION_IDS
            ] if self.phase == Phase.VOTING else [],
        }


# ── Client → room messages ────────────────────────────────────────────────────

class StartGameMessage(BaseModel):
    type: Literal["START_GAME"]


class VoteMessage(BaseModel):
    type: Literal["VOTE"]
    choice: Literal["1", "2", "3"]

    @field_validator("choice", mode="before")
    @classmethod
    def _coerce_choice(cls, value: Any) -> Any:
        # Some clients send the option number as an int
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ResetStateMessage(BaseModel):
    type: Literal["RESET_STATE"]


ClientMessage = Annotated[
    Union[StartGameMessage, VoteMessage, ResetStateMessage],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: Union[str, bytes]) -> Optional[BaseModel]:
    """Parse an inbound JSON payload. Returns None for anything malformed or unknown."""
    try:
        return _client_message_adapter.validate_json(raw)
    except ValidationError:
        logger.debug("Dropping unparsable client message: %.120r", raw)
        return None


def is_valid_room_id(room_id: str) -> bool:
    return bool(room_id.strip()) and len(room_id) <= MAX_ROOM_ID_LENGTH
