"""
Narrator Agent: turns the room's story so far into the next story segment.

Uses Gemini text generation (not the Live API). The coordinator hands over the
narration history and the action the party voted for; the agent returns a
narration that should end with three numbered options.

Every failure (missing key, network, quota, safety block, empty reply) is
raised as NarrationError. The coordinator owns the fallback, so nothing here
invents story text.
"""
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from google import genai
from google.genai import types

from config import settings
from models.room import Speaker, Turn, strip_options

logger = logging.getLogger(__name__)


class NarrationError(Exception):
    """The narration generator could not produce a story segment."""


@dataclass(frozen=True)
class ContextTurn:
    role: str  # "user" | "model"
    text: str


OPENING_DIRECTIVE = (
    "Begin the adventure. Describe the opening scene and end with exactly "
    "three numbered options in the format '1. [Action]'."
)

ACTION_DIRECTIVE = (
    "The party voted to: {action}. Narrate what happens next and end with exactly "
    "three numbered options in the format '1. [Action]'."
)


def build_context(history: Sequence[Turn], action: Optional[str]) -> Tuple[str, List[ContextTurn]]:
    """
    Split the stored history into (system_instruction, turns).

    SYSTEM turns become the system instruction. Option lists are stripped from
    earlier narrator turns; the model only needs the prose to stay consistent,
    and old option lists make it repeat itself. A closing directive for the
    requested action is appended.
    """
    system_parts: List[str] = []
    turns: List[ContextTurn] = []
    for turn in history:
        if turn.speaker == Speaker.SYSTEM:
            system_parts.append(turn.text)
        elif turn.speaker == Speaker.NARRATOR:
            prose = strip_options(turn.text)
            if prose:
                turns.append(ContextTurn(role="model", text=prose))
        else:
            turns.append(ContextTurn(role="user", text=turn.text))

    directive = ACTION_DIRECTIVE.format(action=action) if action else OPENING_DIRECTIVE
    turns.append(ContextTurn(role="user", text=directive))
    return "\n\n".join(system_parts), turns


class GeminiNarrator:
    """Narration generator backed by Gemini generate_content."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model = model or settings.narrator_model
        self.temperature = settings.narrator_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.narrator_max_output_tokens
        self._client: Optional[Any] = None

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise NarrationError("GEMINI_API_KEY not set")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def narrate(self, history: Sequence[Turn], action: Optional[str]) -> str:
        system_instruction, turns = build_context(history, action)
        client = self._get_client()
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=[
                    types.Content(role=t.role, parts=[types.Part(text=t.text)])
                    for t in turns
                ],
                config=types.GenerateContentConfig(
                    system_instruction=system_instruction or None,
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
            text = (response.text or "").strip()
        except Exception as exc:
            raise NarrationError(f"Gemini call failed: {exc}") from exc

        if not text:
            raise NarrationError("Gemini returned an empty narration")
        logger.debug("Narration received (%d chars, %d context turns)", len(text), len(turns))
        return text
