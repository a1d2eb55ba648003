"""Unit tests for the room data model, option parsing and client message parsing."""

from datetime import timedelta

import pytest

from conftest import NOW, SAMPLE_NARRATION
from models.room import (
    OPTION_IDS,
    Phase,
    ResetStateMessage,
    RoomState,
    Speaker,
    StartGameMessage,
    Turn,
    VoteMessage,
    parse_client_message,
    parse_options,
    strip_options,
)


class TestParseOptions:
    """Test suite for option extraction from narration text"""

    def test_bracketed_options(self):
        assert parse_options(SAMPLE_NARRATION) == {
            "1": "Follow the lantern light",
            "2": "Climb the old oak",
            "3": "Call out into the dark",
        }

    def test_unbracketed_and_mixed_separators(self):
        text = "The bridge creaks.\n1) Cross quickly\n2: [Test each plank]\n3 - Turn back"
        assert parse_options(text) == {
            "1": "Cross quickly",
            "2": "Test each plank",
            "3": "Turn back",
        }

    def test_markdown_bold_options(self):
        text = "A door.\n**1. [Knock]**\n**2. [Kick it in]**\n**3. [Walk away]**"
        assert parse_options(text)["2"] == "Kick it in"

    def test_first_occurrence_wins(self):
        text = "1. [Early]\nMore story.\n1. [Late]"
        assert parse_options(text) == {"1": "Early"}

    def test_prose_without_options(self):
        assert parse_options("The party rests by the fire.") == {}
        assert parse_options("") == {}

    def test_strip_options_keeps_prose(self):
        stripped = strip_options(SAMPLE_NARRATION)
        assert stripped.startswith("You wake in a moonlit clearing.")
        assert "Follow the lantern" not in stripped
        assert "[" not in stripped


class TestRoomState:
    """Test suite for RoomState defaults and snapshots"""

    def test_defaults(self):
        state = RoomState(room_id="r")
        assert state.phase == Phase.LOBBY
        assert state.vote_tally == {"1": 0, "2": 0, "3": 0}
        assert state.voted_participants == []
        assert state.connected_participants == 0
        assert state.round_number == 0
        assert state.voting_deadline is None
        assert not state.is_advancing
        assert state.narration_history[0].speaker == Speaker.SYSTEM

    def test_default_collections_are_not_shared(self):
        first, second = RoomState(room_id="a"), RoomState(room_id="b")
        first.vote_tally["1"] = 5
        first.voted_participants.append("p")
        assert second.vote_tally["1"] == 0
        assert second.voted_participants == []

    def test_latest_narration(self):
        state = RoomState(room_id="r")
        assert state.latest_narration() is None
        state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text="old"))
        state.narration_history.append(Turn(speaker=Speaker.PLAYER, text="The party chose: x"))
        state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text="new"))
        assert state.latest_narration() == "new"

    def test_public_snapshot_hides_system_prompt(self):
        state = RoomState(room_id="r")
        state.narration_history.append(Turn(speaker=Speaker.PLAYER, text="The adventure begins."))
        snapshot = state.to_public()
        assert snapshot["history"] == [{"speaker": "player", "text": "The adventure begins."}]
        assert snapshot["phase"] == "LOBBY"
        assert snapshot["votingDeadline"] is None
        assert snapshot["options"] == []

    def test_public_snapshot_during_voting(self):
        state = RoomState(room_id="r", phase=Phase.VOTING, round_number=2)
        state.narration_history.append(Turn(speaker=Speaker.NARRATOR, text=SAMPLE_NARRATION))
        state.voting_deadline = NOW + timedelta(seconds=20)
        state.vote_tally["3"] = 1
        state.voted_participants.append("alice")
        state.connected_participants = 2

        snapshot = state.to_public()

        assert snapshot["votingDeadline"] == int((NOW + timedelta(seconds=20)).timestamp() * 1000)
        assert snapshot["voteTally"] == {"1": 0, "2": 0, "3": 1}
        assert snapshot["votedCount"] == 1
        assert snapshot["connectedParticipants"] == 2
        assert [o["id"] for o in snapshot["options"]] == list(OPTION_IDS)
        assert snapshot["options"][1]["label"] == "Climb the old oak"

    def test_round_trips_through_json(self):
        state = RoomState(room_id="r", phase=Phase.VOTING, voting_deadline=NOW)
        restored = RoomState.model_validate(state.model_dump(mode="json"))
        assert restored == state


class TestParseClientMessage:
    """Test suite for inbound message parsing"""

    def test_start_game(self):
        assert isinstance(parse_client_message('{"type": "START_GAME"}'), StartGameMessage)

    def test_reset_state(self):
        assert isinstance(parse_client_message('{"type": "RESET_STATE"}'), ResetStateMessage)

    @pytest.mark.parametrize("choice", ['"1"', '"2"', '"3"', "2"])
    def test_vote(self, choice):
        message = parse_client_message('{"type": "VOTE", "choice": %s}' % choice)
        assert isinstance(message, VoteMessage)
        assert message.choice in OPTION_IDS

    @pytest.mark.parametrize("raw", [
        "not json",
        "",
        "[]",
        '{"type": "VOTE"}',
        '{"type": "VOTE", "choice": "4"}',
        '{"type": "VOTE", "choice": true}',
        '{"type": "VOTE", "choice": null}',
        '{"type": "DANCE"}',
        '{"choice": "1"}',
        '"START_GAME"',
    ])
    def test_malformed_messages_are_dropped(self, raw):
        assert parse_client_message(raw) is None

    def test_accepts_bytes(self):
        assert isinstance(parse_client_message(b'{"type": "START_GAME"}'), StartGameMessage)
