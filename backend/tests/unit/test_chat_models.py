from datetime import datetime, timezone

import pytest

from cargolink.domain.chat.models import Conversation, Message, ParticipantPair, sort_messages

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id: str, seq: int, created_at: datetime = T0) -> Message:
    return Message(
        message_id=message_id,
        conversation_id="c1",
        seq=seq,
        sender_id="trader-1",
        body=f"body {seq}",
        created_at=created_at,
    )


def test_pair_key_ignores_argument_order():
    first = ParticipantPair.from_participants("trader-1", "provider-9")
    second = ParticipantPair.from_participants("provider-9", "trader-1")
    assert first == second
    assert first.key == "10:provider-9:trader-1"


def test_pair_key_keeps_ids_with_separators_apart():
    left = ParticipantPair.from_participants("a:b", "c")
    right = ParticipantPair.from_participants("a", "b:c")
    assert left.participants() != right.participants()
    assert left.key != right.key


def test_pair_strips_whitespace():
    pair = ParticipantPair.from_participants(" trader-1 ", "provider-9")
    assert pair.participants() == ("provider-9", "trader-1")


@pytest.mark.parametrize("a,b", [("", "provider-9"), ("trader-1", "   "), ("trader-1", "trader-1")])
def test_pair_rejects_invalid_participants(a, b):
    with pytest.raises(ValueError):
        ParticipantPair.from_participants(a, b)


def test_conversation_peer_lookup():
    conversation = Conversation("c1", "trader-1", "provider-9", T0, T0)
    assert conversation.peer_of("trader-1") == "provider-9"
    assert conversation.peer_of("provider-9") == "trader-1"
    assert not conversation.has_participant("provider-2")
    with pytest.raises(ValueError):
        conversation.peer_of("provider-2")


def test_sort_messages_breaks_timestamp_ties_by_seq():
    later = T0.replace(minute=5)
    messages = [_message("m3", 3, later), _message("m2", 2), _message("m1", 1)]
    assert [m.message_id for m in sort_messages(messages)] == ["m1", "m2", "m3"]


def test_message_to_dict_is_json_ready():
    payload = _message("m1", 1).mark_read().to_dict()
    assert payload["read"] is True
    assert payload["created_at"] == T0.isoformat()
    assert payload["client_msg_id"] is None
