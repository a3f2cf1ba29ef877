import asyncio
from datetime import datetime, timezone

import pytest

from cargolink.domain.chat.errors import (
    HistoryLoadFailure,
    SendFailure,
    StoreUnavailable,
    StreamStateError,
)
from cargolink.domain.chat.models import StreamEventKind, StreamState
from cargolink.domain.chat.resolver import ConversationResolver
from cargolink.domain.chat.store import InMemoryChatStore
from cargolink.domain.chat.stream import MessageStream

TRADER = "trader-1"
PROVIDER = "provider-9"
FIXED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class GatedHistoryStore(InMemoryChatStore):
    """Holds `list_messages` open until the test releases it.

    With `snapshot_first` the history is read before waiting, so inserts made
    while the gate is closed are missing from it.
    """

    def __init__(self, *, snapshot_first: bool = False, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()
        self.snapshot_first = snapshot_first

    async def list_messages(self, conversation_id):
        snapshot = await super().list_messages(conversation_id) if self.snapshot_first else None
        self.waiting.set()
        await self.gate.wait()
        if snapshot is not None:
            return snapshot
        return await super().list_messages(conversation_id)


class FailingHistoryStore(InMemoryChatStore):
    async def list_messages(self, conversation_id):
        raise StoreUnavailable("database unavailable")


class FlakyInsertStore(InMemoryChatStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_inserts = True

    async def create_message(self, conversation_id, sender_id, body, *, client_msg_id=None):
        if self.fail_inserts:
            raise StoreUnavailable("database unavailable")
        return await super().create_message(conversation_id, sender_id, body, client_msg_id=client_msg_id)


async def _conversation(store):
    return await ConversationResolver(store).resolve(TRADER, PROVIDER)


def _recorder():
    events = []
    return events, events.append


@pytest.mark.asyncio
async def test_open_applies_history_in_creation_order():
    store = InMemoryChatStore(clock=lambda: FIXED)
    conversation = await _conversation(store)
    for index in range(4):
        await store.create_message(conversation.conversation_id, TRADER, f"load {index}")

    stream = MessageStream(store, PROVIDER)
    assert stream.state is StreamState.IDLE
    history = await stream.open(conversation)

    assert stream.state is StreamState.LIVE
    assert [m.body for m in history] == ["load 0", "load 1", "load 2", "load 3"]
    assert [m.seq for m in stream.messages] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_reopening_reproduces_the_same_history():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    await store.create_message(conversation.conversation_id, TRADER, "first")
    await store.create_message(conversation.conversation_id, PROVIDER, "second")

    first = MessageStream(store, TRADER)
    await first.open(conversation)
    first.close()
    second = MessageStream(store, TRADER)
    await second.open(conversation)

    assert [m.message_id for m in second.messages] == [
        m.message_id for m in await store.list_messages(conversation.conversation_id)
    ]


@pytest.mark.asyncio
async def test_live_insert_is_appended_once():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    await stream.open(conversation)

    message = await store.create_message(conversation.conversation_id, PROVIDER, "pickup at 9")

    assert stream.messages == (message,)
    assert [e.kind for e in events] == [StreamEventKind.HISTORY, StreamEventKind.APPENDED]
    assert events[-1].message == message


@pytest.mark.asyncio
async def test_insert_during_history_load_appears_once():
    store = GatedHistoryStore()
    conversation = await _conversation(store)
    stream = MessageStream(store, TRADER)
    opening = asyncio.create_task(stream.open(conversation))
    await store.waiting.wait()

    assert stream.state is StreamState.LOADING
    early = await store.create_message(conversation.conversation_id, PROVIDER, "early bird")
    assert stream.messages == ()

    store.gate.set()
    await opening

    assert [m.message_id for m in stream.messages] == [early.message_id]


@pytest.mark.asyncio
async def test_insert_missing_from_history_is_replayed_after_it():
    store = GatedHistoryStore(snapshot_first=True)
    conversation = await _conversation(store)
    before = await store.create_message(conversation.conversation_id, TRADER, "before")
    stream = MessageStream(store, TRADER)
    opening = asyncio.create_task(stream.open(conversation))
    await store.waiting.wait()

    during = await store.create_message(conversation.conversation_id, PROVIDER, "during")
    store.gate.set()
    history = await opening

    assert history == (before, during)
    assert stream.messages == (before, during)


@pytest.mark.asyncio
async def test_both_participants_receive_a_send():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    trader = MessageStream(store, TRADER)
    provider = MessageStream(store, PROVIDER)
    await trader.open(conversation)
    await provider.open(conversation)

    await trader.send("hello")

    for stream in (trader, provider):
        assert len(stream.messages) == 1
        delivered = stream.messages[0]
        assert delivered.body == "hello"
        assert delivered.sender_id == TRADER
        assert delivered.conversation_id == conversation.conversation_id


@pytest.mark.asyncio
async def test_closed_stream_ignores_live_events():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    await stream.open(conversation)

    stream.close()
    stream.close()
    await store.create_message(conversation.conversation_id, PROVIDER, "too late")

    assert stream.state is StreamState.CLOSED
    assert stream.messages == ()
    assert [e.kind for e in events] == [StreamEventKind.HISTORY, StreamEventKind.CLOSED]
    assert store.subscriber_count(conversation.conversation_id) == 0


@pytest.mark.asyncio
async def test_late_history_after_close_is_discarded():
    store = GatedHistoryStore()
    conversation = await _conversation(store)
    await store.create_message(conversation.conversation_id, PROVIDER, "old news")
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    opening = asyncio.create_task(stream.open(conversation))
    await store.waiting.wait()

    stream.close()
    store.gate.set()

    assert await opening == ()
    assert stream.messages == ()
    assert [e.kind for e in events] == [StreamEventKind.CLOSED]


@pytest.mark.asyncio
async def test_history_failure_closes_the_stream():
    store = FailingHistoryStore()
    conversation = await _conversation(store)
    stream = MessageStream(store, TRADER)

    with pytest.raises(HistoryLoadFailure):
        await stream.open(conversation)

    assert stream.state is StreamState.CLOSED
    assert isinstance(stream.failure, HistoryLoadFailure)
    assert store.subscriber_count(conversation.conversation_id) == 0


@pytest.mark.asyncio
async def test_send_is_pending_until_the_feed_confirms_it():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    await stream.open(conversation)

    pending = await stream.send("Need 10 m³ to Rotterdam", client_msg_id="cm-1")

    kinds = [e.kind for e in events]
    assert kinds == [StreamEventKind.HISTORY, StreamEventKind.PENDING, StreamEventKind.CONFIRMED]
    assert events[1].pending is pending
    assert stream.pending == ()
    assert stream.messages[0].client_msg_id == "cm-1"
    assert stream.timeline() == list(stream.messages)


@pytest.mark.asyncio
async def test_failed_send_keeps_the_draft_for_retry():
    store = FlakyInsertStore()
    conversation = await _conversation(store)
    stream = MessageStream(store, TRADER)
    await stream.open(conversation)

    with pytest.raises(SendFailure) as excinfo:
        await stream.send("Quote for 2 pallets?")

    pending = excinfo.value.pending
    assert pending is not None
    assert pending.failed is True
    assert pending.error == "store_unavailable"
    assert stream.pending == (pending,)
    assert stream.timeline() == [pending]

    store.fail_inserts = False
    await stream.retry(pending.client_msg_id)

    assert pending.attempts == 2
    assert stream.pending == ()
    assert [m.body for m in stream.messages] == ["Quote for 2 pallets?"]


@pytest.mark.asyncio
async def test_failed_send_can_be_discarded():
    store = FlakyInsertStore()
    conversation = await _conversation(store)
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    await stream.open(conversation)

    with pytest.raises(SendFailure):
        await stream.send("never mind", client_msg_id="cm-9")
    discarded = stream.discard("cm-9")

    assert discarded is not None and discarded.body == "never mind"
    assert stream.pending == ()
    assert events[-1].kind is StreamEventKind.DISCARDED
    with pytest.raises(ValueError):
        await stream.retry("cm-9")


@pytest.mark.asyncio
async def test_send_validation():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    stream = MessageStream(store, TRADER)

    with pytest.raises(StreamStateError):
        await stream.send("hello")

    await stream.open(conversation)
    with pytest.raises(ValueError):
        await stream.send("   ")

    stream.close()
    with pytest.raises(StreamStateError):
        await stream.send("hello")


@pytest.mark.asyncio
async def test_viewer_must_be_a_participant():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    stream = MessageStream(store, "provider-2")
    with pytest.raises(ValueError):
        await stream.open(conversation)
    assert stream.state is StreamState.IDLE


@pytest.mark.asyncio
async def test_trader_provider_scenario():
    store = InMemoryChatStore()
    conversation = await ConversationResolver(store).resolve("trader-1", "provider-9")
    provider_events, listener = _recorder()
    provider = MessageStream(store, "provider-9", listener=listener)
    trader = MessageStream(store, "trader-1")

    assert await trader.open(conversation) == ()
    await provider.open(conversation)
    await trader.send("Need 10 m³ to Rotterdam")

    appended = [e.message for e in provider_events if e.kind is StreamEventKind.APPENDED]
    assert len(appended) == 1
    assert appended[0].sender_id == "trader-1"
    assert appended[0].body == "Need 10 m³ to Rotterdam"
    assert [m.body for m in trader.messages] == ["Need 10 m³ to Rotterdam"]


@pytest.mark.asyncio
async def test_resending_a_stored_client_msg_id_confirms_it():
    store = InMemoryChatStore()
    conversation = await _conversation(store)
    stored = await store.create_message(conversation.conversation_id, TRADER, "hi", client_msg_id="cm-1")
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    await stream.open(conversation)

    pending = await stream.send("hi", client_msg_id="cm-1")

    assert stream.pending == ()
    assert stream.messages == (stored,)
    assert [e.kind for e in events] == [StreamEventKind.HISTORY, StreamEventKind.PENDING, StreamEventKind.CONFIRMED]
    assert events[-1].message == stored
    assert events[-1].pending is pending


@pytest.mark.asyncio
async def test_send_settled_by_history_is_reported_confirmed():
    store = GatedHistoryStore()
    conversation = await _conversation(store)
    events, listener = _recorder()
    stream = MessageStream(store, TRADER, listener=listener)
    opening = asyncio.create_task(stream.open(conversation))
    await store.waiting.wait()

    pending = await stream.send("loading dock 4", client_msg_id="cm-2")
    assert stream.pending == (pending,)
    store.gate.set()
    await opening

    assert stream.pending == ()
    assert [m.client_msg_id for m in stream.messages] == ["cm-2"]
    assert [e.kind for e in events] == [StreamEventKind.PENDING, StreamEventKind.HISTORY, StreamEventKind.CONFIRMED]
    assert events[-1].pending is pending
    assert events[-1].message == stream.messages[0]


@pytest.mark.asyncio
async def test_loading_state_without_a_conversation_is_rejected():
    stream = MessageStream(InMemoryChatStore(), TRADER)
    stream._state = StreamState.LOADING

    with pytest.raises(StreamStateError):
        await stream.open()
    with pytest.raises(StreamStateError):
        await stream.send("hello")
