import asyncio
import logging
from datetime import datetime, timezone

import pytest

from cargolink.domain.chat.feed import RedisMessageFeed, decode_message, encode_message, feed_key
from cargolink.domain.chat.models import Message

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id: str, seq: int, *, conversation_id: str = "c1", client_msg_id=None) -> Message:
    return Message(
        message_id=message_id,
        conversation_id=conversation_id,
        seq=seq,
        sender_id="trader-1",
        body=f"load {seq}",
        created_at=CREATED,
        client_msg_id=client_msg_id,
    )


def _feed() -> RedisMessageFeed:
    return RedisMessageFeed(block_ms=0, retry_seconds=0, autostart=False)


def test_encoded_fields_are_strings():
    fields = encode_message(_message("m1", 1, client_msg_id="cm-1"))
    assert all(isinstance(value, str) for value in fields.values())
    assert decode_message(fields) == _message("m1", 1, client_msg_id="cm-1")


def test_decode_rejects_incomplete_entries():
    with pytest.raises(KeyError):
        decode_message({"message_id": "m1"})


@pytest.mark.asyncio
async def test_subscriber_only_sees_entries_after_subscribe(fake_redis):
    feed = _feed()
    await feed.publish(_message("m1", 1))
    delivered = []
    subscription = await feed.subscribe("c1", delivered.append)

    await feed.publish(_message("m2", 2))
    await feed.publish(_message("m3", 3))

    assert await subscription.process_once() == 2
    assert [m.message_id for m in delivered] == ["m2", "m3"]
    assert await subscription.process_once() == 0


@pytest.mark.asyncio
async def test_empty_stream_subscription_reads_from_start(fake_redis):
    feed = _feed()
    delivered = []
    subscription = await feed.subscribe("c1", delivered.append)

    await feed.publish(_message("m1", 1))

    assert await subscription.process_once() == 1
    assert delivered[0].message_id == "m1"


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(fake_redis):
    feed = _feed()
    delivered = []
    subscription = await feed.subscribe("c1", delivered.append)

    await fake_redis.xadd(feed_key("c1"), {"message_id": "broken"})
    await feed.publish(_message("m2", 2))

    assert await subscription.process_once() == 1
    assert [m.message_id for m in delivered] == ["m2"]


@pytest.mark.asyncio
async def test_cancelled_subscription_stops_reading(fake_redis):
    feed = _feed()
    delivered = []
    subscription = await feed.subscribe("c1", delivered.append)
    await feed.publish(_message("m1", 1))

    feed.unsubscribe(subscription)

    assert await subscription.process_once() == 0
    assert delivered == []


@pytest.mark.asyncio
async def test_streams_are_per_conversation(fake_redis):
    feed = _feed()
    delivered = []
    subscription = await feed.subscribe("c1", delivered.append)

    await feed.publish(_message("x1", 1, conversation_id="c2"))
    await feed.publish(_message("m1", 1))

    assert await subscription.process_once() == 1
    assert [m.message_id for m in delivered] == ["m1"]


@pytest.mark.asyncio
async def test_reader_keeps_running_after_unexpected_errors(fake_redis, caplog):
    feed = _feed()
    subscription = await feed.subscribe("c1", lambda message: None)
    calls = []

    async def read_batch():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("callback blew up")
        subscription.cancel()
        return 0

    subscription.process_once = read_batch
    with caplog.at_level(logging.ERROR):
        await asyncio.wait_for(subscription.run_forever(), timeout=1)

    assert len(calls) == 2
    assert any(record.getMessage() == "chat.feed.reader_failed" for record in caplog.records)
