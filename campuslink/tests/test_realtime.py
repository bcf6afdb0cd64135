import asyncio

import pytest
from redis.exceptions import RedisError

from campuslink import core
from campuslink.realtime import (
    RealtimeHub, ChangeEvent, And, Eq, Or, INSERT, UPDATE, DELETE, parse_timestamp,
)


def test_filter_expressions():
    row = {'sender_id': 1, 'receiver_id': 2}
    assert Eq('sender_id', 1).matches(row)
    assert not Eq('sender_id', 2).matches(row)
    assert And(Eq('sender_id', 1), Eq('receiver_id', 2)).matches(row)
    assert not And(Eq('sender_id', 1), Eq('receiver_id', 3)).matches(row)
    assert Or(Eq('sender_id', 9), Eq('receiver_id', 2)).matches(row)
    assert repr(Or(Eq('a', 1), Eq('b', 2))) == 'or(a=eq.1,b=eq.2)'


def test_delete_events_match_on_old_row():
    event = ChangeEvent('friend_requests', DELETE, old={'id': 3, 'sender_id': 5})
    assert event.row == {'id': 3, 'sender_id': 5}


def test_event_from_redis_payload():
    raw = ChangeEvent('messages', INSERT, new={'id': 1, 'created_at': '2026-03-01T10:00:00'}).to_json().encode()
    event = ChangeEvent.from_json(raw)
    assert event.table == 'messages'
    assert event.type == INSERT
    assert parse_timestamp(event.new['created_at']).hour == 10


@pytest.mark.asyncio
async def test_dispatch_honours_table_events_and_filter():
    hub = RealtimeHub()
    seen = []

    async def record(event):
        seen.append(event.new['id'])

    hub.subscribe('messages', record, events=(INSERT,), where=Eq('receiver_id', 7))

    await hub.dispatch(ChangeEvent('messages', INSERT, new={'id': 1, 'receiver_id': 7}))
    await hub.dispatch(ChangeEvent('messages', INSERT, new={'id': 2, 'receiver_id': 8}))
    await hub.dispatch(ChangeEvent('messages', UPDATE, new={'id': 3, 'receiver_id': 7}))
    await hub.dispatch(ChangeEvent('friend_requests', INSERT, new={'id': 4, 'receiver_id': 7}))

    assert seen == [1]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent():
    hub = RealtimeHub()
    seen = []

    async def record(event):
        seen.append(event)

    sub = hub.subscribe('messages', record)
    assert hub.subscriber_count('messages') == 1
    sub.unsubscribe()
    sub.unsubscribe()
    await hub.dispatch(ChangeEvent('messages', INSERT, new={'id': 1}))
    await hub.drain()

    assert seen == []
    assert hub.subscriber_count() == 0


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others():
    hub = RealtimeHub()
    seen = []

    async def broken(event):
        raise RuntimeError('boom')

    async def record(event):
        seen.append(event.new['id'])

    hub.subscribe('messages', broken)
    hub.subscribe('messages', record)
    await hub.dispatch(ChangeEvent('messages', INSERT, new={'id': 5}))

    assert seen == [5]


@pytest.mark.asyncio
async def test_publish_dispatches_locally_without_redis():
    hub = RealtimeHub()
    seen = []

    async def record(event):
        seen.append(event.type)

    hub.subscribe('messages', record)
    await hub.publish(ChangeEvent('messages', INSERT, new={'id': 1}))
    await hub.drain()

    assert seen == [INSERT]
    await hub.stop_dispatcher()


class BrokenRedis:
    async def publish(self, channel, data):
        raise RedisError('connection reset')


@pytest.mark.asyncio
async def test_publish_falls_back_when_redis_fails(monkeypatch):
    hub = RealtimeHub()
    hub.listener_task = object()
    monkeypatch.setattr(core, 'REDIS', BrokenRedis())
    seen = []

    async def record(event):
        seen.append(event.new['id'])

    hub.subscribe('messages', record)
    await hub.publish(ChangeEvent('messages', INSERT, new={'id': 9}))
    await hub.drain()

    assert seen == [9]
    await hub.stop_dispatcher()


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_slow_subscribers():
    hub = RealtimeHub()
    release = asyncio.Event()
    seen = []

    async def slow(event):
        await release.wait()
        seen.append(event.new['id'])

    hub.subscribe('messages', slow)
    await asyncio.wait_for(hub.publish(ChangeEvent('messages', INSERT, new={'id': 1})), timeout=1)
    await hub.publish(ChangeEvent('messages', INSERT, new={'id': 2}))
    assert seen == []

    release.set()
    await hub.drain()

    assert seen == [1, 2]
    await hub.stop_dispatcher()
