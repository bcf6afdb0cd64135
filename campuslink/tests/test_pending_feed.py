import pytest

from campuslink import friendship
from campuslink.friendship import PendingRequestsFeed
from campuslink.realtime import hub, ChangeEvent, INSERT


class Recorder:
    def __init__(self):
        self.snapshots = []

    async def __call__(self, items):
        self.snapshots.append(items)

    @property
    def last(self):
        return self.snapshots[-1]


@pytest.mark.asyncio
async def test_feed_loads_existing_requests(make_profile):
    alice = await make_profile('Alice')
    bob = await make_profile('Bob')
    await friendship.send_request(alice.id, bob.id)
    await hub.drain()

    rec = Recorder()
    feed = await PendingRequestsFeed(bob.id, on_change=rec).start()

    assert [r.sender.full_name for r in feed.requests] == ['Alice']
    assert rec.last == feed.requests
    await feed.close()


@pytest.mark.asyncio
async def test_feed_follows_request_lifecycle(make_profile):
    alice = await make_profile('Alice')
    bob = await make_profile('Bob')
    carol = await make_profile('Carol')
    rec = Recorder()
    feed = await PendingRequestsFeed(bob.id, on_change=rec).start()
    assert feed.requests == []

    fr = await friendship.send_request(alice.id, bob.id)
    await hub.drain()
    assert [r.id for r in feed.requests] == [fr.id]
    assert feed.requests[0].sender.full_name == 'Alice'

    other = await friendship.send_request(carol.id, bob.id)
    await hub.drain()
    assert [r.id for r in feed.requests] == [other.id, fr.id]

    await friendship.respond(bob.id, fr.id, 'accepted')
    await hub.drain()
    assert [r.id for r in feed.requests] == [other.id]

    await friendship.cancel_request(carol.id, other.id)
    await hub.drain()
    assert feed.requests == []
    assert len(rec.snapshots) == 5
    await feed.close()


@pytest.mark.asyncio
async def test_feed_ignores_outgoing_requests(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    rec = Recorder()
    feed = await PendingRequestsFeed(alice.id, on_change=rec).start()

    await friendship.send_request(alice.id, bob.id)
    await hub.drain()

    assert feed.requests == []
    assert len(rec.snapshots) == 1
    await feed.close()


@pytest.mark.asyncio
async def test_missing_sender_profile_triggers_reload(make_profile):
    bob = await make_profile('Bob')
    feed = await PendingRequestsFeed(bob.id).start()

    await hub.dispatch(ChangeEvent('friend_requests', INSERT, new={
        'id': 77, 'sender_id': 9999, 'receiver_id': bob.id,
        'status': 'pending', 'created_at': '2026-01-01T00:00:00',
    }))

    assert feed.requests == []
    await feed.close()


@pytest.mark.asyncio
async def test_closed_feed_stops_listening(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    rec = Recorder()
    feed = await PendingRequestsFeed(bob.id, on_change=rec).start()
    await feed.close()

    await friendship.send_request(alice.id, bob.id)
    await hub.drain()

    assert feed.requests == []
    assert len(rec.snapshots) == 1
    assert hub.subscriber_count('friend_requests') == 0
