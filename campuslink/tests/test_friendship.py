import pytest
from sqlalchemy.exc import IntegrityError

from campuslink import crud, friendship
from campuslink.exceptions import Conflict, DuplicateRequest, InvalidDecision, NotFound, Unauthenticated
from campuslink.models.friend_requests import FriendStatus


@pytest.mark.asyncio
async def test_send_request_is_pending_for_both_sides(make_profile):
    alice = await make_profile('Alice')
    bob = await make_profile('Bob')

    fr = await friendship.send_request(alice.id, bob.id)

    assert fr.sender_id == alice.id
    assert fr.receiver_id == bob.id
    assert fr.status == 'pending'
    assert await friendship.status(alice.id, bob.id) == FriendStatus.PENDING
    assert await friendship.status(bob.id, alice.id) == FriendStatus.PENDING


@pytest.mark.asyncio
async def test_status_is_none_without_records(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    assert await friendship.status(alice.id, bob.id) == FriendStatus.NONE


@pytest.mark.asyncio
async def test_duplicate_request_rejected_in_either_direction(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    await friendship.send_request(alice.id, bob.id)

    with pytest.raises(DuplicateRequest):
        await friendship.send_request(alice.id, bob.id)
    with pytest.raises(DuplicateRequest):
        await friendship.send_request(bob.id, alice.id)


@pytest.mark.asyncio
async def test_request_between_friends_is_duplicate(make_profile, make_friends):
    alice = await make_profile()
    bob = await make_profile()
    await make_friends(alice, bob)

    with pytest.raises(DuplicateRequest):
        await friendship.send_request(bob.id, alice.id)


@pytest.mark.asyncio
async def test_store_rejects_second_active_row_for_pair(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    await crud.create_friend_request(alice.id, bob.id)

    with pytest.raises(IntegrityError):
        await crud.create_friend_request(bob.id, alice.id)


@pytest.mark.asyncio
async def test_concurrent_send_surfaces_duplicate(make_profile, monkeypatch):
    alice = await make_profile()
    bob = await make_profile()
    await crud.create_friend_request(bob.id, alice.id)

    async def not_found_yet(a, b):
        return None
    # the pre-check loses the race; the index still catches it
    monkeypatch.setattr(crud, 'find_active_request', not_found_yet)

    with pytest.raises(DuplicateRequest):
        await friendship.send_request(alice.id, bob.id)


@pytest.mark.asyncio
async def test_send_request_guards(make_profile):
    alice = await make_profile()

    with pytest.raises(Unauthenticated):
        await friendship.send_request(None, alice.id)
    with pytest.raises(Conflict):
        await friendship.send_request(alice.id, alice.id)
    with pytest.raises(NotFound):
        await friendship.send_request(alice.id, 9999)


@pytest.mark.asyncio
async def test_accept_makes_peers(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    fr = await friendship.send_request(alice.id, bob.id)

    accepted = await friendship.respond(bob.id, fr.id, 'accepted')

    assert accepted.status == 'accepted'
    assert await friendship.status(alice.id, bob.id) == FriendStatus.ACCEPTED
    assert await friendship.status(bob.id, alice.id) == FriendStatus.ACCEPTED
    assert await friendship.peers(alice.id) == [bob.id]
    assert await friendship.peers(bob.id) == [alice.id]
    assert await friendship.are_friends(bob.id, alice.id)


@pytest.mark.asyncio
async def test_respond_validation(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    fr = await friendship.send_request(alice.id, bob.id)

    with pytest.raises(InvalidDecision):
        await friendship.respond(bob.id, fr.id, 'maybe')
    # only the receiver may decide
    with pytest.raises(NotFound):
        await friendship.respond(alice.id, fr.id, 'accepted')
    with pytest.raises(NotFound):
        await friendship.respond(bob.id, 4242, 'accepted')

    await friendship.respond(bob.id, fr.id, 'rejected')
    with pytest.raises(Conflict):
        await friendship.respond(bob.id, fr.id, 'accepted')
    assert await friendship.status(alice.id, bob.id) == FriendStatus.REJECTED
    assert await friendship.status(bob.id, alice.id) == FriendStatus.REJECTED
    assert await friendship.peers(alice.id) == []


@pytest.mark.asyncio
async def test_request_can_be_sent_again_after_rejection(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    fr = await friendship.send_request(alice.id, bob.id)
    await friendship.respond(bob.id, fr.id, 'rejected')

    again = await friendship.send_request(bob.id, alice.id)

    assert again.id != fr.id
    assert await friendship.status(alice.id, bob.id) == FriendStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_request(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    fr = await friendship.send_request(alice.id, bob.id)

    with pytest.raises(NotFound):
        await friendship.cancel_request(bob.id, fr.id)

    await friendship.cancel_request(alice.id, fr.id)

    assert await friendship.status(alice.id, bob.id) == FriendStatus.NONE
    assert await crud.get_friend_request(fr.id) is None


@pytest.mark.asyncio
async def test_cancel_after_accept_conflicts(make_profile, make_friends):
    alice = await make_profile()
    bob = await make_profile()
    fr = await make_friends(alice, bob)

    with pytest.raises(Conflict):
        await friendship.cancel_request(alice.id, fr.id)


@pytest.mark.asyncio
async def test_unfriend(make_profile, make_friends):
    alice = await make_profile()
    bob = await make_profile()
    await make_friends(alice, bob)

    await friendship.unfriend(bob.id, alice.id)

    assert await friendship.status(alice.id, bob.id) == FriendStatus.NONE
    assert await friendship.peers(alice.id) == []
    with pytest.raises(NotFound):
        await friendship.unfriend(alice.id, bob.id)


@pytest.mark.asyncio
async def test_pending_for_me_includes_sender_profile(make_profile):
    alice = await make_profile('Alice')
    bob = await make_profile('Bob')
    carol = await make_profile('Carol')
    await friendship.send_request(alice.id, carol.id)
    await friendship.send_request(bob.id, carol.id)

    pending = await friendship.pending_for_me(carol.id)

    assert [p.sender.full_name for p in pending] == ['Bob', 'Alice']
    assert await friendship.pending_for_me(alice.id) == []


@pytest.mark.asyncio
async def test_suggestions_exclude_known_people(make_profile, make_friends):
    me = await make_profile('Me')
    friend = await make_profile('Friend')
    pending = await make_profile('Pending')
    zoe = await make_profile('Zoe', field_of_study='Biology')
    adam = await make_profile('Adam', field_of_study='Physics')
    await make_friends(me, friend)
    await friendship.send_request(pending.id, me.id)
    await crud.set_interests(me.id, ['chess', 'music', 'hiking'])
    await crud.set_interests(zoe.id, ['chess', 'music'])
    await crud.set_interests(adam.id, ['music'])

    by_interest = await friendship.suggestions(me.id)
    assert [s.full_name for s in by_interest] == ['Zoe', 'Adam']
    assert by_interest[0].common_interests == 2
    assert by_interest[0].interests == ['chess', 'music']

    alphabetical = await friendship.suggestions(me.id, sort='alphabetical')
    assert [s.full_name for s in alphabetical] == ['Adam', 'Zoe']

    assert len(await friendship.suggestions(me.id, limit=1)) == 1


@pytest.mark.asyncio
async def test_unfriend_after_rejected_history_is_none(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    first = await friendship.send_request(alice.id, bob.id)
    await friendship.respond(bob.id, first.id, 'rejected')
    second = await friendship.send_request(bob.id, alice.id)
    await friendship.respond(alice.id, second.id, 'accepted')

    await friendship.unfriend(alice.id, bob.id)

    assert await friendship.status(alice.id, bob.id) == FriendStatus.NONE
    assert await friendship.status(bob.id, alice.id) == FriendStatus.NONE
    assert await crud.get_friend_request(first.id) is None


@pytest.mark.asyncio
async def test_cancel_after_rejected_history_is_none(make_profile):
    alice = await make_profile()
    bob = await make_profile()
    first = await friendship.send_request(alice.id, bob.id)
    await friendship.respond(bob.id, first.id, 'rejected')
    second = await friendship.send_request(alice.id, bob.id)

    await friendship.cancel_request(alice.id, second.id)

    assert await friendship.status(bob.id, alice.id) == FriendStatus.NONE
    # a fresh request starts the cycle again
    await friendship.send_request(bob.id, alice.id)
    assert await friendship.status(alice.id, bob.id) == FriendStatus.PENDING
