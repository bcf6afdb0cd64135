"""
Friend-relationship state machine.

Relationships are stored directionally (sender -> receiver) but behave
symmetrically once accepted. RelationshipView.seen_by is the only place that
branches on which side of a row a user is on; everything else works with
(owner_id, peer_id) views.

    none --send--> pending --respond--> accepted | rejected
    pending --cancel (sender)--> none
    accepted --unfriend (either side)--> none
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from . import crud
from .core import FRIEND_REQUESTS_SENT
from .exceptions import Conflict, DuplicateRequest, InvalidDecision, NotFound, Unauthenticated
from .models.friend_requests import FriendRequest, FriendStatus, ACTIVE_STATUSES
from .realtime import hub, ChangeEvent, Eq, Or, DELETE
from .schemas.friendships import PendingRequestOut, SuggestionOut
from .schemas.profiles import ProfileSummary

logger = logging.getLogger(__name__)

RESOLUTIONS = (FriendStatus.ACCEPTED.value, FriendStatus.REJECTED.value)
SUGGESTION_SORTS = ('common_interests', 'alphabetical', 'field_of_study')


@dataclass(frozen=True)
class RelationshipView:
    request_id: int
    owner_id: int
    peer_id: int
    status: str
    outgoing: bool
    created_at: datetime

    @classmethod
    def seen_by(cls, record: FriendRequest, user_id: int) -> 'RelationshipView':
        if record.sender_id == user_id:
            peer_id, outgoing = record.receiver_id, True
        elif record.receiver_id == user_id:
            peer_id, outgoing = record.sender_id, False
        else:
            raise ValueError(f'user {user_id} is not a party to friend request {record.id}')
        return cls(record.id, user_id, peer_id, record.status, outgoing, record.created_at)


def require_caller(caller_id: Optional[int]) -> int:
    if caller_id is None:
        raise Unauthenticated()
    return caller_id


async def send_request(caller_id: Optional[int], target_id: int) -> FriendRequest:
    """
    Create a pending friend request from caller to target.
    Raises:
        Unauthenticated: no caller identity.
        Conflict: caller and target are the same user.
        NotFound: target does not exist.
        DuplicateRequest: an active request or friendship already exists in either direction.
    """
    caller_id = require_caller(caller_id)
    if target_id == caller_id:
        raise Conflict('You cannot send a friend request to yourself.')
    if not await crud.get_profile(target_id):
        raise NotFound(f'User {target_id} not found.')
    if await crud.find_active_request(caller_id, target_id):
        raise DuplicateRequest(caller_id, target_id)
    try:
        fr = await crud.create_friend_request(caller_id, target_id)
    except IntegrityError as e:
        # lost a race against a concurrent request for the same pair
        raise DuplicateRequest(caller_id, target_id) from e
    FRIEND_REQUESTS_SENT.inc()
    logger.info(f'friend request {fr.id} sent from {caller_id} to {target_id}')
    return fr


async def respond(caller_id: Optional[int], request_id: int, decision: str) -> FriendRequest:
    """
    Accept or reject a pending request addressed to the caller.
    Raises:
        Unauthenticated: no caller identity.
        InvalidDecision: decision is not 'accepted' or 'rejected'.
        NotFound: no such request, or the caller is not its receiver.
        Conflict: the request has already been resolved.
    """
    caller_id = require_caller(caller_id)
    if decision not in RESOLUTIONS:
        raise InvalidDecision(decision)
    fr = await crud.resolve_friend_request(request_id, caller_id, decision)
    if fr is not None:
        logger.info(f'friend request {request_id} {decision} by {caller_id}')
        return fr
    existing = await crud.get_friend_request(request_id)
    if not existing or existing.receiver_id != caller_id:
        raise NotFound(f'Friend request {request_id} not found.')
    raise Conflict(f'Friend request {request_id} is already {existing.status}.')


async def cancel_request(caller_id: Optional[int], request_id: int):
    caller_id = require_caller(caller_id)
    fr = await crud.get_friend_request(request_id)
    if not fr or fr.sender_id != caller_id:
        raise NotFound(f'Friend request {request_id} not found.')
    if fr.status != FriendStatus.PENDING.value or not await crud.delete_friend_requests([fr], status=FriendStatus.PENDING.value):
        raise Conflict(f'Friend request {request_id} is no longer pending.')
    await crud.delete_resolved_between(fr.sender_id, fr.receiver_id)
    logger.info(f'friend request {request_id} cancelled by {caller_id}')


async def unfriend(caller_id: Optional[int], other_id: int):
    caller_id = require_caller(caller_id)
    records = await crud.list_accepted_between(caller_id, other_id)
    if not records:
        raise NotFound(f'User {caller_id} is not friends with user {other_id}.')
    await crud.delete_friend_requests(records)
    await crud.delete_resolved_between(caller_id, other_id)
    logger.info(f'{caller_id} unfriended {other_id}')


async def status(caller_id: Optional[int], other_id: int) -> FriendStatus:
    """Status of the most recent record between the pair, in either direction."""
    caller_id = require_caller(caller_id)
    fr = await crud.latest_request_between(caller_id, other_id)
    if fr is None:
        return FriendStatus.NONE
    return FriendStatus(fr.status)


async def are_friends(user_id: int, other_id: int) -> bool:
    return bool(await crud.list_accepted_between(user_id, other_id))


async def peers(caller_id: Optional[int]) -> List[int]:
    """Ids of every user the caller has an accepted relationship with."""
    caller_id = require_caller(caller_id)
    records = await crud.list_requests_involving(caller_id, [FriendStatus.ACCEPTED.value])
    seen: Dict[int, None] = {}
    for record in records:
        seen.setdefault(RelationshipView.seen_by(record, caller_id).peer_id)
    return list(seen)


def _pending_out(fr, sender) -> PendingRequestOut:
    return PendingRequestOut(
        id=fr.id,
        sender_id=fr.sender_id,
        receiver_id=fr.receiver_id,
        status=fr.status,
        created_at=fr.created_at,
        sender=ProfileSummary.model_validate(sender),
    )


async def pending_for_me(caller_id: Optional[int]) -> List[PendingRequestOut]:
    caller_id = require_caller(caller_id)
    return [_pending_out(fr, sender) for fr, sender in await crud.list_pending_for(caller_id)]


async def suggestions(caller_id: Optional[int], sort: str = 'common_interests', limit: int = 10) -> List[SuggestionOut]:
    """People the caller is neither friends with nor has a pending request with."""
    caller_id = require_caller(caller_id)
    if sort not in SUGGESTION_SORTS:
        sort = 'common_interests'
    active = await crud.list_requests_involving(caller_id, ACTIVE_STATUSES)
    excluded = {RelationshipView.seen_by(r, caller_id).peer_id for r in active}
    candidates = [p for p in await crud.list_profiles_except(caller_id) if p.id not in excluded]
    interests = await crud.interests_by_user([caller_id] + [p.id for p in candidates])
    mine = interests.get(caller_id, set())

    out = [
        SuggestionOut(
            id=p.id,
            full_name=p.full_name,
            avatar_url=p.avatar_url,
            field_of_study=p.field_of_study or '',
            common_interests=len(mine & interests.get(p.id, set())),
            interests=sorted(interests.get(p.id, set())),
        )
        for p in candidates
    ]
    if sort == 'alphabetical':
        out.sort(key=lambda s: s.full_name.lower())
    elif sort == 'field_of_study':
        out.sort(key=lambda s: s.field_of_study.lower())
    else:
        out.sort(key=lambda s: -s.common_interests)
    return out[:limit]


OnPendingChange = Callable[[List[PendingRequestOut]], Awaitable[None]]


class PendingRequestsFeed:
    """
    Live list of pending requests addressed to a user.

    Row changes are applied as patches keyed by request id. A new pending row
    needs its sender's profile; if that lookup comes back empty the whole list
    is re-queried instead.
    """

    def __init__(self, user_id: int, on_change: Optional[OnPendingChange] = None):
        self.user_id = user_id
        self.on_change = on_change
        self._items: Dict[int, PendingRequestOut] = {}
        self._subscription = None
        self.closed = False

    @property
    def requests(self) -> List[PendingRequestOut]:
        return sorted(self._items.values(), key=lambda r: (r.created_at, r.id), reverse=True)

    async def start(self):
        self._subscription = hub.subscribe(
            'friend_requests',
            self._on_change_event,
            where=Or(Eq('sender_id', self.user_id), Eq('receiver_id', self.user_id)),
        )
        await self.refresh()
        return self

    async def refresh(self):
        items = await pending_for_me(self.user_id)
        if self.closed:
            return
        self._items = {r.id: r for r in items}
        await self._emit()

    async def _on_change_event(self, event: ChangeEvent):
        if self.closed:
            return
        row = event.row
        request_id = row.get('id')
        addressed_to_me = row.get('receiver_id') == self.user_id
        still_pending = row.get('status') == FriendStatus.PENDING.value

        if event.type == DELETE or not (addressed_to_me and still_pending):
            if self._items.pop(request_id, None) is not None:
                await self._emit()
            return
        if request_id in self._items:
            return

        sender = await crud.get_profile(row['sender_id'])
        if self.closed:
            return
        if sender is None:
            await self.refresh()
            return
        self._items[request_id] = PendingRequestOut(
            id=request_id,
            sender_id=row['sender_id'],
            receiver_id=row['receiver_id'],
            status=row['status'],
            created_at=row['created_at'],
            sender=ProfileSummary.model_validate(sender),
        )
        await self._emit()

    async def _emit(self):
        if self.on_change and not self.closed:
            await self.on_change(self.requests)

    async def close(self):
        self.closed = True
        if self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None
