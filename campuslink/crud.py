from .models import AsyncSessionLocal, utcnow
from .models.profiles import Profile, UserInterest
from .models.friend_requests import FriendRequest, FriendStatus, ACTIVE_STATUSES, make_pair_key
from .models.messages import Message
from .core import retry_transient, commit_once
from .realtime import hub, ChangeEvent, row_to_dict, INSERT, UPDATE, DELETE
from sqlalchemy import select, update, delete, or_, and_
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple


def _between(model, user_a: int, user_b: int):
    return or_(
        and_(model.sender_id == user_a, model.receiver_id == user_b),
        and_(model.sender_id == user_b, model.receiver_id == user_a),
    )

# profiles
@retry_transient
async def create_profile(email: str, full_name: str, avatar_url: str | None = None,
                         field_of_study: str | None = None, year: int | None = None):
    async with AsyncSessionLocal() as session:
        p = Profile(email=email, full_name=full_name, avatar_url=avatar_url,
                    field_of_study=field_of_study, year=year)
        session.add(p)
        await session.flush()
        await commit_once(session)
        return p

@retry_transient
async def get_profile(user_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Profile).where(Profile.id == user_id))
        return q.scalars().first()

@retry_transient
async def get_profile_by_email(email: str):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Profile).where(Profile.email == email))
        return q.scalars().first()

@retry_transient
async def get_profiles(user_ids: Iterable[int]) -> Dict[int, Profile]:
    ids = set(user_ids)
    if not ids:
        return {}
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Profile).where(Profile.id.in_(ids)))
        return {p.id: p for p in q.scalars().all()}

@retry_transient
async def list_profiles_except(user_id: int) -> List[Profile]:
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Profile).where(Profile.id != user_id).order_by(Profile.id))
        return q.scalars().all()

@retry_transient
async def update_profile(user_id: int, **fields):
    """Update the given profile columns; None values are left untouched"""
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(Profile).where(Profile.id == user_id))
        profile = q.scalars().first()
        if not profile:
            return None
        for name, value in fields.items():
            if value is not None:
                setattr(profile, name, value)
        await session.commit()
        await session.refresh(profile)
        return profile

# interests
@retry_transient
async def set_interests(user_id: int, categories: Iterable[str]) -> List[str]:
    wanted = sorted({c.strip() for c in categories if c and c.strip()})
    async with AsyncSessionLocal() as session:
        await session.execute(delete(UserInterest).where(UserInterest.user_id == user_id))
        session.add_all([UserInterest(user_id=user_id, category=c) for c in wanted])
        await session.commit()
    return wanted

@retry_transient
async def interests_by_user(user_ids: Optional[Iterable[int]] = None) -> Dict[int, Set[str]]:
    async with AsyncSessionLocal() as session:
        q = select(UserInterest.user_id, UserInterest.category)
        if user_ids is not None:
            q = q.where(UserInterest.user_id.in_(set(user_ids)))
        res = await session.execute(q)
        out: Dict[int, Set[str]] = defaultdict(set)
        for uid, category in res.all():
            out[uid].add(category)
        return out

# friend requests
@retry_transient
async def get_friend_request(request_id: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(select(FriendRequest).where(FriendRequest.id == request_id))
        return q.scalars().first()

@retry_transient
async def find_active_request(user_a: int, user_b: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest)
            .where(_between(FriendRequest, user_a, user_b), FriendRequest.status.in_(ACTIVE_STATUSES))
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        )
        return q.scalars().first()

@retry_transient
async def latest_request_between(user_a: int, user_b: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest)
            .where(_between(FriendRequest, user_a, user_b))
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
            .limit(1)
        )
        return q.scalars().first()

@retry_transient
async def create_friend_request(sender_id: int, receiver_id: int):
    """Insert a pending request. Raises IntegrityError when the pair already has an active one."""
    async with AsyncSessionLocal() as session:
        fr = FriendRequest(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=FriendStatus.PENDING.value,
            pair_key=make_pair_key(sender_id, receiver_id),
        )
        session.add(fr)
        await session.flush()
        await commit_once(session)
    await hub.publish(ChangeEvent('friend_requests', INSERT, new=row_to_dict(fr)))
    return fr

@retry_transient
async def resolve_friend_request(request_id: int, receiver_id: int, decision: str):
    """Move a pending request addressed to receiver_id to decision.
    Returns the updated row, or None when nothing was pending to update."""
    async with AsyncSessionLocal() as session:
        res = await session.execute(
            update(FriendRequest)
            .where(
                FriendRequest.id == request_id,
                FriendRequest.receiver_id == receiver_id,
                FriendRequest.status == FriendStatus.PENDING.value,
            )
            .values(status=decision, updated_at=utcnow())
        )
        await session.commit()
        if res.rowcount == 0:
            return None
        q = await session.execute(select(FriendRequest).where(FriendRequest.id == request_id))
        fr = q.scalars().first()
    old = dict(row_to_dict(fr), status=FriendStatus.PENDING.value)
    await hub.publish(ChangeEvent('friend_requests', UPDATE, new=row_to_dict(fr), old=old))
    return fr

@retry_transient
async def delete_friend_requests(requests: List[FriendRequest], status: str | None = None) -> int:
    """Delete the given rows, only while they still have status when one is given.
    Returns the number of rows deleted."""
    if not requests:
        return 0
    q = delete(FriendRequest).where(FriendRequest.id.in_([r.id for r in requests]))
    if status is not None:
        q = q.where(FriendRequest.status == status)
    async with AsyncSessionLocal() as session:
        res = await session.execute(q)
        await session.commit()
    if res.rowcount:
        for fr in requests:
            await hub.publish(ChangeEvent('friend_requests', DELETE, old=row_to_dict(fr)))
    return res.rowcount

@retry_transient
async def delete_resolved_between(user_a: int, user_b: int) -> int:
    """Drop rejected history for the pair once its relationship is removed"""
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest)
            .where(_between(FriendRequest, user_a, user_b), FriendRequest.status == FriendStatus.REJECTED.value)
        )
        rows = q.scalars().all()
        if not rows:
            return 0
        await session.execute(delete(FriendRequest).where(FriendRequest.id.in_([r.id for r in rows])))
        await session.commit()
    for fr in rows:
        await hub.publish(ChangeEvent('friend_requests', DELETE, old=row_to_dict(fr)))
    return len(rows)

@retry_transient
async def list_accepted_between(user_a: int, user_b: int) -> List[FriendRequest]:
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest)
            .where(_between(FriendRequest, user_a, user_b), FriendRequest.status == FriendStatus.ACCEPTED.value)
        )
        return q.scalars().all()

@retry_transient
async def list_pending_for(user_id: int) -> List[Tuple[FriendRequest, Profile]]:
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest, Profile)
            .join(Profile, Profile.id == FriendRequest.sender_id)
            .where(FriendRequest.receiver_id == user_id, FriendRequest.status == FriendStatus.PENDING.value)
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        )
        return [(fr, p) for fr, p in q.all()]

@retry_transient
async def list_requests_involving(user_id: int, statuses: Iterable[str]) -> List[FriendRequest]:
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(FriendRequest)
            .where(
                or_(FriendRequest.sender_id == user_id, FriendRequest.receiver_id == user_id),
                FriendRequest.status.in_(list(statuses)),
            )
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        )
        return q.scalars().all()

# messaging
@retry_transient
async def send_message(sender_id: int, receiver_id: int, content: str, media_url: str | None = None):
    async with AsyncSessionLocal() as session:
        m = Message(sender_id=sender_id, receiver_id=receiver_id, content=content, media_url=media_url, read=False)
        session.add(m)
        await session.flush()
        await commit_once(session)
    await hub.publish(ChangeEvent('messages', INSERT, new=row_to_dict(m)))
    return m

@retry_transient
async def latest_message_between(user_a: int, user_b: int):
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Message)
            .where(_between(Message, user_a, user_b))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
        )
        return q.scalars().first()

@retry_transient
async def list_dialog(user_id: int, peer_id: int) -> List[Tuple[Message, Profile]]:
    async with AsyncSessionLocal() as session:
        q = await session.execute(
            select(Message, Profile)
            .join(Profile, Profile.id == Message.sender_id)
            .where(_between(Message, user_id, peer_id))
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return [(m, p) for m, p in q.all()]

@retry_transient
async def mark_read(sender_id: int, receiver_id: int, message_ids: Optional[List[int]] = None) -> List[int]:
    """Flip read=true on unread messages from sender to receiver (optionally only message_ids).
    Returns the ids that changed."""
    async with AsyncSessionLocal() as session:
        q = select(Message).where(
            Message.sender_id == sender_id,
            Message.receiver_id == receiver_id,
            Message.read.is_(False),
        )
        if message_ids is not None:
            q = q.where(Message.id.in_(message_ids))
        rows = (await session.execute(q)).scalars().all()
        if not rows:
            return []
        ids = [m.id for m in rows]
        olds = [row_to_dict(m) for m in rows]
        await session.execute(update(Message).where(Message.id.in_(ids)).values(read=True))
        await session.commit()
    for old in olds:
        await hub.publish(ChangeEvent('messages', UPDATE, new=dict(old, read=True), old=old))
    return ids
