import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, text
from . import Base, utcnow


class FriendStatus(str, enum.Enum):
    NONE = 'none'
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


ACTIVE_STATUSES = (FriendStatus.PENDING.value, FriendStatus.ACCEPTED.value)


def make_pair_key(user_a: int, user_b: int) -> str:
    a, b = sorted([user_a, user_b])
    return f'{a}:{b}'


_active_clause = text("status IN ('pending', 'accepted')")


class FriendRequest(Base):
    __tablename__ = 'friend_requests'
    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    receiver_id = Column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), index=True, nullable=False)
    status = Column(String(20), default=FriendStatus.PENDING.value, nullable=False)
    # unordered pair, so both directions collide on the active index
    pair_key = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    __table_args__ = (
        Index(
            'uix_friend_requests_active_pair', 'pair_key', unique=True,
            postgresql_where=_active_clause, sqlite_where=_active_clause,
        ),
    )
