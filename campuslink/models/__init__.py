from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from ..config import DATABASE_URL

if DATABASE_URL.startswith('sqlite'):
    # aiosqlite connections must not outlive the event loop that opened them
    engine = create_async_engine(DATABASE_URL, future=True, echo=False, poolclass=NullPool)
else:
    engine = create_async_engine(DATABASE_URL, future=True, echo=False, pool_pre_ping=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored timestamp uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Import models to register tables
from .profiles import Profile, UserInterest  # noqa: F401,E402
from .friend_requests import FriendRequest, FriendStatus  # noqa: F401,E402
from .messages import Message  # noqa: F401,E402
