"""
Conversation list: one summary per accepted peer, newest activity first.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from . import crud
from .friendship import peers, require_caller
from .messaging import MessageChannel, OnMessage
from .models.friend_requests import FriendStatus
from .realtime import hub, ChangeEvent, Eq, Or, INSERT, UPDATE, parse_timestamp
from .schemas.messages import ConversationSummary
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

NO_MESSAGES_PREVIEW = 'Start a conversation'
ATTACHMENT_PREVIEW = 'Sent an attachment'


def preview_text(content: Optional[str], media_url: Optional[str]) -> str:
    if content and content.strip():
        return content
    return ATTACHMENT_PREVIEW if media_url else ''


def build_summary(user_id: int, peer, last) -> ConversationSummary:
    if last is None:
        return ConversationSummary(
            peer_id=peer.id,
            peer_name=peer.full_name,
            peer_avatar_url=peer.avatar_url,
            last_message=NO_MESSAGES_PREVIEW,
        )
    return ConversationSummary(
        peer_id=peer.id,
        peer_name=peer.full_name,
        peer_avatar_url=peer.avatar_url,
        last_message=preview_text(last.content, last.media_url),
        last_message_at=last.created_at,
        last_message_id=last.id,
        unread=last.receiver_id == user_id and not last.read,
    )


def sort_conversations(items) -> List[ConversationSummary]:
    """Most recent activity first; peers without messages last, by name."""
    active = sorted(
        (c for c in items if c.last_message_at is not None),
        key=lambda c: (c.last_message_at, c.last_message_id or 0),
        reverse=True,
    )
    idle = sorted((c for c in items if c.last_message_at is None), key=lambda c: c.peer_name.lower())
    return active + idle


async def list_conversations(caller_id: Optional[int]) -> List[ConversationSummary]:
    caller_id = require_caller(caller_id)
    peer_ids = await peers(caller_id)
    if not peer_ids:
        return []
    profiles = await crud.get_profiles(peer_ids)
    # gather keeps argument order whatever order the lookups finish in
    lasts = await asyncio.gather(*(crud.latest_message_between(caller_id, p) for p in peer_ids))
    return sort_conversations(
        build_summary(caller_id, profiles[p], last)
        for p, last in zip(peer_ids, lasts)
        if p in profiles
    )


OnConversations = Callable[[List[ConversationSummary]], Awaitable[None]]


def _is_accepted_change(event: ChangeEvent) -> bool:
    accepted = FriendStatus.ACCEPTED.value
    return (event.new or {}).get('status') == accepted or (event.old or {}).get('status') == accepted


class ConversationFeed:
    """
    Live conversation list for one user.

    Message inserts touching the user patch the matching summary in place.
    Relationship changes that create or remove a friendship, and messages
    from a peer not yet in the list, trigger a full reload.
    """

    def __init__(self, user_id: int, on_change: Optional[OnConversations] = None,
                 on_message: Optional[OnMessage] = None, storage: Optional[ObjectStorage] = None):
        self.user_id = user_id
        self.on_change = on_change
        self.on_message = on_message
        self.storage = storage
        self.channel: Optional[MessageChannel] = None
        self._items: Dict[int, ConversationSummary] = {}
        self._subscriptions = []
        self.closed = False

    @property
    def conversations(self) -> List[ConversationSummary]:
        return sort_conversations(self._items.values())

    @property
    def open_peer_id(self) -> Optional[int]:
        return self.channel.peer_id if self.channel else None

    def get(self, peer_id: int) -> Optional[ConversationSummary]:
        return self._items.get(peer_id)

    async def start(self):
        mine = Or(Eq('sender_id', self.user_id), Eq('receiver_id', self.user_id))
        self._subscriptions = [
            hub.subscribe('messages', self._on_message_insert, events=(INSERT,), where=mine),
            hub.subscribe('messages', self._on_message_update, events=(UPDATE,), where=Eq('receiver_id', self.user_id)),
            hub.subscribe('friend_requests', self._on_relationship_change, where=mine),
        ]
        await self.refresh()
        return self

    async def refresh(self):
        items = await list_conversations(self.user_id)
        if self.closed:
            return
        self._items = {c.peer_id: c for c in items}
        if self.open_peer_id in self._items:
            self._items[self.open_peer_id].unread = False
        await self._emit()

    async def open(self, peer_id: int) -> MessageChannel:
        """Switch the open conversation to peer_id and load its transcript.
        If loading fails the previous conversation stays open."""
        channel = MessageChannel(self.user_id, peer_id, on_message=self.on_message, storage=self.storage)
        try:
            await channel.open()
        except Exception:
            await channel.close()
            raise
        await self.close_conversation()
        self.channel = channel
        summary = self._items.get(peer_id)
        if summary and summary.unread:
            summary.unread = False
            await self._emit()
        return self.channel

    async def close_conversation(self):
        if self.channel:
            await self.channel.close()
            self.channel = None

    async def _on_message_insert(self, event: ChangeEvent):
        if self.closed:
            return
        row = event.new or {}
        incoming = row.get('receiver_id') == self.user_id
        peer_id = row.get('sender_id') if incoming else row.get('receiver_id')
        summary = self._items.get(peer_id)
        if summary is None:
            await self.refresh()
            return
        if summary.last_message_id is not None and row.get('id', 0) <= summary.last_message_id:
            return
        self._items[peer_id] = summary.model_copy(update={
            'last_message': preview_text(row.get('content'), row.get('media_url')),
            'last_message_at': parse_timestamp(row.get('created_at')),
            'last_message_id': row.get('id'),
            'unread': incoming and not row.get('read') and peer_id != self.open_peer_id,
        })
        await self._emit()

    async def _on_message_update(self, event: ChangeEvent):
        if self.closed:
            return
        row = event.new or {}
        summary = self._items.get(row.get('sender_id'))
        if summary and summary.unread and summary.last_message_id == row.get('id') and row.get('read'):
            summary.unread = False
            await self._emit()

    async def _on_relationship_change(self, event: ChangeEvent):
        if self.closed or not _is_accepted_change(event):
            return
        await self.refresh()

    async def _emit(self):
        if self.on_change and not self.closed:
            await self.on_change(self.conversations)

    async def close(self):
        self.closed = True
        await self.close_conversation()
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
