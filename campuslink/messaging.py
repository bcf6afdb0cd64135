"""
Direct messages between two friends: transcript, send and read tracking.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from . import crud
from .core import MESSAGES_SENT
from .exceptions import BackendUnavailable, EmptyMessage, NotFriends
from .friendship import are_friends, require_caller
from .realtime import hub, ChangeEvent, And, Eq, Or, INSERT
from .schemas.messages import MessageOut, TranscriptMessageOut
from .schemas.profiles import ProfileSummary
from .storage import ObjectStorage, attachment_key, check_attachment_size, get_storage

logger = logging.getLogger(__name__)

# stored body of a message that only carries an attachment
PLACEHOLDER_BODY = ' '


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes


def pair_filter(user_id: int, peer_id: int):
    return Or(
        And(Eq('sender_id', user_id), Eq('receiver_id', peer_id)),
        And(Eq('sender_id', peer_id), Eq('receiver_id', user_id)),
    )


async def open_conversation(caller_id: Optional[int], peer_id: int) -> List[TranscriptMessageOut]:
    """Mark everything the peer sent the caller as read, then return the full transcript."""
    caller_id = require_caller(caller_id)
    marked = await crud.mark_read(peer_id, caller_id)
    if marked:
        logger.debug(f'{caller_id} read {len(marked)} messages from {peer_id}')
    return [
        TranscriptMessageOut.model_validate(m).model_copy(update={'sender': ProfileSummary.model_validate(p)})
        for m, p in await crud.list_dialog(caller_id, peer_id)
    ]


async def send_message(caller_id: Optional[int], peer_id: int, body: Optional[str],
                       attachment: Optional[Attachment] = None,
                       storage: Optional[ObjectStorage] = None) -> MessageOut:
    """
    Upload the attachment (if any) and store a message from caller to peer.
    Raises:
        Unauthenticated: no caller identity.
        EmptyMessage: blank body and no attachment.
        NotFriends: caller and peer have no accepted relationship.
        AttachmentTooLarge: attachment exceeds MAX_ATTACHMENT_SIZE.
    """
    caller_id = require_caller(caller_id)
    body = body or ''
    if not body.strip():
        if attachment is None:
            raise EmptyMessage()
        body = PLACEHOLDER_BODY
    if not await are_friends(caller_id, peer_id):
        raise NotFriends(caller_id, peer_id)

    media_url = None
    if attachment is not None:
        check_attachment_size(attachment.data)
        storage = storage or get_storage()
        media_url = await storage.upload_object(
            attachment_key(caller_id, attachment.filename),
            attachment.data,
            attachment.content_type or 'application/octet-stream',
        )

    m = await crud.send_message(caller_id, peer_id, body, media_url)
    MESSAGES_SENT.inc()
    return MessageOut.model_validate(m)


OnMessage = Callable[[TranscriptMessageOut], Awaitable[None]]


class MessageChannel:
    """
    Live transcript of one (user, peer) conversation.

    Messages appear either from send() or from the insert notification for
    the same row, in whichever order those arrive; rows are keyed by id so
    each one is appended exactly once. Messages from the peer are marked
    read as soon as they land.
    """

    def __init__(self, user_id: int, peer_id: int, on_message: Optional[OnMessage] = None,
                 storage: Optional[ObjectStorage] = None):
        self.user_id = user_id
        self.peer_id = peer_id
        self.on_message = on_message
        self.storage = storage
        self.messages: List[TranscriptMessageOut] = []
        self._ids = set()
        self._profiles: Dict[int, ProfileSummary] = {}
        self._subscription = None
        self.closed = False

    async def open(self) -> List[TranscriptMessageOut]:
        # subscribe first so nothing inserted while loading is missed
        self._subscription = hub.subscribe(
            'messages', self._on_insert, events=(INSERT,), where=pair_filter(self.user_id, self.peer_id)
        )
        profiles = await crud.get_profiles([self.user_id, self.peer_id])
        self._profiles = {uid: ProfileSummary.model_validate(p) for uid, p in profiles.items()}
        transcript = await open_conversation(self.user_id, self.peer_id)
        if self.closed:
            return []
        live = [m for m in self.messages if m.id not in {t.id for t in transcript}]
        self.messages = sorted(transcript + live, key=lambda m: (m.created_at, m.id))
        self._ids = {m.id for m in self.messages}
        return self.messages

    async def send(self, body: Optional[str], attachment: Optional[Attachment] = None) -> MessageOut:
        m = await send_message(self.user_id, self.peer_id, body, attachment, storage=self.storage)
        if not self.closed:
            await self._append(TranscriptMessageOut(**m.model_dump(), sender=self._profiles.get(m.sender_id)))
        return m

    async def _on_insert(self, event: ChangeEvent):
        if self.closed:
            return
        row = event.new or {}
        if row.get('id') in self._ids:
            return
        msg = TranscriptMessageOut(**row, sender=self._profiles.get(row.get('sender_id')))
        # claimed before the read update yields, so a concurrent send() cannot append it too
        self._ids.add(msg.id)
        if msg.sender_id == self.peer_id and not msg.read:
            try:
                await crud.mark_read(self.peer_id, self.user_id, [msg.id])
                msg.read = True
            except BackendUnavailable as e:
                logger.warning(f'could not mark message {msg.id} read: {e}')
        await self._store(msg)

    async def _append(self, msg: TranscriptMessageOut):
        if msg.id in self._ids:
            return
        self._ids.add(msg.id)
        await self._store(msg)

    async def _store(self, msg: TranscriptMessageOut):
        if self.closed:
            return
        self.messages.append(msg)
        if self.on_message:
            await self.on_message(msg)

    async def close(self):
        self.closed = True
        if self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None
