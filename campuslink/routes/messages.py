from fastapi import APIRouter, Depends, File, Form, UploadFile
from typing import List, Optional

from ..schemas.messages import MessageOut, TranscriptMessageOut, ConversationSummary
from ..conversations import list_conversations
from ..messaging import Attachment, open_conversation, send_message
from ..auth import get_current_user
from ..cache import check_rate_limit
from ..exceptions import RateLimited
from ..storage import ObjectStorage, get_storage

router = APIRouter()


@router.get('/conversations', response_model=List[ConversationSummary])
async def conversations(current_user: int = Depends(get_current_user)):
    return await list_conversations(current_user)


@router.get('/{peer_id}', response_model=List[TranscriptMessageOut])
async def dialog(peer_id: int, current_user: int = Depends(get_current_user)):
    """Open the conversation: marks the peer's messages read and returns the transcript"""
    return await open_conversation(current_user, peer_id)


@router.post('/{peer_id}', response_model=MessageOut)
async def send(
    peer_id: int,
    body: str = Form(''),
    attachment: Optional[UploadFile] = File(None),
    current_user: int = Depends(get_current_user),
    storage: ObjectStorage = Depends(get_storage),
):
    # Rate limiting - max 100 messages per hour
    if not await check_rate_limit(current_user, "send_message", limit=100, window=3600):
        raise RateLimited("Rate limit exceeded. Too many messages.")

    upload = None
    if attachment is not None and attachment.filename:
        upload = Attachment(
            filename=attachment.filename,
            content_type=attachment.content_type or 'application/octet-stream',
            data=await attachment.read(),
        )
    return await send_message(current_user, peer_id, body, upload, storage=storage)
