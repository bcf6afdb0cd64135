from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import Optional

from .profiles import ProfileSummary

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    receiver_id: int
    content: str
    media_url: Optional[str] = None
    read: bool = False
    created_at: datetime

class TranscriptMessageOut(MessageOut):
    sender: Optional[ProfileSummary] = None

class ConversationSummary(BaseModel):
    peer_id: int
    peer_name: str
    peer_avatar_url: Optional[str] = None
    last_message: str
    last_message_at: Optional[datetime] = None
    last_message_id: Optional[int] = None
    unread: bool = False
