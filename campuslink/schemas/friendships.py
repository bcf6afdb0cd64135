from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import List, Optional

from .profiles import ProfileSummary
from ..models.friend_requests import FriendStatus

class FriendRequestIn(BaseModel):
    target_id: int

class RespondIn(BaseModel):
    decision: str

class FriendRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    receiver_id: int
    status: FriendStatus
    created_at: datetime

class PendingRequestOut(FriendRequestOut):
    sender: ProfileSummary

class StatusOut(BaseModel):
    status: FriendStatus

class SuggestionOut(BaseModel):
    id: int
    full_name: str
    avatar_url: Optional[str] = None
    field_of_study: str = ''
    common_interests: int = 0
    interests: List[str] = []
