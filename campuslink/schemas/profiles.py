from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import List, Optional

class ProfileSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    avatar_url: Optional[str] = None

class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    full_name: str
    avatar_url: Optional[str] = None
    field_of_study: Optional[str] = None
    year: Optional[int] = None
    created_at: Optional[datetime] = None

class ProfileUpdateIn(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    field_of_study: Optional[str] = Field(None, max_length=255)
    year: Optional[int] = Field(None, ge=1, le=10)

class InterestsIn(BaseModel):
    categories: List[str] = Field(default_factory=list, max_length=50)

class InterestsOut(BaseModel):
    categories: List[str]

class ActionOkOut(BaseModel):
    ok: bool = True
    message: Optional[str] = None
