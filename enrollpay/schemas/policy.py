from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
import uuid


class PolicyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    terms_url: str = Field(..., min_length=1)
    privacy_url: Optional[str] = None
    version: str = Field(..., min_length=1)
    terms_text: Optional[str] = None
    privacy_text: Optional[str] = None
    is_default: bool = False


class Policy(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    terms_url: str
    privacy_url: Optional[str] = None
    version: str
    terms_text: Optional[str] = None
    privacy_text: Optional[str] = None
    terms_content_hash: str
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
