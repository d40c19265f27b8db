from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime
from utils.response_helpers import Pagination
import uuid


class MessageCreate(BaseModel):
    receiver_id: uuid.UUID
    content: Optional[str] = Field(None, max_length=5000)
    image_url: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def content_or_image(self):
        if not (self.content and self.content.strip()) and not self.image_url:
            raise ValueError("Message must have content or an image")
        return self


class TypingEvent(BaseModel):
    receiver_id: uuid.UUID
    is_typing: bool = True


class MarkReadEvent(BaseModel):
    message_id: uuid.UUID


class MessageResponse(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class ChatPartner(BaseModel):
    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    is_online: bool = False


class ConversationResponse(BaseModel):
    partner: ChatPartner
    last_message: MessageResponse
    unread_count: int


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    pagination: Pagination
