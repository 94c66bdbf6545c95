from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from chat_engine.utils.dates import from_iso, to_iso, utc_now


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ImageAttachment(BaseModel):
    id: str
    data: str  # base64 data URL: data:<mime>;base64,<payload>
    mime_type: str
    name: Optional[str] = None


class ImageGenerationParams(BaseModel):
    size: Optional[str] = None  # "WxH"
    n: Optional[int] = None
    negative_prompt: Optional[str] = None
    guidance_scale: Optional[float] = None
    steps: Optional[int] = None
    seed: Optional[int] = None
    style: Optional[str] = None


class Message(BaseModel):
    id: str
    session_id: str
    role: MessageRole
    content: str = ""
    images: Optional[List[ImageAttachment]] = None
    timestamp: datetime = Field(default_factory=utc_now)
    is_streaming: bool = False

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        if isinstance(value, str):
            return from_iso(value)
        return value

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return to_iso(value)


class ChatSession(BaseModel):
    id: str
    config_id: str
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    messages: List[Message] = []

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_dates(cls, value):
        if isinstance(value, str):
            return from_iso(value)
        return value

    @field_serializer("created_at", "updated_at")
    def _serialize_dates(self, value: datetime) -> str:
        return to_iso(value)


class SessionPreview(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    first_message_preview: Optional[str] = None

    @field_serializer("created_at", "updated_at")
    def _serialize_dates(self, value: datetime) -> str:
        return to_iso(value)


# ------ HTTP request bodies -----
class SessionCreate(BaseModel):
    config_id: Optional[str] = None
    title: Optional[str] = None


class SessionRename(BaseModel):
    title: str


class SessionSwitchConfig(BaseModel):
    config_id: str


class SendMessageRequest(BaseModel):
    content: str
    images: Optional[List[ImageAttachment]] = None
    image_params: Optional[ImageGenerationParams] = None


class ResendResponse(BaseModel):
    assistant_message_id: str
    messages: List[Message]
