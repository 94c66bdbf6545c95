from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from chat_engine.utils.dates import from_iso, to_iso, utc_now


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENAI_COMPATIBLE = "openai-compatible"
    IMAGE_GENERATION = "image-generation"

    @property
    def is_task_polling(self) -> bool:
        return self is ProviderKind.IMAGE_GENERATION


class ModelConfig(BaseModel):
    id: str
    name: str
    provider: ProviderKind
    api_url: str = ""
    model_name: str
    api_key: str
    is_default: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    sort_order: Optional[int] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, value):
        if isinstance(value, str):
            return from_iso(value)
        return value

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime) -> str:
        return to_iso(value)


class ConfigCreate(BaseModel):
    """Raw user input; checked by ConfigurationManager.validate_config_input."""
    name: str = ""
    provider: str = ""
    api_url: Optional[str] = None
    model_name: str = ""
    api_key: str = ""
    is_default: Optional[bool] = None


class ConfigUpdate(BaseModel):
    name: Optional[str] = None
    provider: Optional[str] = None
    api_url: Optional[str] = None
    model_name: Optional[str] = None
    api_key: Optional[str] = None
    is_default: Optional[bool] = None


class ConfigReorder(BaseModel):
    ids: list[str]


class ConfigTestResult(BaseModel):
    success: bool
    message: str
