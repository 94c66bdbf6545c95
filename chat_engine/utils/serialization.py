"""
Record (de)serialization helpers used at the storage boundary.

Records are plain JSON-compatible dicts; timestamps go through the
field serializers declared on the schemas (see utils/dates.py).
"""
import uuid
from typing import Any, Dict

from pydantic import ValidationError

from chat_engine.core.exceptions import DataCorruptedError
from chat_engine.schemas.chat_schema import ChatSession, Message
from chat_engine.schemas.config_schema import ModelConfig


# ------ Ids -----
def generate_id() -> str:
    return str(uuid.uuid4())


def generate_config_id() -> str:
    return f"config-{generate_id()}"


def generate_session_id() -> str:
    return f"session-{generate_id()}"


def generate_message_id() -> str:
    return f"msg-{generate_id()}"


# ------ ModelConfig -----
def serialize_config(config: ModelConfig) -> Dict[str, Any]:
    return config.model_dump(mode="json")


def deserialize_config(data: Dict[str, Any]) -> ModelConfig:
    try:
        return ModelConfig.model_validate(data)
    except ValidationError as e:
        raise DataCorruptedError(f"Corrupted config record: {data.get('id')}", details=str(e)) from e


# ------ Message -----
def serialize_message(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json", exclude_none=True)


def deserialize_message(data: Dict[str, Any]) -> Message:
    try:
        return Message.model_validate(data)
    except ValidationError as e:
        raise DataCorruptedError(f"Corrupted message record: {data.get('id')}", details=str(e)) from e


# ------ ChatSession -----
def serialize_session(session: ChatSession) -> Dict[str, Any]:
    data = session.model_dump(mode="json", exclude={"messages"})
    data["messages"] = [serialize_message(m) for m in session.messages]
    return data


def deserialize_session(data: Dict[str, Any]) -> ChatSession:
    try:
        return ChatSession.model_validate(data)
    except ValidationError as e:
        raise DataCorruptedError(f"Corrupted session record: {data.get('id')}", details=str(e)) from e
