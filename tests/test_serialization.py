from datetime import datetime, timezone

import pytest

from chat_engine.core.exceptions import DataCorruptedError
from chat_engine.schemas.chat_schema import ChatSession, ImageAttachment, Message, MessageRole
from chat_engine.schemas.config_schema import ModelConfig, ProviderKind
from chat_engine.utils.dates import from_iso, to_iso, utc_now
from chat_engine.utils.serialization import (
    deserialize_config,
    deserialize_message,
    deserialize_session,
    generate_config_id,
    generate_message_id,
    generate_session_id,
    serialize_config,
    serialize_message,
    serialize_session,
)


def test_iso_format_is_fixed_width_utc():
    dt = datetime(2024, 1, 31, 12, 0, 0, 123000, tzinfo=timezone.utc)
    assert to_iso(dt) == "2024-01-31T12:00:00.123Z"
    assert from_iso("2024-01-31T12:00:00.123Z") == dt


def test_utc_now_is_truncated_to_milliseconds():
    now = utc_now()
    assert now.microsecond % 1000 == 0
    assert now.tzinfo is not None
    assert from_iso(to_iso(now)) == now


def test_ids_are_prefixed_and_unique():
    assert generate_config_id().startswith("config-")
    assert generate_session_id().startswith("session-")
    assert generate_message_id().startswith("msg-")
    assert generate_message_id() != generate_message_id()


def test_config_round_trip():
    config = ModelConfig(
        id="config-1",
        name="GPT",
        provider=ProviderKind.OPENAI_COMPATIBLE,
        api_url="https://example.com/v1",
        model_name="m",
        api_key="k",
        is_default=True,
        created_at=utc_now(),
        sort_order=2,
    )
    data = serialize_config(config)
    assert data["provider"] == "openai-compatible"
    assert isinstance(data["created_at"], str)
    assert deserialize_config(data) == config


def test_session_round_trip_keeps_messages_and_timestamps():
    created = utc_now()
    messages = [
        Message(id="msg-1", session_id="session-1", role=MessageRole.USER, content="hello",
                images=[ImageAttachment(id="img-1", data="data:image/png;base64,AAAA", mime_type="image/png")]),
        Message(id="msg-2", session_id="session-1", role=MessageRole.ASSISTANT, content="hi", is_streaming=True),
    ]
    session = ChatSession(id="session-1", config_id="config-1", title="t",
                          created_at=created, updated_at=created, messages=messages)

    restored = deserialize_session(serialize_session(session))

    assert restored == session
    assert [m.id for m in restored.messages] == ["msg-1", "msg-2"]
    assert restored.created_at == created
    assert restored.messages[0].images[0].mime_type == "image/png"


def test_message_without_images_omits_the_field():
    message = Message(id="msg-1", session_id="s", role=MessageRole.ASSISTANT, content="x")
    assert "images" not in serialize_message(message)
    assert deserialize_message(serialize_message(message)) == message


@pytest.mark.parametrize("bad", [
    {"id": "msg-1", "session_id": "s", "role": "system", "content": "x", "timestamp": "2024-01-01T00:00:00.000Z"},
    {"id": "msg-1", "session_id": "s", "role": "user", "content": "x", "timestamp": "not a date"},
])
def test_corrupted_message_raises(bad):
    with pytest.raises(DataCorruptedError):
        deserialize_message(bad)


def test_corrupted_session_raises():
    with pytest.raises(DataCorruptedError):
        deserialize_session({"id": "session-1", "messages": "oops"})
