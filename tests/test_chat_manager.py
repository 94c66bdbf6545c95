import asyncio

import httpx
import pytest

from chat_engine.adapters.base import Append, Replace
from chat_engine.core.exceptions import (
    ConfigNotFoundError,
    InvalidOperationError,
    MessageNotFoundError,
    ProviderHTTPError,
    SessionNotFoundError,
)
from chat_engine.schemas.chat_schema import ImageAttachment, MessageRole
from chat_engine.services.chat_manager import ChatManager, apply_chunk, derive_title


async def wait_until(predicate, timeout=2.0):
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def use(adapter, **kwargs):
    """Reconfigure the shared scripted adapter in place."""
    for key, value in kwargs.items():
        setattr(adapter, key, value)


# ------ helpers -----
def test_apply_chunk():
    assert apply_chunk("ab", Append("c")) == "abc"
    assert apply_chunk("generating...", Replace("done")) == "done"


def test_derive_title():
    assert derive_title("  Hello  ") == "Hello"
    assert derive_title("x" * 40) == "x" * 30 + "..."
    assert derive_title("   ") == "New Chat"


# ------ sessions -----
async def test_create_session_requires_a_config(chat_manager):
    with pytest.raises(ConfigNotFoundError):
        await chat_manager.create_session()


async def test_create_session_uses_default_config(chat_manager, default_config):
    session = await chat_manager.create_session()
    assert session.config_id == default_config.id
    assert session.title == "New Chat"
    assert session.messages == []
    assert (await chat_manager.get_session(session.id)).id == session.id


async def test_create_session_with_unknown_config(chat_manager, default_config):
    with pytest.raises(ConfigNotFoundError):
        await chat_manager.create_session(config_id="config-missing")


async def test_send_message_streams_reply(chat_manager, session, recorder):
    user = await chat_manager.send_message(session.id, "Hello there")
    assert user.role == MessageRole.USER
    assert chat_manager.is_streaming(session.id)

    await chat_manager.wait_for_stream(session.id)

    messages = await chat_manager.get_messages(session.id)
    assert len(messages) == 2
    assert messages[0].id == user.id
    assert messages[1].role == MessageRole.ASSISTANT
    assert messages[1].content == "Hi!"
    assert messages[1].is_streaming is False
    assert not chat_manager.is_streaming(session.id)
    assert (await chat_manager.get_session(session.id)).title == "Hello there"

    assert [e[0] for e in recorder.events] == ["start", "chunk", "chunk", "chunk", "end"]
    assert [e[3] for e in recorder.of_type("chunk")] == ["H", "Hi", "Hi!"]
    assert recorder.of_type("end")[0][2] == "Hi!"


async def test_title_only_derived_from_first_message(chat_manager, session):
    await chat_manager.send_message(session.id, "A very long first question about streaming")
    await chat_manager.wait_for_stream(session.id)
    await chat_manager.send_message(session.id, "second")
    await chat_manager.wait_for_stream(session.id)
    assert (await chat_manager.get_session(session.id)).title == "A very long first question abo..."


async def test_empty_message_is_rejected(chat_manager, session):
    with pytest.raises(InvalidOperationError):
        await chat_manager.send_message(session.id, "   ")


async def test_send_to_missing_session(chat_manager, default_config):
    with pytest.raises(SessionNotFoundError):
        await chat_manager.send_message("session-missing", "hi")


async def test_send_with_dangling_config(chat_manager, config_manager, session, default_config):
    await config_manager.delete_config(default_config.id)
    with pytest.raises(ConfigNotFoundError):
        await chat_manager.send_message(session.id, "hi")


async def test_replace_chunk_overwrites_progress(chat_manager, session, adapter):
    use(adapter, chunks=[Append("generating..."), Replace("![img](url)")])
    await chat_manager.send_message(session.id, "draw a cat")
    await chat_manager.wait_for_stream(session.id)
    messages = await chat_manager.get_messages(session.id)
    assert messages[1].content == "![img](url)"


async def test_images_reach_the_adapter(chat_manager, session, adapter):
    image = ImageAttachment(id="img-1", data="data:image/png;base64,AAA", mime_type="image/png")
    await chat_manager.send_message(session.id, "", images=[image])
    await chat_manager.wait_for_stream(session.id)
    assert adapter.calls[0]["images"] == [image]
    assert (await chat_manager.get_messages(session.id))[0].images == [image]


# ------ failures -----
async def test_error_is_persisted_as_reply(chat_manager, session, adapter, recorder):
    use(adapter, error=ProviderHTTPError("openai", 401, "Unauthorized"), fail_times=1)
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.wait_for_stream(session.id)

    reply = (await chat_manager.get_messages(session.id))[1]
    assert "API key is invalid" in reply.content
    assert reply.is_streaming is False
    assert len(adapter.calls) == 1
    assert recorder.of_type("error")[0][2] == reply.content
    assert recorder.of_type("end") == []


async def test_retryable_error_before_first_chunk_is_retried(chat_manager, session, adapter):
    use(adapter, error=ProviderHTTPError("openai", 503, "overloaded"), fail_times=1)
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.wait_for_stream(session.id)

    assert len(adapter.calls) == 2
    assert (await chat_manager.get_messages(session.id))[1].content == "Hi!"


async def test_no_retry_after_first_chunk(chat_manager, session, adapter, recorder):
    use(adapter, chunks=["par", httpx.ReadError("connection reset")])
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.wait_for_stream(session.id)

    assert len(adapter.calls) == 1
    reply = (await chat_manager.get_messages(session.id))[1]
    assert reply.content.startswith("Network connection failed")
    assert len(recorder.of_type("error")) == 1


async def test_inactivity_watchdog_aborts_stream(chat_manager, session, adapter, recorder):
    use(adapter, chunks=["slow"], hang=True)
    await chat_manager.send_message(session.id, "hi")
    await asyncio.wait_for(chat_manager.wait_for_stream(session.id), 3)

    reply = (await chat_manager.get_messages(session.id))[1]
    assert reply.content.startswith("Connection timed out")
    assert reply.is_streaming is False
    assert len(recorder.of_type("error")) == 1


# ------ cancellation -----
async def test_cancel_keeps_partial_content(chat_manager, session, adapter, recorder):
    use(adapter, chunks=["partial"], hang=True)
    await chat_manager.send_message(session.id, "hi")

    async def got_chunk():
        return bool(recorder.of_type("chunk"))

    await wait_until(got_chunk)
    chat_manager.cancel_stream(session.id)
    chat_manager.cancel_stream(session.id)
    await chat_manager.wait_for_stream(session.id)

    reply = (await chat_manager.get_messages(session.id))[1]
    assert reply.content == "partial"
    assert reply.is_streaming is False
    assert recorder.of_type("end")[0][2] == "partial"
    assert recorder.of_type("error") == []
    assert not chat_manager.is_streaming(session.id)


def test_cancel_without_stream_is_noop(store, config_manager, test_settings):
    ChatManager(store, config_manager, settings=test_settings).cancel_stream("session-idle")


async def test_partial_content_is_checkpointed(chat_manager, session, adapter, store):
    use(adapter, chunks=["a" * 60, "b" * 60], hang=True)
    await chat_manager.send_message(session.id, "hi")

    async def checkpointed():
        messages = await store.load_messages(session.id)
        return len(messages) == 2 and len(messages[1].content) == 120

    await wait_until(checkpointed)
    assert (await store.load_messages(session.id))[1].is_streaming is True
    chat_manager.cancel_stream(session.id)
    await chat_manager.wait_for_stream(session.id)


async def test_delete_session_cancels_stream(chat_manager, session, adapter):
    use(adapter, hang=True)
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.delete_session(session.id)

    assert not chat_manager.is_streaming(session.id)
    assert await chat_manager.get_session(session.id) is None


async def test_shutdown_finalizes_streams(chat_manager, session, adapter, store):
    use(adapter, chunks=["x"], hang=True)
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.shutdown()

    assert not chat_manager.is_streaming(session.id)
    assert (await store.load_messages(session.id))[1].is_streaming is False


# ------ concurrency -----
async def test_sessions_are_isolated(chat_manager, default_config):
    first = await chat_manager.create_session()
    second = await chat_manager.create_session()

    await asyncio.gather(
        chat_manager.send_message(first.id, "one"),
        chat_manager.send_message(second.id, "two"),
    )
    await asyncio.gather(chat_manager.wait_for_stream(first.id), chat_manager.wait_for_stream(second.id))

    for session, prompt in ((first, "one"), (second, "two")):
        messages = await chat_manager.get_messages(session.id)
        assert [m.content for m in messages] == [prompt, "Hi!"]
        assert all(m.session_id == session.id for m in messages)


async def test_concurrent_sends_on_one_session_are_serialized(chat_manager, session, adapter, recorder):
    use(adapter, delay=0.02)
    await chat_manager.send_message(session.id, "first")
    await chat_manager.send_message(session.id, "second")
    await chat_manager.wait_for_stream(session.id)

    messages = await chat_manager.get_messages(session.id)
    assert [m.content for m in messages] == ["first", "Hi!", "second", "Hi!"]
    assert all(not m.is_streaming for m in messages)
    assert adapter.calls[1]["history"] == ["first", "Hi!"]
    assert len(recorder.of_type("end")) == 2


async def test_overlapping_sends_keep_turns_in_order(chat_manager, session, adapter):
    use(adapter, delay=0.01)
    await asyncio.gather(
        chat_manager.send_message(session.id, "first"),
        chat_manager.send_message(session.id, "second"),
    )
    await chat_manager.wait_for_stream(session.id)

    messages = await chat_manager.get_messages(session.id)
    assert [(m.role, m.content) for m in messages] == [
        (MessageRole.USER, "first"),
        (MessageRole.ASSISTANT, "Hi!"),
        (MessageRole.USER, "second"),
        (MessageRole.ASSISTANT, "Hi!"),
    ]
    assert (await chat_manager.get_session(session.id)).title == "first"
    assert adapter.calls[1]["history"] == ["first", "Hi!"]


async def test_cancel_waits_for_every_queued_stream(chat_manager, session, adapter, recorder):
    use(adapter, chunks=["x"], hang=True)
    await chat_manager.send_message(session.id, "first")
    await chat_manager.send_message(session.id, "second")

    async def got_chunk():
        return bool(recorder.of_type("chunk"))

    await wait_until(got_chunk)
    chat_manager.cancel_stream(session.id)
    await chat_manager.wait_for_stream(session.id)

    assert not chat_manager.is_streaming(session.id)
    messages = await chat_manager.get_messages(session.id)
    assert [(m.content, m.is_streaming) for m in messages] == [
        ("first", False),
        ("x", False),
        ("second", False),
        ("", False),
    ]
    # The queued turn never started, so it reports nothing
    assert [e[0] for e in recorder.events] == ["start", "chunk", "end"]
    assert recorder.of_type("end")[0][2] == "x"


async def test_shutdown_waits_for_streams_behind_a_queued_turn(chat_manager, session, adapter, store):
    use(adapter, chunks=["x"], hang=True)
    await chat_manager.send_message(session.id, "first")
    await chat_manager.send_message(session.id, "second")
    await chat_manager.shutdown()

    assert not chat_manager.is_streaming(session.id)
    assert all(not m.is_streaming for m in await store.load_messages(session.id))


async def test_image_generation_turns_get_the_longer_inactivity_budget(
    store, config_manager, test_settings, default_config, make_config_input, scripted
):
    settings = test_settings.model_copy(
        update={"STREAM_TIMEOUT_SECONDS": 0.1, "IMAGE_STREAM_TIMEOUT_SECONDS": 5.0}
    )
    silent = scripted(chunks=["generating..."], hang=True)
    manager = ChatManager(store, config_manager, lambda config: silent, settings)
    images = await config_manager.create_config(make_config_input(
        "Images", provider="image-generation", api_url="https://images.test", model_name="flux"
    ))
    image_session = await manager.create_session(images.id)
    text_session = await manager.create_session(default_config.id)

    try:
        await manager.send_message(image_session.id, "draw a cat")
        await manager.send_message(text_session.id, "hi")
        await asyncio.wait_for(manager.wait_for_stream(text_session.id), 3)
        await asyncio.sleep(0.2)

        text_reply = (await manager.get_messages(text_session.id))[1]
        assert text_reply.content.startswith("Connection timed out")
        assert manager.is_streaming(image_session.id)
    finally:
        await manager.shutdown()

    image_reply = (await manager.get_messages(image_session.id))[1]
    assert image_reply.content == "generating..."
    assert image_reply.is_streaming is False


# ------ resend / regenerate -----
async def test_resend_first_message_truncates(chat_manager, session, adapter):
    first = await chat_manager.send_message(session.id, "first")
    await chat_manager.wait_for_stream(session.id)
    await chat_manager.send_message(session.id, "second")
    await chat_manager.wait_for_stream(session.id)
    assert len(await chat_manager.get_messages(session.id)) == 4

    assistant_id, messages = await chat_manager.resend_message(session.id, first.id)

    assert [m.id for m in messages] == [first.id, assistant_id]
    await chat_manager.wait_for_stream(session.id)
    final = await chat_manager.get_messages(session.id)
    assert len(final) == 2
    assert final[1].content == "Hi!"
    assert adapter.calls[-1]["prompt"] == "first"
    assert adapter.calls[-1]["history"] == []


async def test_resend_rejects_assistant_and_unknown_messages(chat_manager, session):
    await chat_manager.send_message(session.id, "hi")
    await chat_manager.wait_for_stream(session.id)
    reply = (await chat_manager.get_messages(session.id))[1]

    with pytest.raises(InvalidOperationError):
        await chat_manager.resend_message(session.id, reply.id)
    with pytest.raises(MessageNotFoundError):
        await chat_manager.resend_message(session.id, "msg-missing")


async def test_regenerate_last_response(chat_manager, session, adapter):
    await chat_manager.send_message(session.id, "first")
    await chat_manager.wait_for_stream(session.id)
    await chat_manager.send_message(session.id, "second")
    await chat_manager.wait_for_stream(session.id)
    old_reply = (await chat_manager.get_messages(session.id))[3]

    use(adapter, chunks=["New answer"])
    placeholder = await chat_manager.regenerate_last_response(session.id)
    await chat_manager.wait_for_stream(session.id)

    messages = await chat_manager.get_messages(session.id)
    assert [m.content for m in messages] == ["first", "Hi!", "second", "New answer"]
    assert messages[3].id == placeholder.id != old_reply.id
    assert adapter.calls[-1]["prompt"] == "second"
    assert adapter.calls[-1]["history"] == ["first", "Hi!"]


async def test_regenerate_drops_unanswered_messages_after_last_reply(chat_manager, session, adapter):
    await chat_manager.send_message(session.id, "first")
    await chat_manager.wait_for_stream(session.id)
    await chat_manager.send_message(session.id, "second")
    await chat_manager.wait_for_stream(session.id)
    second_reply = (await chat_manager.get_messages(session.id))[3]
    await chat_manager.delete_message(session.id, second_reply.id)

    use(adapter, chunks=["Again"])
    await chat_manager.regenerate_last_response(session.id)
    await chat_manager.wait_for_stream(session.id)

    assert [m.content for m in await chat_manager.get_messages(session.id)] == ["first", "Again"]
    assert adapter.calls[-1]["prompt"] == "first"
    assert adapter.calls[-1]["history"] == []


async def test_regenerate_without_reply_fails(chat_manager, session):
    with pytest.raises(InvalidOperationError):
        await chat_manager.regenerate_last_response(session.id)


# ------ session maintenance -----
async def test_switch_config_keeps_updated_at(chat_manager, config_manager, session, make_config_input):
    other = await config_manager.create_config(make_config_input("Other"))
    before = await chat_manager.get_session(session.id)

    switched = await chat_manager.switch_session_config(session.id, other.id)

    assert switched.config_id == other.id
    assert switched.updated_at == before.updated_at
    with pytest.raises(ConfigNotFoundError):
        await chat_manager.switch_session_config(session.id, "config-missing")


async def test_update_title(chat_manager, session):
    renamed = await chat_manager.update_session_title(session.id, "  Trip plans ")
    assert renamed.title == "Trip plans"
    with pytest.raises(InvalidOperationError):
        await chat_manager.update_session_title(session.id, " ")
    with pytest.raises(SessionNotFoundError):
        await chat_manager.update_session_title("session-missing", "x")


async def test_previews_and_delete_message(chat_manager, session):
    await chat_manager.send_message(session.id, "p" * 80)
    await chat_manager.wait_for_stream(session.id)

    preview = (await chat_manager.get_session_previews())[0]
    assert preview.id == session.id
    assert preview.message_count == 2
    assert preview.first_message_preview == "p" * 50

    reply = (await chat_manager.get_messages(session.id))[1]
    await chat_manager.delete_message(session.id, reply.id)
    assert len(await chat_manager.get_messages(session.id)) == 1
    assert len(await chat_manager.get_all_sessions()) == 1
