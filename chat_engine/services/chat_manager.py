"""
Chat orchestration: sessions, turns and streaming.

Each turn persists a user message and an empty assistant placeholder,
then streams the provider reply into the placeholder from a background
task. Turns on one session are persisted one at a time, and a turn
whose stream is queued behind a running one waits for it, so
its history includes the previous reply.

A watchdog aborts a stream when no data arrives within the inactivity
budget. Cancellation keeps the partial reply. Failures are persisted as
the assistant reply in user-facing form.
"""
import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from chat_engine.adapters.base import ChatAdapter, Chunk, Replace
from chat_engine.adapters.factory import create_adapter
from chat_engine.core.config import Settings, settings as default_settings
from chat_engine.core.exceptions import (
    ConfigNotFoundError,
    InvalidOperationError,
    MessageNotFoundError,
    ProviderTimeoutError,
    SessionNotFoundError,
)
from chat_engine.schemas.chat_schema import (
    ChatSession,
    ImageAttachment,
    ImageGenerationParams,
    Message,
    MessageRole,
    SessionPreview,
)
from chat_engine.schemas.config_schema import ModelConfig
from chat_engine.services.config_manager import ConfigurationManager
from chat_engine.storage.storage_manager import StorageManager
from chat_engine.utils.api_errors import get_friendly_message
from chat_engine.utils.dates import utc_now
from chat_engine.utils.logger import get_logger, set_session_id
from chat_engine.utils.retry import RetryConfig, with_retry
from chat_engine.utils.serialization import generate_message_id, generate_session_id

logger = get_logger("chat_engine.chat_manager")

DEFAULT_TITLE = "New Chat"
PREVIEW_LENGTH = 50


@dataclass
class ChatCallbacks:
    """Stream lifecycle hooks; each may be a plain function or a coroutine function."""

    on_stream_start: Optional[Callable[[str, str], Any]] = None
    on_stream_chunk: Optional[Callable[[str, str, str, str], Any]] = None
    on_stream_end: Optional[Callable[[str, str, str], Any]] = None
    on_stream_error: Optional[Callable[[str, str, str], Any]] = None


@dataclass(eq=False)
class ActiveStream:
    session_id: str
    message_id: str
    previous: Optional["ActiveStream"] = None
    task: Optional[asyncio.Task] = None
    cancelled: bool = False
    timed_out: bool = False
    running: bool = False
    finalizing: bool = False
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def abort(self) -> None:
        if self.task is not None and self.running and not self.finalizing and not self.task.done():
            self.task.cancel()


@dataclass
class _Turn:
    config: ModelConfig
    prompt: str
    user_message_id: str
    placeholder: Message
    images: Optional[List[ImageAttachment]] = None
    image_params: Optional[ImageGenerationParams] = None


def derive_title(content: str, max_length: int = 30) -> str:
    text = content.strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def apply_chunk(content: str, chunk: Chunk) -> str:
    if isinstance(chunk, Replace):
        return chunk.text
    return content + chunk.text


class ChatManager:
    def __init__(
        self,
        store: StorageManager,
        config_manager: ConfigurationManager,
        adapter_factory: Optional[Callable[[ModelConfig], ChatAdapter]] = None,
        settings: Optional[Settings] = None,
        callbacks: Optional[ChatCallbacks] = None,
    ):
        self.store = store
        self.config_manager = config_manager
        self.settings = settings or default_settings
        self.adapter_factory = adapter_factory or (lambda config: create_adapter(config, settings=self.settings))
        self.callbacks = callbacks or ChatCallbacks()
        # Every unfinished stream per session, oldest first
        self._active_streams: Dict[str, List[ActiveStream]] = {}
        self._turn_locks: Dict[str, asyncio.Lock] = {}

    def _turn_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._turn_locks.get(session_id)
        if lock is None:
            lock = self._turn_locks[session_id] = asyncio.Lock()
        return lock

    def set_callbacks(self, callbacks: ChatCallbacks) -> None:
        self.callbacks = callbacks

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.settings.STREAM_MAX_RETRIES,
            initial_delay=self.settings.RETRY_INITIAL_DELAY_SECONDS,
            max_delay=self.settings.RETRY_MAX_DELAY_SECONDS,
            backoff_multiplier=self.settings.RETRY_BACKOFF_MULTIPLIER,
        )

    # ------ Sessions -----
    async def create_session(self, config_id: Optional[str] = None, title: Optional[str] = None) -> ChatSession:
        if config_id is not None:
            config = await self.config_manager.get_config(config_id)
            if config is None:
                raise ConfigNotFoundError(config_id)
        else:
            config = await self.config_manager.get_default_config()
            if config is None:
                raise ConfigNotFoundError()

        now = utc_now()
        session = ChatSession(
            id=generate_session_id(),
            config_id=config.id,
            title=(title or "").strip() or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            messages=[],
        )
        await self.store.save_session(session)
        logger.info("Session created", extra={"session_id": session.id, "config_id": config.id})
        return session

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        return await self.store.load_session(session_id)

    async def _require_session(self, session_id: str) -> ChatSession:
        session = await self.store.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _require_config(self, config_id: str) -> ModelConfig:
        config = await self.config_manager.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return config

    async def get_all_sessions(self) -> List[ChatSession]:
        return await self.store.load_all_sessions()

    async def get_session_previews(self) -> List[SessionPreview]:
        previews = []
        for session in await self.store.load_all_sessions():
            first = session.messages[0].content[:PREVIEW_LENGTH] if session.messages else None
            previews.append(SessionPreview(
                id=session.id,
                title=session.title,
                created_at=session.created_at,
                updated_at=session.updated_at,
                message_count=len(session.messages),
                first_message_preview=first,
            ))
        return previews

    async def update_session_title(self, session_id: str, title: str) -> ChatSession:
        title = title.strip()
        if not title:
            raise InvalidOperationError("Session title cannot be empty")
        return await self.store.update_session_metadata(session_id, title=title)

    async def delete_session(self, session_id: str) -> None:
        async with self._turn_lock(session_id):
            await self._cancel_and_wait(session_id)
            await self.store.delete_session(session_id)
        self._turn_locks.pop(session_id, None)
        logger.info("Session deleted", extra={"session_id": session_id})

    async def switch_session_config(self, session_id: str, config_id: str) -> ChatSession:
        """Point the session at another config; messages and updated_at are untouched."""
        await self._require_config(config_id)
        session = await self.store.update_session_metadata(session_id, config_id=config_id, touch=False)
        logger.info("Session config switched", extra={"session_id": session_id, "config_id": config_id})
        return session

    # ------ Messages -----
    async def get_messages(self, session_id: str) -> List[Message]:
        session = await self._require_session(session_id)
        return session.messages

    async def delete_message(self, session_id: str, message_id: str) -> None:
        await self._require_session(session_id)
        await self.store.delete_message(session_id, message_id)

    def _new_message(self, session_id: str, role: MessageRole, content: str = "", **kwargs) -> Message:
        return Message(
            id=generate_message_id(),
            session_id=session_id,
            role=role,
            content=content,
            timestamp=utc_now(),
            **kwargs,
        )

    async def send_message(
        self,
        session_id: str,
        content: str,
        images: Optional[List[ImageAttachment]] = None,
        image_params: Optional[ImageGenerationParams] = None,
    ) -> Message:
        """Persist the user turn, start streaming the reply and return the user message."""
        if not content.strip() and not images:
            raise InvalidOperationError("Message content cannot be empty")

        async with self._turn_lock(session_id):
            session = await self._require_session(session_id)
            config = await self._require_config(session.config_id)

            user_message = self._new_message(session_id, MessageRole.USER, content, images=images or None)
            await self.store.save_message(user_message)

            if not session.messages and session.title == DEFAULT_TITLE:
                title = derive_title(content, self.settings.TITLE_MAX_LENGTH)
                await self.store.update_session_metadata(session_id, title=title)

            placeholder = self._new_message(session_id, MessageRole.ASSISTANT, is_streaming=True)
            await self.store.save_message(placeholder)

            self._start_stream(_Turn(
                config=config,
                prompt=content,
                user_message_id=user_message.id,
                placeholder=placeholder,
                images=images,
                image_params=image_params,
            ))
        return user_message

    async def resend_message(self, session_id: str, message_id: str) -> Tuple[str, List[Message]]:
        """
        Replay a user message: every later message is dropped and a fresh
        reply is streamed. Returns the new assistant message id and the
        resulting message list.
        """
        async with self._turn_lock(session_id):
            session = await self._require_session(session_id)
            target = next((m for m in session.messages if m.id == message_id), None)
            if target is None:
                raise MessageNotFoundError(message_id)
            if target.role != MessageRole.USER:
                raise InvalidOperationError("Only user messages can be resent")
            config = await self._require_config(session.config_id)

            await self._cancel_and_wait(session_id)
            messages = await self.store.load_messages(session_id)
            index = next(i for i, m in enumerate(messages) if m.id == message_id)
            await self.store.delete_messages(session_id, [m.id for m in messages[index + 1:]])

            placeholder = self._new_message(session_id, MessageRole.ASSISTANT, is_streaming=True)
            await self.store.save_message(placeholder)
            self._start_stream(_Turn(
                config=config,
                prompt=target.content,
                user_message_id=target.id,
                placeholder=placeholder,
                images=target.images,
            ))
            return placeholder.id, await self.store.load_messages(session_id)

    async def regenerate_last_response(self, session_id: str) -> Message:
        """Drop the last assistant reply (and anything after it) and stream a new one."""
        async with self._turn_lock(session_id):
            session = await self._require_session(session_id)
            config = await self._require_config(session.config_id)

            await self._cancel_and_wait(session_id)
            messages = await self.store.load_messages(session_id)
            assistant_index = next(
                (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == MessageRole.ASSISTANT),
                None,
            )
            user_message = None
            if assistant_index is not None:
                user_message = next(
                    (messages[i] for i in range(assistant_index - 1, -1, -1) if messages[i].role == MessageRole.USER),
                    None,
                )
            if user_message is None:
                raise InvalidOperationError("No assistant response to regenerate")

            # The new reply is appended, so it must end the list: unanswered
            # messages after the old reply are dropped with it.
            await self.store.delete_messages(session_id, [m.id for m in messages[assistant_index:]])
            placeholder = self._new_message(session_id, MessageRole.ASSISTANT, is_streaming=True)
            await self.store.save_message(placeholder)
            self._start_stream(_Turn(
                config=config,
                prompt=user_message.content,
                user_message_id=user_message.id,
                placeholder=placeholder,
                images=user_message.images,
            ))
            return placeholder

    # ------ Stream control -----
    def is_streaming(self, session_id: str) -> bool:
        return bool(self._active_streams.get(session_id))

    def cancel_stream(self, session_id: str) -> None:
        """Abort the session's stream and any turn queued behind it; no-op when idle."""
        for handle in list(self._active_streams.get(session_id, ())):
            if not handle.cancelled:
                handle.cancelled = True
                handle.abort()
                logger.info("Stream cancelled", extra={"session_id": session_id, "message_id": handle.message_id})

    def _tasks(self, session_id: str) -> List[asyncio.Task]:
        return [h.task for h in self._active_streams.get(session_id, ()) if h.task is not None]

    async def wait_for_stream(self, session_id: str) -> None:
        """Wait until every stream of the session, queued ones included, has finished."""
        while True:
            tasks = self._tasks(session_id)
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def _cancel_and_wait(self, session_id: str) -> None:
        self.cancel_stream(session_id)
        await self.wait_for_stream(session_id)

    async def shutdown(self) -> None:
        session_ids = list(self._active_streams)
        count = sum(len(self._tasks(session_id)) for session_id in session_ids)
        for session_id in session_ids:
            self.cancel_stream(session_id)
        await asyncio.gather(*(self.wait_for_stream(session_id) for session_id in session_ids))
        logger.info("Chat manager stopped", extra={"streams": count})

    def _start_stream(self, turn: _Turn) -> ActiveStream:
        session_id = turn.placeholder.session_id
        handles = self._active_streams.setdefault(session_id, [])
        handle = ActiveStream(
            session_id=session_id,
            message_id=turn.placeholder.id,
            previous=handles[-1] if handles else None,
        )
        handles.append(handle)
        handle.task = asyncio.create_task(self._run_stream(handle, turn), name=f"stream-{session_id}")
        return handle

    def _unregister(self, handle: ActiveStream) -> None:
        handles = self._active_streams.get(handle.session_id)
        if handles is None:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._active_streams[handle.session_id]

    # ------ Streaming -----
    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Stream callback failed", extra={"callback": name})

    async def _persist(self, placeholder: Message, content: str, streaming: bool) -> None:
        saved = await self.store.update_message(
            placeholder.model_copy(update={"content": content, "is_streaming": streaming})
        )
        if not saved:
            logger.warning("Streaming message no longer exists", extra={"message_id": placeholder.id})

    async def _history_before(self, session_id: str, message_id: str) -> List[Message]:
        history = []
        for message in await self.store.load_messages(session_id):
            if message.id == message_id:
                break
            # Empty replies (cancelled before any data) carry nothing to send
            if message.content or message.images:
                history.append(message)
        return history

    async def _watchdog(self, handle: ActiveStream, budget: float) -> None:
        interval = self.settings.WATCHDOG_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            if time.monotonic() - handle.last_activity > budget:
                if not handle.cancelled:
                    handle.timed_out = True
                    logger.warning("Stream inactive, aborting", extra={"budget_seconds": budget})
                    handle.abort()
                return

    async def _open(self, adapter: ChatAdapter, turn: _Turn, history: List[Message]):
        """Start the provider stream and wait for its first chunk."""
        stream = adapter.send_message(turn.prompt, history, turn.images, turn.image_params)
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            return stream, None
        except BaseException:
            await stream.aclose()
            raise
        return stream, first

    async def _run_stream(self, handle: ActiveStream, turn: _Turn) -> None:
        session_id = handle.session_id
        message_id = handle.message_id
        set_session_id(session_id)
        polling = turn.config.provider.is_task_polling
        budget = self.settings.IMAGE_STREAM_TIMEOUT_SECONDS if polling else self.settings.STREAM_TIMEOUT_SECONDS
        interval = self.settings.CHECKPOINT_INTERVAL_CHARS

        content = ""
        error: Optional[BaseException] = None
        watchdog: Optional[asyncio.Task] = None
        try:
            handle.running = True
            if handle.previous is not None and handle.previous.task is not None:
                try:
                    await asyncio.wait({handle.previous.task})
                except asyncio.CancelledError:
                    if not handle.cancelled:
                        raise
            handle.previous = None
            if handle.cancelled:
                # Cancelled before it started, possibly while queued behind an earlier turn
                handle.finalizing = True
                await self._persist(turn.placeholder, content, False)
                logger.info("Queued stream dropped", extra={"message_id": message_id})
                return

            try:
                await self._emit("on_stream_start", session_id, message_id)
                logger.info("Stream started", extra={"message_id": message_id, "provider": turn.config.provider.value})
                handle.touch()
                watchdog = asyncio.create_task(self._watchdog(handle, budget))

                adapter = self.adapter_factory(turn.config)
                history = await self._history_before(session_id, turn.user_message_id)

                def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
                    handle.touch()
                    logger.info("Retrying stream", extra={"attempt": attempt, "delay": round(delay, 3)})

                stream, chunk = await with_retry(
                    lambda: self._open(adapter, turn, history), self.retry_config, on_retry
                )
                last_saved = 0
                try:
                    while chunk is not None and not handle.cancelled:
                        handle.touch()
                        content = apply_chunk(content, chunk)
                        await self._emit("on_stream_chunk", session_id, message_id, chunk.text, content)
                        if abs(len(content) - last_saved) >= interval:
                            await self._persist(turn.placeholder, content, True)
                            last_saved = len(content)
                        try:
                            chunk = await stream.__anext__()
                        except StopAsyncIteration:
                            chunk = None
                finally:
                    await stream.aclose()
            except asyncio.CancelledError:
                if handle.timed_out:
                    error = ProviderTimeoutError(f"Stream timed out: no data received for {budget:g}s")
                elif not handle.cancelled:
                    raise
            except Exception as exc:
                error = exc
            finally:
                handle.finalizing = True
                if watchdog is not None:
                    watchdog.cancel()

            if error is not None:
                message = get_friendly_message(error, image_generation=polling)
                logger.error(
                    "Stream failed",
                    extra={"message_id": message_id, "error": str(error), "error_class": type(error).__name__},
                )
                await self._persist(turn.placeholder, message, False)
                await self._emit("on_stream_error", session_id, message_id, message)
            else:
                await self._persist(turn.placeholder, content, False)
                logger.info(
                    "Stream finished",
                    extra={"message_id": message_id, "chars": len(content), "cancelled": handle.cancelled},
                )
                await self._emit("on_stream_end", session_id, message_id, content)
        finally:
            self._unregister(handle)
