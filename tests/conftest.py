import asyncio
import os

os.environ.setdefault("LOG_TO_FILE", "false")

import pytest

from chat_engine.adapters.base import Append, ChatAdapter
from chat_engine.core.config import Settings
from chat_engine.core.database import build_engine, build_sessionmaker, init_models
from chat_engine.schemas.config_schema import ConfigCreate
from chat_engine.services.chat_manager import ChatCallbacks, ChatManager
from chat_engine.services.config_manager import ConfigurationManager
from chat_engine.storage.storage_manager import StorageManager

class ScriptedAdapter(ChatAdapter):
    """
    Adapter double. Yields `chunks` in order; an exception instance in the
    list is raised at that point. The first `fail_times` calls raise `error`
    before any chunk.
    """

    provider = "scripted"

    def __init__(self, chunks=(), delay=0.0, hang=False, error=None, fail_times=0, valid=True):
        super().__init__("test-key", "http://provider.test", "test-model")
        self.chunks = list(chunks)
        self.delay = delay
        self.hang = hang
        self.error = error
        self.fail_times = fail_times
        self.valid = valid
        self.calls = []

    async def send_message(self, prompt, history, images=None, image_params=None):
        self.calls.append({"prompt": prompt, "history": [m.content for m in history], "images": images})
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk if not isinstance(chunk, str) else Append(chunk)
        if self.hang:
            await asyncio.Event().wait()

    async def validate_credentials(self):
        return self.valid


class CallbackRecorder:
    def __init__(self):
        self.events = []
        self.finished = asyncio.Event()

    def callbacks(self) -> ChatCallbacks:
        def start(session_id, message_id):
            self.events.append(("start", session_id, message_id))

        async def chunk(session_id, message_id, text, full_content):
            self.events.append(("chunk", session_id, text, full_content))

        def end(session_id, message_id, full_content):
            self.events.append(("end", session_id, full_content))
            self.finished.set()

        def error(session_id, message_id, message):
            self.events.append(("error", session_id, message))
            self.finished.set()

        return ChatCallbacks(on_stream_start=start, on_stream_chunk=chunk, on_stream_end=end, on_stream_error=error)

    def of_type(self, kind):
        return [e for e in self.events if e[0] == kind]


def config_input(name="Primary", provider="openai", **overrides) -> ConfigCreate:
    data = {
        "name": name,
        "provider": provider,
        "api_url": "https://api.openai.com/v1",
        "model_name": "gpt-4o",
        "api_key": "sk-test",
    }
    data.update(overrides)
    return ConfigCreate(**data)


@pytest.fixture
def make_config_input():
    return config_input


@pytest.fixture
def test_settings(database_url):
    return Settings(
        DATABASE_URL=database_url,
        STREAM_TIMEOUT_SECONDS=0.3,
        IMAGE_STREAM_TIMEOUT_SECONDS=0.3,
        WATCHDOG_INTERVAL_SECONDS=0.02,
        IMAGE_POLL_INTERVAL_SECONDS=0,
        IMAGE_MAX_POLL_ATTEMPTS=3,
        STREAM_MAX_RETRIES=1,
        RETRY_INITIAL_DELAY_SECONDS=0.01,
        RETRY_MAX_DELAY_SECONDS=0.02,
        CHECKPOINT_INTERVAL_CHARS=100,
    )


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'chats.db'}"


@pytest.fixture
async def engine(database_url):
    engine = build_engine(database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def store(sessionmaker):
    return StorageManager(sessionmaker)


@pytest.fixture
def adapter():
    return ScriptedAdapter(chunks=["H", "i", "!"])


@pytest.fixture
def config_manager(store, adapter):
    return ConfigurationManager(store, lambda config: adapter)


@pytest.fixture
def recorder():
    return CallbackRecorder()


@pytest.fixture
async def chat_manager(store, config_manager, adapter, test_settings, recorder):
    manager = ChatManager(store, config_manager, lambda config: adapter, test_settings, recorder.callbacks())
    yield manager
    await manager.shutdown()


@pytest.fixture
async def default_config(config_manager):
    return await config_manager.create_config(config_input())


@pytest.fixture
async def session(chat_manager, default_config):
    return await chat_manager.create_session()


@pytest.fixture
def scripted():
    return ScriptedAdapter
