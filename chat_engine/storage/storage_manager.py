"""
Durable store for model configs and chat sessions.

Messages live inside their session row as an ordered JSON list; the list
order is the conversation order. Read-modify-write operations on one
session are serialized with a per-session asyncio lock.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_engine.core.exceptions import ConfigNotFoundError, SessionNotFoundError, StorageError
from chat_engine.models.chat_session import ChatSessionRecord
from chat_engine.models.model_config import ModelConfigRecord
from chat_engine.schemas.chat_schema import ChatSession, Message
from chat_engine.schemas.config_schema import ModelConfig
from chat_engine.utils.dates import to_iso, utc_now
from chat_engine.utils.logger import get_logger
from chat_engine.utils.serialization import (
    deserialize_config,
    deserialize_message,
    deserialize_session,
    serialize_config,
    serialize_message,
    serialize_session,
)

logger = get_logger("chat_engine.storage")


def _config_from_record(record: ModelConfigRecord) -> ModelConfig:
    return deserialize_config({
        "id": record.id,
        "name": record.name,
        "provider": record.provider,
        "api_url": record.api_url or "",
        "model_name": record.model_name,
        "api_key": record.api_key,
        "is_default": bool(record.is_default),
        "created_at": record.created_at,
        "sort_order": record.sort_order,
    })


def _session_from_record(record: ChatSessionRecord) -> ChatSession:
    return deserialize_session({
        "id": record.id,
        "config_id": record.config_id,
        "title": record.title,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "messages": record.messages,
    })


def _config_sort_key(config: ModelConfig):
    # Explicitly ordered configs first, then newest first
    if config.sort_order is not None:
        return (0, config.sort_order, 0.0)
    return (1, 0, -config.created_at.timestamp())


class StorageManager:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _db(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as db:
            try:
                yield db
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("Storage operation failed", extra={"operation": operation, "error": str(e)})
                raise StorageError(f"Storage operation failed: {operation}", details=str(e)) from e

    # ------ Configs -----
    async def save_config(self, config: ModelConfig) -> None:
        async with self._db("save_config") as db:
            await db.merge(ModelConfigRecord(**serialize_config(config)))
            await db.commit()

    async def load_configs(self) -> List[ModelConfig]:
        async with self._db("load_configs") as db:
            result = await db.execute(select(ModelConfigRecord))
            configs = [_config_from_record(r) for r in result.scalars().all()]
        return sorted(configs, key=_config_sort_key)

    async def get_config(self, config_id: str) -> Optional[ModelConfig]:
        async with self._db("get_config") as db:
            record = await db.get(ModelConfigRecord, config_id)
            return _config_from_record(record) if record is not None else None

    async def delete_config(self, config_id: str) -> None:
        async with self._db("delete_config") as db:
            await db.execute(delete(ModelConfigRecord).where(ModelConfigRecord.id == config_id))
            await db.commit()

    async def get_default_config(self) -> Optional[ModelConfig]:
        async with self._db("get_default_config") as db:
            result = await db.execute(
                select(ModelConfigRecord).where(ModelConfigRecord.is_default.is_(True)).limit(1)
            )
            record = result.scalars().first()
            return _config_from_record(record) if record is not None else None

    async def set_default_config(self, config_id: str) -> None:
        """Flip is_default on every row in one transaction."""
        async with self._db("set_default_config") as db:
            if await db.get(ModelConfigRecord, config_id) is None:
                raise ConfigNotFoundError(config_id)
            await db.execute(update(ModelConfigRecord).values(is_default=False))
            await db.execute(
                update(ModelConfigRecord).where(ModelConfigRecord.id == config_id).values(is_default=True)
            )
            await db.commit()

    async def save_configs_order(self, config_ids: Iterable[str]) -> None:
        async with self._db("save_configs_order") as db:
            for index, config_id in enumerate(config_ids):
                await db.execute(
                    update(ModelConfigRecord).where(ModelConfigRecord.id == config_id).values(sort_order=index)
                )
            await db.commit()

    # ------ Sessions -----
    async def save_session(self, session: ChatSession) -> None:
        async with self._lock(session.id):
            async with self._db("save_session") as db:
                await db.merge(ChatSessionRecord(**serialize_session(session)))
                await db.commit()

    async def load_session(self, session_id: str) -> Optional[ChatSession]:
        async with self._db("load_session") as db:
            record = await db.get(ChatSessionRecord, session_id)
            return _session_from_record(record) if record is not None else None

    async def load_all_sessions(self) -> List[ChatSession]:
        async with self._db("load_all_sessions") as db:
            result = await db.execute(select(ChatSessionRecord).order_by(ChatSessionRecord.updated_at.desc()))
            return [_session_from_record(r) for r in result.scalars().all()]

    async def get_sessions_by_config(self, config_id: str) -> List[ChatSession]:
        async with self._db("get_sessions_by_config") as db:
            result = await db.execute(
                select(ChatSessionRecord)
                .where(ChatSessionRecord.config_id == config_id)
                .order_by(ChatSessionRecord.updated_at.desc())
            )
            return [_session_from_record(r) for r in result.scalars().all()]

    async def update_session_metadata(
        self,
        session_id: str,
        title: Optional[str] = None,
        config_id: Optional[str] = None,
        touch: bool = True,
    ) -> ChatSession:
        """Change title and/or config without rewriting the message list."""
        async with self._lock(session_id):
            async with self._db("update_session_metadata") as db:
                record = await db.get(ChatSessionRecord, session_id)
                if record is None:
                    raise SessionNotFoundError(session_id)
                if title is not None:
                    record.title = title
                if config_id is not None:
                    record.config_id = config_id
                if touch:
                    record.updated_at = to_iso(utc_now())
                await db.commit()
                return _session_from_record(record)

    async def delete_session(self, session_id: str) -> None:
        async with self._lock(session_id):
            async with self._db("delete_session") as db:
                await db.execute(delete(ChatSessionRecord).where(ChatSessionRecord.id == session_id))
                await db.commit()
        self._locks.pop(session_id, None)

    # ------ Messages -----
    async def save_message(self, message: Message) -> None:
        """Replace the message with the same id in its session, or append it."""
        async with self._lock(message.session_id):
            async with self._db("save_message") as db:
                record = await db.get(ChatSessionRecord, message.session_id)
                if record is None:
                    raise SessionNotFoundError(message.session_id)
                data = serialize_message(message)
                # Assign a new list; in-place mutation of a JSON column is not tracked
                messages: List[Dict[str, Any]] = list(record.messages or [])
                for index, existing in enumerate(messages):
                    if existing.get("id") == message.id:
                        messages[index] = data
                        break
                else:
                    messages.append(data)
                record.messages = messages
                record.updated_at = to_iso(utc_now())
                await db.commit()

    async def update_message(self, message: Message) -> bool:
        """Replace an existing message; returns False when it no longer exists."""
        async with self._lock(message.session_id):
            async with self._db("update_message") as db:
                record = await db.get(ChatSessionRecord, message.session_id)
                if record is None:
                    return False
                messages: List[Dict[str, Any]] = list(record.messages or [])
                for index, existing in enumerate(messages):
                    if existing.get("id") == message.id:
                        messages[index] = serialize_message(message)
                        break
                else:
                    return False
                record.messages = messages
                record.updated_at = to_iso(utc_now())
                await db.commit()
                return True

    async def load_messages(self, session_id: str) -> List[Message]:
        async with self._db("load_messages") as db:
            record = await db.get(ChatSessionRecord, session_id)
            if record is None:
                return []
            return [deserialize_message(m) for m in record.messages or []]

    async def delete_message(self, session_id: str, message_id: str) -> None:
        await self.delete_messages(session_id, [message_id])

    async def delete_messages(self, session_id: str, message_ids: Iterable[str]) -> None:
        """Remove the given messages; unknown ids and sessions are ignored."""
        ids = set(message_ids)
        async with self._lock(session_id):
            async with self._db("delete_messages") as db:
                record = await db.get(ChatSessionRecord, session_id)
                if record is None or not ids:
                    return
                messages = [m for m in record.messages or [] if m.get("id") not in ids]
                if len(messages) == len(record.messages or []):
                    return
                record.messages = messages
                record.updated_at = to_iso(utc_now())
                await db.commit()

    # ------ Maintenance -----
    async def clear_all(self) -> None:
        async with self._db("clear_all") as db:
            await db.execute(delete(ChatSessionRecord))
            await db.execute(delete(ModelConfigRecord))
            await db.commit()
        logger.warning("All stored configs and sessions cleared")

    async def get_stats(self) -> Dict[str, int]:
        async with self._db("get_stats") as db:
            config_count = await db.scalar(select(func.count()).select_from(ModelConfigRecord))
            session_count = await db.scalar(select(func.count()).select_from(ChatSessionRecord))
            result = await db.execute(select(ChatSessionRecord.messages))
            message_count = sum(len(messages or []) for messages in result.scalars().all())
        return {
            "config_count": config_count or 0,
            "session_count": session_count or 0,
            "message_count": message_count,
        }
