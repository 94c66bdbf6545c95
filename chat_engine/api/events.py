"""
In-process fan-out of stream events to Server-Sent Events subscribers.

The broker is registered as the chat manager's callbacks; every
subscriber of a session gets its own queue.
"""
import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Set

from chat_engine.services.chat_manager import ChatCallbacks
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.api.events")

MAX_QUEUE_SIZE = 1000


class EventBroker:
    def __init__(self):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_QUEUE_SIZE)
        self._subscribers.setdefault(session_id, set()).add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def publish(self, session_id: str, event: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(session_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping event for slow subscriber", extra={"event_type": event.get("type")})

    def as_callbacks(self) -> ChatCallbacks:
        def start(session_id: str, message_id: str) -> None:
            self.publish(session_id, {"type": "stream-start", "message_id": message_id})

        def chunk(session_id: str, message_id: str, text: str, full_content: str) -> None:
            self.publish(session_id, {
                "type": "stream-chunk",
                "message_id": message_id,
                "chunk": text,
                "content": full_content,
            })

        def end(session_id: str, message_id: str, full_content: str) -> None:
            self.publish(session_id, {"type": "stream-end", "message_id": message_id, "content": full_content})

        def error(session_id: str, message_id: str, message: str) -> None:
            self.publish(session_id, {"type": "stream-error", "message_id": message_id, "error": message})

        return ChatCallbacks(on_stream_start=start, on_stream_chunk=chunk, on_stream_end=end, on_stream_error=error)

    async def stream(self, session_id: str, keepalive: Optional[float] = 15.0) -> AsyncIterator[str]:
        """Yield SSE frames for one subscriber until the client goes away."""
        queue = self.subscribe(session_id)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), keepalive)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"
        finally:
            self.unsubscribe(session_id, queue)
