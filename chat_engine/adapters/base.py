"""
Provider adapter contract.

An adapter turns (prompt, history) into a lazy async iterator of chunks.
A chunk either appends text to the assistant reply or replaces the whole
reply. Adapters raise on HTTP or protocol failures and never retry;
retrying and timeouts on silence belong to the chat orchestrator.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import httpx

from chat_engine.core.exceptions import ContentError, ProviderHTTPError, ProviderTimeoutError
from chat_engine.schemas.chat_schema import ImageAttachment, ImageGenerationParams, Message
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.adapters")

DEFAULT_CONNECT_TIMEOUT = 15.0

# Body fragments of a 4xx reply that mean the model rejected image input
_MULTIMODAL_REJECTIONS = ("vision", "multimodal", "image_url", "image input", "does not support image")


@dataclass(frozen=True)
class Append:
    text: str


@dataclass(frozen=True)
class Replace:
    text: str


Chunk = Union[Append, Replace]


def split_data_url(data: str, fallback_mime: str = "image/png") -> Tuple[str, str]:
    """Split "data:<mime>;base64,<payload>" into (mime, payload)."""
    if data.startswith("data:") and "," in data:
        header, payload = data.split(",", 1)
        mime = header[5:].split(";", 1)[0] or fallback_mime
        return mime, payload
    return fallback_mime, data


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield every decodable JSON payload of the "data:" lines of an SSE body.
    Stops at "data: [DONE]"; comments, event lines and malformed frames
    are skipped.
    """
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Skipping malformed SSE frame", extra={"frame": data[:200]})
            continue
        if isinstance(payload, dict):
            yield payload


class ChatAdapter(ABC):
    """Base class for all provider adapters."""

    provider: str = "unknown"

    def __init__(
        self,
        api_key: str,
        api_url: str,
        model_name: str,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.model_name = model_name
        self.connect_timeout = connect_timeout
        self._client = client

    @abstractmethod
    def send_message(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
        image_params: Optional[ImageGenerationParams] = None,
    ) -> AsyncIterator[Chunk]:
        ...

    @abstractmethod
    async def validate_credentials(self) -> bool:
        ...

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        """The injected client, or a short-lived one closed on exit."""
        if self._client is not None:
            yield self._client
            return
        # Only connection setup is bounded; a stream may stay open as long as data flows
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_error:
            body = (await response.aread()).decode("utf-8", errors="replace")
            if response.status_code in (400, 415, 422) and any(k in body.lower() for k in _MULTIMODAL_REJECTIONS):
                raise ContentError(f"{self.provider} rejected image input: {body}")
            logger.warning(
                "Provider returned an error status",
                extra={"provider": self.provider, "status_code": response.status_code},
            )
            raise ProviderHTTPError(self.provider, response.status_code, body, dict(response.headers))

    @asynccontextmanager
    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """
        POST and wait for the response headers for at most connect_timeout.
        The response is closed when the block exits, including on cancellation.
        """
        request = client.build_request("POST", url, json=payload, headers=headers, params=params)
        try:
            response = await asyncio.wait_for(client.send(request, stream=True), self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.provider} connection timeout after {self.connect_timeout:g}s"
            ) from e
        try:
            await self._raise_for_status(response)
            yield response
        finally:
            await response.aclose()
