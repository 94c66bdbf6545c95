from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_engine.adapters.base import Append, ChatAdapter, Chunk, iter_sse_json, split_data_url
from chat_engine.core.exceptions import ProtocolError
from chat_engine.schemas.chat_schema import ImageAttachment, ImageGenerationParams, Message, MessageRole

MAX_OUTPUT_TOKENS = 4096


def _parts(text: str, images: Optional[List[ImageAttachment]]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for img in images or []:
        mime_type, data = split_data_url(img.data, img.mime_type)
        parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
    parts.append({"text": text})
    return parts


class GoogleAdapter(ChatAdapter):
    """Gemini streamGenerateContent over SSE."""

    provider = "google"

    def format_contents(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
    ) -> List[Dict[str, Any]]:
        contents = [
            {
                "role": "user" if msg.role == MessageRole.USER else "model",
                "parts": _parts(msg.content, msg.images),
            }
            for msg in history
        ]
        contents.append({"role": "user", "parts": _parts(prompt, images)})
        return contents

    async def send_message(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
        image_params: Optional[ImageGenerationParams] = None,
    ) -> AsyncIterator[Chunk]:
        url = f"{self.api_url}/models/{self.model_name}:streamGenerateContent"
        payload = {
            "contents": self.format_contents(prompt, history, images),
            "generationConfig": {"maxOutputTokens": MAX_OUTPUT_TOKENS},
        }
        params = {"key": self.api_key, "alt": "sse"}

        async with self._http() as client:
            async with self._open_stream(client, url, payload, params=params) as response:
                async for event in iter_sse_json(response):
                    error = event.get("error")
                    if error:
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        raise ProtocolError(f"Gemini error: {message}")
                    text = self._extract_text(event)
                    if text:
                        yield Append(text)

    @staticmethod
    def _extract_text(event: Dict[str, Any]) -> Optional[str]:
        try:
            text = event["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None

    async def validate_credentials(self) -> bool:
        try:
            async with self._http() as client:
                response = await client.get(
                    f"{self.api_url}/models",
                    params={"key": self.api_key},
                    timeout=self.connect_timeout,
                )
            return response.is_success
        except httpx.HTTPError:
            return False
