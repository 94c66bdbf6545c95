from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_engine.adapters.base import Append, ChatAdapter, Chunk, iter_sse_json, split_data_url
from chat_engine.schemas.chat_schema import ImageAttachment, ImageGenerationParams, Message

ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 4096


def _content(text: str, images: Optional[List[ImageAttachment]]) -> Any:
    if not images:
        return text
    # Image blocks go before the text block
    parts: List[Dict[str, Any]] = []
    for img in images:
        media_type, data = split_data_url(img.data, img.mime_type)
        parts.append({"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}})
    parts.append({"type": "text", "text": text})
    return parts


class AnthropicAdapter(ChatAdapter):
    provider = "anthropic"

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def format_messages(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
    ) -> List[Dict[str, Any]]:
        messages = [
            {"role": msg.role.value, "content": _content(msg.content, msg.images)}
            for msg in history
        ]
        messages.append({"role": "user", "content": _content(prompt, images)})
        return messages

    async def send_message(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
        image_params: Optional[ImageGenerationParams] = None,
    ) -> AsyncIterator[Chunk]:
        payload = {
            "model": self.model_name,
            "messages": self.format_messages(prompt, history, images),
            "max_tokens": MAX_TOKENS,
            "stream": True,
        }
        async with self._http() as client:
            async with self._open_stream(client, f"{self.api_url}/v1/messages", payload, self._headers()) as response:
                async for event in iter_sse_json(response):
                    if event.get("type") != "content_block_delta":
                        continue
                    delta = event.get("delta") or {}
                    text = delta.get("text") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield Append(text)

    async def validate_credentials(self) -> bool:
        """A one-token completion; 400 still proves the key was accepted."""
        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.api_url}/v1/messages",
                    headers=self._headers(),
                    json={
                        "model": self.model_name,
                        "messages": [{"role": "user", "content": "Hi"}],
                        "max_tokens": 1,
                    },
                    timeout=self.connect_timeout,
                )
            return response.is_success or response.status_code == 400
        except httpx.HTTPError:
            return False
