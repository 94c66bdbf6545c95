from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_engine.adapters.base import Append, ChatAdapter, Chunk, iter_sse_json
from chat_engine.schemas.chat_schema import ImageAttachment, ImageGenerationParams, Message


def _content(text: str, images: Optional[List[ImageAttachment]]) -> Any:
    if not images:
        return text
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for img in images:
        parts.append({"type": "image_url", "image_url": {"url": img.data, "detail": "auto"}})
    return parts


class OpenAIAdapter(ChatAdapter):
    """OpenAI chat completions, also used for OpenAI-compatible endpoints."""

    provider = "openai"

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
            "stream": True,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with self._http() as client:
            async with self._open_stream(client, f"{self.api_url}/chat/completions", payload, headers) as response:
                async for event in iter_sse_json(response):
                    choices = event.get("choices") or []
                    if not choices or not isinstance(choices[0], dict):
                        continue
                    delta = choices[0].get("delta") or {}
                    text = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield Append(text)

    async def validate_credentials(self) -> bool:
        try:
            async with self._http() as client:
                response = await client.get(
                    f"{self.api_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=self.connect_timeout,
                )
            return response.is_success
        except httpx.HTTPError:
            return False
