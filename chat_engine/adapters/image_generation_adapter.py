"""
Task-polling text-to-image adapter.

Submits a generation task to {base}/v1/images/generations in async mode,
then polls {base}/v1/tasks/{id} until the task succeeds or fails. Works
with ModelScope-style APIs and with APIs that answer synchronously.

Response shapes differ between vendors, so every field the adapter reads
is looked up through a FieldAliases table in precedence order. Pass a
custom table to support another vendor without touching the adapter.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx

from chat_engine.adapters.base import Append, ChatAdapter, Chunk, Replace
from chat_engine.core.exceptions import ProtocolError, ProviderTimeoutError
from chat_engine.schemas.chat_schema import ImageAttachment, ImageGenerationParams, Message
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.adapters.image_generation")

PROGRESS_TEXT = "Generating image, please wait...\n"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 60


@dataclass(frozen=True)
class FieldAliases:
    task_id: Tuple[str, ...] = ("task_id", "taskId", "id")
    status: Tuple[str, ...] = ("task_status", "status", "state")
    error: Tuple[str, ...] = ("error_message", "error", "message")
    image_lists: Tuple[str, ...] = ("output_images", "images")
    data_list: str = "data"
    success_statuses: FrozenSet[str] = frozenset({"SUCCEED", "SUCCESS", "COMPLETED"})
    failure_statuses: FrozenSet[str] = frozenset({"FAILED", "ERROR"})

    @staticmethod
    def first(data: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
        for key in keys:
            value = data.get(key)
            if value not in (None, ""):
                return value
        return None

    def task_id_of(self, data: Dict[str, Any]) -> Optional[str]:
        value = self.first(data, self.task_id)
        return str(value) if value is not None else None

    def status_of(self, data: Dict[str, Any]) -> Optional[str]:
        value = self.first(data, self.status)
        return str(value).upper() if value is not None else None

    def error_of(self, data: Dict[str, Any]) -> str:
        value = self.first(data, self.error)
        if isinstance(value, dict):
            value = value.get("message") or value
        return str(value) if value is not None else "unknown error"

    def image_of(self, data: Dict[str, Any]) -> Optional[str]:
        for key in self.image_lists:
            images = data.get(key)
            if isinstance(images, list) and images and isinstance(images[0], str):
                return images[0]
        items = data.get(self.data_list)
        if isinstance(items, list) and items and isinstance(items[0], dict):
            first = items[0]
            if first.get("url"):
                return first["url"]
            if first.get("b64_json"):
                return f"data:image/png;base64,{first['b64_json']}"
        return None


DEFAULT_FIELD_ALIASES = FieldAliases()


def build_request_body(model: str, prompt: str, params: Optional[ImageGenerationParams]) -> Dict[str, Any]:
    """Only explicitly set parameters are sent, each with its common aliases."""
    body: Dict[str, Any] = {"model": model, "prompt": prompt}
    if params is None:
        return body

    if params.size:
        body["size"] = params.size
        width, _, height = params.size.lower().partition("x")
        if width.isdigit() and height.isdigit():
            body["width"] = int(width)
            body["height"] = int(height)
    if params.n and params.n > 0:
        body["n"] = params.n
        body["num_images"] = params.n
    if params.negative_prompt and params.negative_prompt.strip():
        body["negative_prompt"] = params.negative_prompt.strip()
    if params.guidance_scale is not None and params.guidance_scale > 0:
        body["guidance_scale"] = params.guidance_scale
        body["cfg_scale"] = params.guidance_scale
    if params.steps is not None and params.steps > 0:
        body["steps"] = params.steps
        body["num_inference_steps"] = params.steps
    # 0 is a valid seed
    if params.seed is not None:
        body["seed"] = params.seed
    if params.style and params.style.strip():
        body["style"] = params.style.strip()
        body["style_preset"] = params.style.strip()
    return body


class ImageGenerationAdapter(ChatAdapter):
    provider = "image-generation"

    def __init__(
        self,
        api_key: str,
        api_url: str,
        model_name: str,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 15.0,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        aliases: FieldAliases = DEFAULT_FIELD_ALIASES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(api_key, api_url, model_name, client=client, connect_timeout=connect_timeout)
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.aliases = aliases
        self._sleep = sleep

    def _submit_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "X-ModelScope-Async-Mode": "true"}

    def _poll_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "X-ModelScope-Task-Type": "image_generation"}

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Image generation returned invalid JSON: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Image generation returned an unexpected payload")
        return data

    async def generate_image(self, prompt: str, params: Optional[ImageGenerationParams] = None) -> str:
        """Submit a task and wait for it; returns the image URL (or data URL)."""
        body = build_request_body(self.model_name, prompt, params)
        timeout = httpx.Timeout(None, connect=self.connect_timeout)

        async with self._http() as client:
            response = await client.post(
                f"{self.api_url}/v1/images/generations",
                json=body,
                headers=self._submit_headers(),
                timeout=timeout,
            )
            await self._raise_for_status(response)
            submitted = self._json(response)

            task_id = self.aliases.task_id_of(submitted)
            if task_id is None:
                # Synchronous API: the image is already in the submit response
                image = self.aliases.image_of(submitted)
                if image:
                    return image
                raise ProtocolError("Image generation response has neither a task id nor an image")

            logger.info("Image generation task submitted", extra={"task_id": task_id})

            for attempt in range(1, self.max_poll_attempts + 1):
                await self._sleep(self.poll_interval)
                response = await client.get(
                    f"{self.api_url}/v1/tasks/{task_id}",
                    headers=self._poll_headers(),
                    timeout=timeout,
                )
                await self._raise_for_status(response)
                data = self._json(response)
                status = self.aliases.status_of(data)
                logger.debug("Polled image task", extra={"task_id": task_id, "attempt": attempt, "status": status})

                if status in self.aliases.success_statuses:
                    image = self.aliases.image_of(data)
                    if image:
                        return image
                    raise ProtocolError("Image generation succeeded but returned no image")
                if status in self.aliases.failure_statuses:
                    raise ProtocolError(f"Image generation failed: {self.aliases.error_of(data)}")

        total = self.poll_interval * self.max_poll_attempts
        raise ProviderTimeoutError(f"Image generation timed out after {total:g}s")

    async def send_message(
        self,
        prompt: str,
        history: List[Message],
        images: Optional[List[ImageAttachment]] = None,
        image_params: Optional[ImageGenerationParams] = None,
    ) -> AsyncIterator[Chunk]:
        yield Append(PROGRESS_TEXT)
        image = await self.generate_image(prompt, image_params)
        yield Replace(f"![Generated image]({image})")

    async def validate_credentials(self) -> bool:
        """Submit probe; only 401/403 or an unreachable host count as invalid."""
        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.api_url}/v1/images/generations",
                    json={"model": self.model_name, "prompt": "test"},
                    headers=self._submit_headers(),
                    timeout=self.connect_timeout,
                )
        except httpx.HTTPError:
            return False
        return response.status_code not in (401, 403)
