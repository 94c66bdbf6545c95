from typing import List, Optional

import httpx

from chat_engine.adapters.anthropic_adapter import AnthropicAdapter
from chat_engine.adapters.base import ChatAdapter
from chat_engine.adapters.google_adapter import GoogleAdapter
from chat_engine.adapters.image_generation_adapter import ImageGenerationAdapter
from chat_engine.adapters.openai_adapter import OpenAIAdapter
from chat_engine.core.config import Settings, settings as default_settings
from chat_engine.schemas.config_schema import ModelConfig, ProviderKind

_DEFAULT_URLS = {
    ProviderKind.OPENAI: "https://api.openai.com/v1",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com",
    ProviderKind.GOOGLE: "https://generativelanguage.googleapis.com/v1beta",
    ProviderKind.OPENAI_COMPATIBLE: "",
    ProviderKind.IMAGE_GENERATION: "https://api-inference.modelscope.cn",
}

_SUGGESTED_MODELS = {
    ProviderKind.OPENAI: ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"],
    ProviderKind.ANTHROPIC: [
        "claude-sonnet-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-opus-20240229",
        "claude-3-haiku-20240307",
    ],
    ProviderKind.GOOGLE: ["gemini-2.0-flash", "gemini-1.5-pro", "gemini-1.5-flash"],
    ProviderKind.OPENAI_COMPATIBLE: [],
    ProviderKind.IMAGE_GENERATION: ["Qwen/Qwen-Image", "MusePublic/489_ckpt_FLUX_1"],
}


def get_default_api_url(kind: ProviderKind) -> str:
    return _DEFAULT_URLS.get(ProviderKind(kind), "")


def get_suggested_models(kind: ProviderKind) -> List[str]:
    return list(_SUGGESTED_MODELS.get(ProviderKind(kind), []))


def is_task_polling_provider(kind: ProviderKind) -> bool:
    return ProviderKind(kind).is_task_polling


def create_adapter(
    config: ModelConfig,
    client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
) -> ChatAdapter:
    """Build the adapter for a config; an empty api_url falls back to the provider default."""
    settings = settings or default_settings
    kind = ProviderKind(config.provider)
    api_url = config.api_url or get_default_api_url(kind)
    common = dict(client=client, connect_timeout=settings.CONNECT_TIMEOUT_SECONDS)

    if kind in (ProviderKind.OPENAI, ProviderKind.OPENAI_COMPATIBLE):
        return OpenAIAdapter(config.api_key, api_url, config.model_name, **common)
    if kind is ProviderKind.ANTHROPIC:
        return AnthropicAdapter(config.api_key, api_url, config.model_name, **common)
    if kind is ProviderKind.GOOGLE:
        return GoogleAdapter(config.api_key, api_url, config.model_name, **common)
    if kind is ProviderKind.IMAGE_GENERATION:
        return ImageGenerationAdapter(
            config.api_key,
            api_url,
            config.model_name,
            poll_interval=settings.IMAGE_POLL_INTERVAL_SECONDS,
            max_poll_attempts=settings.IMAGE_MAX_POLL_ATTEMPTS,
            **common,
        )
    raise ValueError(f"Unknown provider: {config.provider}")
