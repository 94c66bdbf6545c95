"""
Model configuration registry.

Owns the default-config rule: whenever at least one config exists,
exactly one of them is the default.
"""
import asyncio
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import AnyUrl, TypeAdapter, ValidationError

from chat_engine.adapters.base import ChatAdapter
from chat_engine.adapters.factory import create_adapter
from chat_engine.core.exceptions import ConfigNotFoundError, ConfigValidationError, DuplicateConfigNameError
from chat_engine.schemas.config_schema import ConfigCreate, ConfigUpdate, ModelConfig, ProviderKind
from chat_engine.storage.storage_manager import StorageManager
from chat_engine.utils.dates import utc_now
from chat_engine.utils.logger import get_logger
from chat_engine.utils.serialization import generate_config_id

logger = get_logger("chat_engine.config_manager")

MAX_NAME_LENGTH = 100
_URL_REQUIRED = {ProviderKind.OPENAI_COMPATIBLE.value, ProviderKind.IMAGE_GENERATION.value}
_PROVIDERS = {kind.value for kind in ProviderKind}
_url_adapter = TypeAdapter(AnyUrl)


def _is_valid_url(value: str) -> bool:
    try:
        _url_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


class ConfigurationManager:
    def __init__(
        self,
        store: StorageManager,
        adapter_factory: Optional[Callable[[ModelConfig], ChatAdapter]] = None,
    ):
        self.store = store
        self.adapter_factory = adapter_factory or create_adapter
        # Serializes mutations so the default flag is never observed twice
        self._lock = asyncio.Lock()

    @staticmethod
    def validate_config_input(data: Union[ConfigCreate, ConfigUpdate]) -> List[Dict[str, str]]:
        """Return every violated field as {"field", "message"}; empty when valid."""
        errors: List[Dict[str, str]] = []
        name = (data.name or "").strip()
        if not name:
            errors.append({"field": "name", "message": "Config name is required"})
        elif len(name) > MAX_NAME_LENGTH:
            errors.append({"field": "name", "message": f"Config name must be at most {MAX_NAME_LENGTH} characters"})

        provider = data.provider.value if isinstance(data.provider, ProviderKind) else (data.provider or "")
        if provider not in _PROVIDERS:
            errors.append({"field": "provider", "message": "Provider must be one of: " + ", ".join(sorted(_PROVIDERS))})

        if not (data.model_name or "").strip():
            errors.append({"field": "model_name", "message": "Model name is required"})
        if not (data.api_key or "").strip():
            errors.append({"field": "api_key", "message": "API key is required"})

        api_url = (data.api_url or "").strip()
        if api_url and not _is_valid_url(api_url):
            errors.append({"field": "api_url", "message": "API URL is not a valid URL"})
        elif not api_url and provider in _URL_REQUIRED:
            errors.append({"field": "api_url", "message": f"API URL is required for {provider} providers"})
        return errors

    async def get_config(self, config_id: str) -> Optional[ModelConfig]:
        return await self.store.get_config(config_id)

    async def get_all_configs(self) -> List[ModelConfig]:
        return await self.store.load_configs()

    async def get_default_config(self) -> Optional[ModelConfig]:
        return await self.store.get_default_config()

    async def _require(self, config_id: str) -> ModelConfig:
        config = await self.store.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return config

    async def create_config(self, data: ConfigCreate) -> ModelConfig:
        errors = self.validate_config_input(data)
        if errors:
            raise ConfigValidationError(errors)

        async with self._lock:
            existing = await self.store.load_configs()
            name = data.name.strip()
            if any(c.name == name for c in existing):
                raise DuplicateConfigNameError(name)

            config = ModelConfig(
                id=generate_config_id(),
                name=name,
                provider=ProviderKind(data.provider),
                api_url=(data.api_url or "").strip(),
                model_name=data.model_name.strip(),
                api_key=data.api_key.strip(),
                is_default=False,
                created_at=utc_now(),
            )
            await self.store.save_config(config)
            if not existing or data.is_default:
                await self.store.set_default_config(config.id)
                config = config.model_copy(update={"is_default": True})

        logger.info("Config created", extra={"config_id": config.id, "provider": config.provider.value})
        return config

    async def update_config(self, config_id: str, updates: ConfigUpdate) -> ModelConfig:
        async with self._lock:
            current = await self._require(config_id)
            changes = updates.model_dump(exclude_unset=True, exclude_none=True)

            merged = ConfigCreate(
                name=changes.get("name", current.name),
                provider=changes.get("provider", current.provider.value),
                api_url=changes.get("api_url", current.api_url),
                model_name=changes.get("model_name", current.model_name),
                api_key=changes.get("api_key", current.api_key),
            )
            errors = self.validate_config_input(merged)
            if errors:
                raise ConfigValidationError(errors)

            name = merged.name.strip()
            if name != current.name:
                others = await self.store.load_configs()
                if any(c.name == name and c.id != config_id for c in others):
                    raise DuplicateConfigNameError(name)

            updated = current.model_copy(update={
                "name": name,
                "provider": ProviderKind(merged.provider),
                "api_url": (merged.api_url or "").strip(),
                "model_name": merged.model_name.strip(),
                "api_key": merged.api_key.strip(),
            })
            await self.store.save_config(updated)

            wants_default = changes.get("is_default")
            if wants_default is True and not current.is_default:
                await self.store.set_default_config(config_id)
            elif wants_default is False and current.is_default:
                # The default cannot simply be cleared; hand it to another config
                others = [c for c in await self.store.load_configs() if c.id != config_id]
                if others:
                    await self.store.set_default_config(others[0].id)

        logger.info("Config updated", extra={"config_id": config_id, "fields": sorted(changes)})
        return await self._require(config_id)

    async def delete_config(self, config_id: str) -> None:
        async with self._lock:
            current = await self.store.get_config(config_id)
            if current is None:
                return
            await self.store.delete_config(config_id)
            if current.is_default:
                remaining = await self.store.load_configs()
                if remaining:
                    await self.store.set_default_config(remaining[0].id)
        logger.info("Config deleted", extra={"config_id": config_id})

    async def set_default_config(self, config_id: str) -> None:
        async with self._lock:
            await self.store.set_default_config(config_id)

    async def reorder_configs(self, config_ids: List[str]) -> None:
        async with self._lock:
            await self.store.save_configs_order(config_ids)

    async def test_config(self, config: ModelConfig) -> Tuple[bool, str]:
        """Check the credentials of a (possibly unsaved) config against its provider."""
        adapter = self.adapter_factory(config)
        ok = await adapter.validate_credentials()
        logger.info("Config tested", extra={"config_id": config.id, "success": ok})
        if ok:
            return True, "Connection successful"
        return False, "Connection failed, check the API key, URL and model name"
