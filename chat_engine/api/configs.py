from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Response, status

from chat_engine.adapters.factory import get_default_api_url, get_suggested_models, is_task_polling_provider
from chat_engine.api.deps import get_config_manager
from chat_engine.core.exceptions import ConfigNotFoundError, ConfigValidationError
from chat_engine.schemas.config_schema import (
    ConfigCreate,
    ConfigReorder,
    ConfigTestResult,
    ConfigUpdate,
    ModelConfig,
    ProviderKind,
)
from chat_engine.services.config_manager import ConfigurationManager
from chat_engine.utils.logger import get_logger
from chat_engine.utils.serialization import generate_config_id

logger = get_logger("chat_engine.api.configs")

router = APIRouter(prefix="/configs", tags=["configs"])


# ------ Provider catalogue -----
@router.get("/providers")
async def list_providers() -> List[Dict[str, Any]]:
    return [
        {
            "provider": kind.value,
            "default_api_url": get_default_api_url(kind),
            "suggested_models": get_suggested_models(kind),
            "task_polling": is_task_polling_provider(kind),
        }
        for kind in ProviderKind
    ]


# ------ CRUD -----
@router.get("", response_model=List[ModelConfig])
async def list_configs(manager: ConfigurationManager = Depends(get_config_manager)):
    return await manager.get_all_configs()


@router.post("", response_model=ModelConfig, status_code=status.HTTP_201_CREATED)
async def create_config(body: ConfigCreate, manager: ConfigurationManager = Depends(get_config_manager)):
    return await manager.create_config(body)


@router.get("/default", response_model=ModelConfig)
async def get_default_config(manager: ConfigurationManager = Depends(get_config_manager)):
    config = await manager.get_default_config()
    if config is None:
        raise ConfigNotFoundError()
    return config


@router.post("/reorder", status_code=status.HTTP_204_NO_CONTENT)
async def reorder_configs(body: ConfigReorder, manager: ConfigurationManager = Depends(get_config_manager)):
    await manager.reorder_configs(body.ids)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/test", response_model=ConfigTestResult)
async def test_unsaved_config(body: ConfigCreate, manager: ConfigurationManager = Depends(get_config_manager)):
    errors = manager.validate_config_input(body)
    if errors:
        raise ConfigValidationError(errors)
    config = ModelConfig(
        id=generate_config_id(),
        name=body.name.strip(),
        provider=ProviderKind(body.provider),
        api_url=(body.api_url or "").strip(),
        model_name=body.model_name.strip(),
        api_key=body.api_key.strip(),
    )
    success, message = await manager.test_config(config)
    return ConfigTestResult(success=success, message=message)


@router.get("/{config_id}", response_model=ModelConfig)
async def get_config(config_id: str, manager: ConfigurationManager = Depends(get_config_manager)):
    config = await manager.get_config(config_id)
    if config is None:
        raise ConfigNotFoundError(config_id)
    return config


@router.patch("/{config_id}", response_model=ModelConfig)
async def update_config(
    config_id: str,
    body: ConfigUpdate,
    manager: ConfigurationManager = Depends(get_config_manager),
):
    return await manager.update_config(config_id, body)


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_config(config_id: str, manager: ConfigurationManager = Depends(get_config_manager)):
    await manager.delete_config(config_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{config_id}/default", status_code=status.HTTP_204_NO_CONTENT)
async def set_default_config(config_id: str, manager: ConfigurationManager = Depends(get_config_manager)):
    await manager.set_default_config(config_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{config_id}/test", response_model=ConfigTestResult)
async def test_config(config_id: str, manager: ConfigurationManager = Depends(get_config_manager)):
    config = await manager.get_config(config_id)
    if config is None:
        raise ConfigNotFoundError(config_id)
    success, message = await manager.test_config(config)
    return ConfigTestResult(success=success, message=message)
