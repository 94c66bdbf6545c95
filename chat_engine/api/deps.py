from fastapi import Request

from chat_engine.api.events import EventBroker
from chat_engine.services.chat_manager import ChatManager
from chat_engine.services.config_manager import ConfigurationManager
from chat_engine.storage.storage_manager import StorageManager


def get_storage(request: Request) -> StorageManager:
    return request.app.state.storage


def get_config_manager(request: Request) -> ConfigurationManager:
    return request.app.state.config_manager


def get_chat_manager(request: Request) -> ChatManager:
    return request.app.state.chat_manager


def get_event_broker(request: Request) -> EventBroker:
    return request.app.state.event_broker
