import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chat_engine.adapters.base import ChatAdapter
from chat_engine.adapters.factory import create_adapter
from chat_engine.api import configs, sessions
from chat_engine.api.errors import register_exception_handlers
from chat_engine.api.events import EventBroker
from chat_engine.core.config import Settings, settings as default_settings
from chat_engine.core.database import build_engine, build_sessionmaker, init_models
from chat_engine.schemas.config_schema import ModelConfig
from chat_engine.services.chat_manager import ChatManager
from chat_engine.services.config_manager import ConfigurationManager
from chat_engine.storage.storage_manager import StorageManager
from chat_engine.utils.logger import clear_request_id, get_logger, init_logging, set_request_id

logger = get_logger("chat_engine.main")


def create_app(
    settings: Optional[Settings] = None,
    adapter_factory: Optional[Callable[[ModelConfig], ChatAdapter]] = None,
) -> FastAPI:
    settings = settings or default_settings
    factory = adapter_factory or (lambda config: create_adapter(config, settings=settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.DATABASE_URL)
        await init_models(engine)
        logger.info("Database tables created")

        storage = StorageManager(build_sessionmaker(engine))
        config_manager = ConfigurationManager(storage, factory)
        broker = EventBroker()
        chat_manager = ChatManager(storage, config_manager, factory, settings, broker.as_callbacks())

        app.state.storage = storage
        app.state.config_manager = config_manager
        app.state.chat_manager = chat_manager
        app.state.event_broker = broker
        logger.info("Chat engine started")
        try:
            yield
        finally:
            logger.info("Chat engine shutting down")
            await chat_manager.shutdown()
            await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware for request tracing
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        set_request_id(request_id)
        logger.info("Request started", extra={"method": request.method, "path": request.url.path})
        try:
            response = await call_next(request)
            logger.info("Request completed", extra={"status_code": response.status_code})
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error("Request failed", extra={"error": str(e)})
            raise
        finally:
            clear_request_id()

    register_exception_handlers(app)
    app.include_router(configs.router)
    app.include_router(sessions.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/stats")
    async def stats(request: Request):
        return await request.app.state.storage.get_stats()

    return app


init_logging()
app = create_app()
