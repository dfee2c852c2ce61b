from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from motor.motor_asyncio import AsyncIOMotorDatabase

from rapidgig_chat.core.config import Settings, get_settings
from rapidgig_chat.core.errors import ChatError
from rapidgig_chat.core.logging_config import get_logger, setup_logging
from rapidgig_chat.database.connection import close_mongo_connection, connect_to_mongo
from rapidgig_chat.realtime.coordinator import DeliveryCoordinator
from rapidgig_chat.realtime.presence import PresenceTracker
from rapidgig_chat.repositories.conversation_repository import ConversationRepository
from rapidgig_chat.repositories.device_repository import DeviceRepository
from rapidgig_chat.repositories.message_repository import MessageRepository
from rapidgig_chat.repositories.notification_repository import NotificationRepository
from rapidgig_chat.routers.chat import router as chat_router
from rapidgig_chat.routers.conversations import router as conversations_router
from rapidgig_chat.routers.devices import router as devices_router
from rapidgig_chat.routers.messages import router as messages_router
from rapidgig_chat.routers.notifications import router as notifications_router
from rapidgig_chat.routers.presence import router as presence_router
from rapidgig_chat.services.chat_service import ChatService
from rapidgig_chat.services.notification_service import NotificationService
from rapidgig_chat.utils.file_storage import LocalFileStorage
from rapidgig_chat.utils.last_seen import LastSeenStore, build_last_seen_store
from rapidgig_chat.utils.notifications import PushSender, build_push

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, database: Optional[AsyncIOMotorDatabase] = None, push: Optional[PushSender] = None, last_seen: Optional[LastSeenStore] = None) -> FastAPI:
    """Build the app. ``database``/``push``/``last_seen`` replace the configured backends (tests)."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database if database is not None else await connect_to_mongo()
        chat_service = ChatService(MessageRepository(db), ConversationRepository(db))
        notification_service = NotificationService(
            NotificationRepository(db),
            DeviceRepository(db),
            push if push is not None else build_push(settings),
        )
        await chat_service.ensure_indexes()
        await notification_service.ensure_indexes()
        presence = PresenceTracker()
        last_seen_store = last_seen if last_seen is not None else build_last_seen_store(settings)

        app.state.db = db
        app.state.last_seen = last_seen_store
        app.state.notification_service = notification_service
        app.state.file_storage = LocalFileStorage.from_settings(settings)
        app.state.coordinator = DeliveryCoordinator(chat_service, presence, notification_service, last_seen_store)
        logger.info("Conversation service started")
        try:
            yield
        finally:
            await app.state.coordinator.shutdown()
            await last_seen_store.close()
            if database is None:
                await close_mongo_connection()
            logger.info("Conversation service stopped")

    app = FastAPI(title="RapidGig Conversations", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "code": "invalid_payload"})

    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(presence_router)
    app.include_router(notifications_router)
    app.include_router(devices_router)
    app.mount(settings.upload_url_prefix, StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    @app.get("/")
    async def root():
        return {"service": "conversations", "live_connections": app.state.coordinator.presence.connection_count}

    return app


app = create_app()
