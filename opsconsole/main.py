# opsconsole/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from opsconsole.api.v1 import api_v1_router
from opsconsole.core.config import settings
from opsconsole.core.database import mongo_manager
from opsconsole.core.logging_config import add_trace_id_middleware, setup_logging
from opsconsole.core.rate_limit import limiter
from opsconsole.modules.chat.repository import ChatConversationRepository, ChatMessageRepository
from opsconsole.modules.memory.repository import AgentMemoryRepository
from opsconsole.modules.orders.repository import OrderRepository
from opsconsole.modules.reports.repository import ReportTaskRepository
from opsconsole.modules.tasks.repository import TaskRepository, TaskLogRepository, TaskRunRepository
from opsconsole.modules.users.repository import UserRepository
from opsconsole.modules.whatsapp.repository import WhatsAppMessageRepository

INDEXED_REPOSITORIES = (
    UserRepository,
    OrderRepository,
    TaskRepository,
    TaskRunRepository,
    TaskLogRepository,
    ReportTaskRepository,
    ChatConversationRepository,
    ChatMessageRepository,
    AgentMemoryRepository,
    WhatsAppMessageRepository,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await mongo_manager.connect()
    db = mongo_manager.get_db()
    for repository_cls in INDEXED_REPOSITORIES:
        await repository_cls(db).create_indexes()
    logger.success(f"{settings.PROJECT_NAME} started.")
    yield
    await mongo_manager.disconnect()


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id", "X-Trace-ID"],
    )
    app.middleware("http")(add_trace_id_middleware)

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)
    return app


app = create_app()
