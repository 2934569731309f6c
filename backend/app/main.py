import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings
from app.core.exceptions import register_exception_handlers
from app.core.realtime import change_feed
from app.database import Base, build_engine, build_session_factory
from app.meetings.providers import RoomProvider, build_room_provider
from app.meetings.quota import QuotaEnforcer
from app.meetings.service import MeetingAdapter

# Import all models so Base.metadata knows about them
import app.tenancy.models  # noqa: F401
import app.auth.models  # noqa: F401
import app.activity.models  # noqa: F401
import app.meetings.models  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = application.state.settings

    # Ensure the data directory exists before DB connection
    if settings.is_sqlite:
        db_path = settings.database_url.split("///")[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = build_engine(settings.database_url, settings.sqlite_busy_timeout)

    # Auto-create tables for SQLite in development
    if settings.is_sqlite:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    application.state.engine = engine
    application.state.session_factory = build_session_factory(engine)

    provider = application.state.room_provider or build_room_provider(settings)
    application.state.meeting_adapter = MeetingAdapter(
        settings=settings,
        provider=provider,
        quota=QuotaEnforcer(settings),
        feed=change_feed,
    )
    logger.info("Meeting adapter ready with %s provider", provider.name)

    # Start background scheduler
    from app.core.scheduler import setup_scheduler, shutdown_scheduler

    if settings.scheduler_enabled:
        setup_scheduler(application.state.session_factory, application.state.meeting_adapter, settings)

    yield

    shutdown_scheduler()
    await engine.dispose()


def create_app(settings: Settings | None = None, room_provider: RoomProvider | None = None) -> FastAPI:
    settings = settings or Settings()
    logging.getLogger("app").setLevel(settings.log_level.upper())

    fastapi_app = FastAPI(
        title="BizHub Meetings",
        description="Governed video meetings with single-use links",
        version="0.1.0",
        lifespan=lifespan,
    )
    fastapi_app.state.settings = settings
    fastapi_app.state.room_provider = room_provider

    # CORS
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    from app.meetings.router import router as meetings_router

    fastapi_app.include_router(meetings_router, prefix="/api/meetings", tags=["meetings"])

    # System endpoints
    @fastapi_app.get("/api/system/health")
    async def health():
        return {"data": {"status": "healthy"}}

    # Register exception handlers
    register_exception_handlers(fastapi_app)

    return fastapi_app


app = create_app()
