"""FastAPI application entrypoint."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from decision_memory.routers import decisions, health, memory, research
from decision_memory.settings import settings
from decision_memory.startup import run_startup_validation
from decision_memory.services.notifier import ChangeNotifier, PostgresListener, build_broadcaster
from decision_memory.middleware import RequestLoggingMiddleware, setup_logging

# Configure logging before anything else
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan.

    Validates settings and the database before accepting traffic, then owns
    the change notifier: it is created here, bridged to Postgres NOTIFY
    when that backend is selected, and closed on shutdown so open event
    streams end.
    """
    logger.info(f"Starting application in {settings.ENV} environment")

    try:
        run_startup_validation()
    except Exception as e:
        logger.error(f"Startup validation failed: {e}")
        logger.error("Application will not start")
        raise

    notifier = ChangeNotifier(heartbeat_interval=settings.SSE_HEARTBEAT_SECONDS)
    app.state.notifier = notifier
    app.state.broadcaster = build_broadcaster(notifier)

    listener = None
    if settings.NOTIFY_BACKEND == "postgres":
        listener = PostgresListener(
            notifier,
            settings.DATABASE_URL,
            settings.NOTIFY_CHANNEL,
            reconnect_delay=settings.NOTIFY_RECONNECT_DELAY,
        )
        listener.start()
    logger.info(f"Change notifications via {settings.NOTIFY_BACKEND} backend")

    yield

    logger.info("Shutting down application")
    if listener is not None:
        listener.stop()
    notifier.close()


app = FastAPI(
    title="Decision Memory",
    description="Decision journaling with drafted plans, outcome insights and similarity memory",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(health.router)
app.include_router(decisions.router)
app.include_router(memory.router)
app.include_router(research.router)
