"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_portal.api.v1.router import api_router
from clinic_portal.config import settings
from clinic_portal.core.clock import utc_now
from clinic_portal.core.evolution_client import EvolutionClient
from clinic_portal.core.exceptions import AppException
from clinic_portal.core.redis_client import (
    CacheManager,
    check_redis_connection,
    close_redis_connection,
    get_redis_client,
)
from clinic_portal.core.rpc_client import BackendRpcClient
from clinic_portal.database import AsyncSessionLocal, check_database_connection, engine
from clinic_portal.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from clinic_portal.middleware.logging import LoggingMiddleware, configure_logging
from clinic_portal.services.channel_service import WhatsAppChannel
from clinic_portal.services.delivery_ledger import FailedDeliveryLedger, SqlMessageLogRepository
from clinic_portal.services.eligibility_cache import EligibilityCache
from clinic_portal.services.notification_dispatcher import (
    NotificationDispatcher,
    NotificationQueue,
)

# Configure logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the backend and WhatsApp clients, the eligibility cache, the
    ledger and the notification workers, and tears them down on shutdown.
    """
    logger.info("application_startup", environment=settings.environment)
    clock = app.state.clock

    backend = BackendRpcClient(
        settings.backend_url,
        settings.backend_api_key,
        timeout=settings.backend_timeout_seconds,
        max_attempts=settings.backend_retry_attempts,
        backoff_initial=settings.backend_retry_initial_delay,
        default_language=settings.default_language,
    )
    evolution = EvolutionClient(
        settings.evolution_api_url,
        settings.evolution_api_key,
        timeout=settings.evolution_timeout_seconds,
        default_country_code=settings.whatsapp_default_country_code,
        allow_all=settings.whatsapp_allow_all,
        test_numbers=settings.whatsapp_test_numbers,
    )

    redis_client = get_redis_client()
    cache_store = CacheManager(redis_client) if redis_client is not None else None

    channel = WhatsAppChannel(
        evolution,
        clock=clock,
        cache_ttl_seconds=settings.whatsapp_instance_cache_ttl_seconds,
    )
    ledger = FailedDeliveryLedger(
        SqlMessageLogRepository(AsyncSessionLocal),
        channel,
        clock=clock,
        max_retries=settings.ledger_max_retries,
        retry_delay_minutes=settings.ledger_retry_delay_minutes,
    )
    dispatcher = NotificationDispatcher(channel, ledger)
    queue = NotificationQueue(
        dispatcher,
        backend.get_notification_data,
        workers=settings.notification_workers,
        maxsize=settings.notification_queue_size,
    )

    app.state.backend = backend
    app.state.eligibility_cache = EligibilityCache(
        backend,
        store=cache_store,
        clock=clock,
        ttl_seconds=settings.eligibility_cache_ttl_seconds,
    )
    app.state.channel = channel
    app.state.ledger = ledger
    app.state.dispatcher = dispatcher
    app.state.notification_queue = queue

    queue.start()

    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    redis_status = await check_redis_connection()
    if redis_status is None:
        logger.info("redis_not_configured", eligibility_cache="memory")
    elif redis_status:
        logger.info("redis_connected")
    else:
        logger.error("redis_connection_failed")

    yield

    # Shutdown
    logger.info("application_shutdown")

    await queue.stop()
    await backend.aclose()
    await evolution.aclose()

    await engine.dispose()
    logger.info("database_connections_closed")

    close_redis_connection()
    logger.info("redis_connection_closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Appointment lifecycle and WhatsApp notification delivery for the clinic portal",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)
app.state.settings = settings
app.state.clock = utc_now

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)

# Add exception handlers
app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

# Include API router
app.include_router(api_router, prefix=settings.api_v1_prefix)

# Setup Prometheus instrumentation
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/docs", "/redoc", "/openapi.json"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """
    Root endpoint.

    Returns:
        Welcome message
    """
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clinic_portal.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
