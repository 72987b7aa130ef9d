from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.subscriptions import router as subscriptions_router
from app.modules.billing.domain.gateway import get_gateway_client
from app.modules.billing.domain.scheduler import BillingScheduler
from app.shared.core.cache import get_cache_service
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, MedoraException
from app.shared.core.health import HealthService
from app.shared.core.locks import get_lock_store
from app.shared.core.logging import setup_logging
from app.shared.core.rate_limit import setup_rate_limiting
from app.shared.core.tracing import setup_tracing
from app.shared.db.session import get_db

# Configure logging
setup_logging()

logger = structlog.get_logger()


# Runs before the app starts and after it stops
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

    scheduler = BillingScheduler()
    if not settings.TESTING:
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    logger.info("app_stopping", app=settings.APP_NAME)
    scheduler.stop()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

setup_tracing(app)
setup_rate_limiting(app)

# Prometheus metrics at /metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(MedoraException)
async def medora_exception_handler(request: Request, exc: MedoraException):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


app.include_router(subscriptions_router)


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Dependency health: database, lock store, subscription cache and payment gateway."""
    try:
        gateway = get_gateway_client()
    except ConfigurationError:
        gateway = None
    health = await HealthService(
        db, lock_store=get_lock_store(), gateway=gateway, cache=get_cache_service()
    ).check_all()
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        **health,
        "scheduler": scheduler.get_status() if scheduler else None,
    }
