"""
Storefront Fulfillment API

Books Shiprocket shipments for paid orders and records carrier status updates.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fulfillment_backend import __version__
from fulfillment_backend.api import api_router
from fulfillment_backend.api.deps import close_fulfillment_clients
from fulfillment_backend.core.config import get_shipping_config, settings
from fulfillment_backend.core.database import dispose_engine
from fulfillment_backend.core.error_handler import register_error_handlers
from fulfillment_backend.core.redis_client import close_redis

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    config = get_shipping_config()
    if not config.enabled:
        logger.warning("Shiprocket disabled: paid orders will need manual fulfillment")
    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")
    yield
    logger.info(f"{settings.APP_NAME} shutting down")
    await close_fulfillment_clients()
    await close_redis()
    await dispose_engine()


app = FastAPI(
    title=settings.APP_NAME,
    description="Shipment fulfillment for paid storefront orders",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

register_error_handlers(app)

app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.API_VERSION,
        "shiprocket_enabled": get_shipping_config().enabled,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fulfillment_backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
