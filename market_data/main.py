from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request

from market_data.api.routes import router
from market_data.config.logging_setup import setup_logging
from market_data.config.settings import Settings, get_settings
from market_data.integrations.alpha_vantage import AlphaVantageClient
from market_data.services.kv_store import InMemoryKeyValueStore, RedisKeyValueStore
from market_data.services.quote_service import QuoteCacheService

logger = logging.getLogger(__name__)

SERVICE_NAME = "market-data-service"


def build_quote_service(settings: Settings) -> QuoteCacheService:
    if settings.REDIS_URL:
        store = RedisKeyValueStore.from_url(
            settings.REDIS_URL,
            socket_timeout_sec=settings.REDIS_SOCKET_TIMEOUT_SEC,
        )
    else:
        logger.warning("[APP][redis_not_configured] using in-process memory store")
        store = InMemoryKeyValueStore()

    provider = None
    if settings.ALPHA_VANTAGE_API_KEY:
        provider = AlphaVantageClient(
            api_key=settings.ALPHA_VANTAGE_API_KEY,
            base_url=settings.ALPHA_VANTAGE_BASE_URL,
            quote_timeout_sec=settings.PROVIDER_QUOTE_TIMEOUT_SEC,
            series_timeout_sec=settings.PROVIDER_SERIES_TIMEOUT_SEC,
        )

    return QuoteCacheService.from_settings(settings, store=store, provider=provider)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    setup_logging(settings.LOG_LEVEL)

    owns_service = app.state.quote_service is None
    if owns_service:
        app.state.quote_service = build_quote_service(settings)
    logger.info(
        "[APP][startup] service=%s api_key_configured=%s simulation_mode=%s fallback_policy=%s",
        SERVICE_NAME,
        bool(settings.ALPHA_VANTAGE_API_KEY),
        settings.simulation_mode,
        settings.FALLBACK_POLICY,
    )

    try:
        yield
    finally:
        if owns_service:
            store = app.state.quote_service.store
            if isinstance(store, RedisKeyValueStore):
                store.close()
            app.state.quote_service = None
        logger.info("[APP][shutdown] service=%s", SERVICE_NAME)


app = FastAPI(title="Market Data Service", version="1.0.0", lifespan=lifespan)
app.include_router(router, prefix="/api/market")

# NOTE: lazy-loaded so app import does not require env during tests.
app.state.get_settings = get_settings
app.state.quote_service = None
app.state.started_at = time.monotonic()


@app.get("/health")
def health(request: Request):
    settings = request.app.state.get_settings()
    service = request.app.state.quote_service
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "apiKeyConfigured": bool(settings.ALPHA_VANTAGE_API_KEY),
        "simulationMode": settings.simulation_mode,
        "cacheAvailable": service.cache_available() if service is not None else False,
    }
