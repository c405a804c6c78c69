"""
PizzaBoard - analytics cache service
Builds the cache, the API client and the preload orchestrator once per
application and exposes them over HTTP.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request

from pizzaboard.api_client import KpiClient, ResourceError
from pizzaboard.cache import (
    CacheConfig,
    PersistentStore,
    SqliteStore,
    StorageError,
    TieredCache,
)
from pizzaboard.preload import PreloadError, PreloadOrchestrator, PreloadState
from pizzaboard.schemas import CacheConfigOut, CacheConfigUpdate, PreloadSummary
from config.settings import Settings, settings as default_settings

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "PizzaBoard"

logger = logging.getLogger("main")

ACTIVE_PRELOAD_STATES = (
    PreloadState.FETCHING_PREREQUISITE,
    PreloadState.RUNNING_BATCHES,
    PreloadState.VERIFYING_COMPLETENESS,
)


@dataclass
class Services:
    """Everything the routes need, owned by one application instance."""
    settings: Settings
    store: PersistentStore
    cache: TieredCache
    client: KpiClient
    orchestrator: PreloadOrchestrator


def build_services(
    app_settings: Settings,
    store: Optional[PersistentStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """Composition root: wire store -> cache -> client -> orchestrator."""
    if store is None:
        store = SqliteStore(app_settings.cache_db_path)

    cache = TieredCache(
        config=CacheConfig(
            default_ttl_seconds=app_settings.cache_default_ttl_seconds,
            max_memory_items=app_settings.cache_max_memory_items,
            persist_to_storage=app_settings.cache_persist_to_storage,
            storage_prefix=app_settings.cache_storage_prefix,
        ),
        store=store,
    )
    client = KpiClient(
        cache,
        base_url=app_settings.api_base_url,
        token=app_settings.api_token,
        timeout=app_settings.api_timeout_seconds,
        transport=transport,
    )
    orchestrator = PreloadOrchestrator(
        client,
        cache,
        store=store,
        batch_delay=app_settings.preload_batch_delay_seconds,
        verify_attempts=app_settings.preload_verify_attempts,
        verify_delay=app_settings.preload_verify_delay_seconds,
        fetch_timeout=app_settings.preload_fetch_timeout_seconds,
        fallback_from_date=app_settings.preload_fallback_from_date,
        earliest_date_key=app_settings.earliest_date_storage_key,
    )
    return Services(
        settings=app_settings,
        store=store,
        cache=cache,
        client=client,
        orchestrator=orchestrator,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


@router.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


# =============================================================================
# CACHE API
# =============================================================================

@router.get("/cache/stats")
def cache_stats(services: Services = Depends(get_services)):
    """Get cache statistics."""
    return services.cache.get_stats()


@router.post("/cache/clear")
def cache_clear(services: Services = Depends(get_services)):
    """Drop every cached entry in the namespace and reset the counters."""
    cleared = services.cache.clear()
    return {"cleared": cleared, "stats": services.cache.get_stats()}


@router.post("/cache/clear-expired")
def cache_clear_expired(services: Services = Depends(get_services)):
    removed = services.cache.clear_expired()
    return {"removed": removed, "stats": services.cache.get_stats()}


@router.patch("/cache/config", response_model=CacheConfigOut)
def cache_update_config(
    update: CacheConfigUpdate,
    services: Services = Depends(get_services),
):
    """Change any subset of the cache configuration at runtime."""
    changes = update.model_dump(exclude_none=True)
    try:
        config = services.cache.update_config(**changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return CacheConfigOut(**vars(config))


# =============================================================================
# PRELOAD API
# =============================================================================

@router.post("/preload", response_model=PreloadSummary)
async def preload(services: Services = Depends(get_services)):
    """Warm the cache with everything the dashboard shows on first load."""
    orchestrator = services.orchestrator
    if orchestrator.state in ACTIVE_PRELOAD_STATES:
        raise HTTPException(status_code=409, detail="Preload already running")
    try:
        result = await orchestrator.run()
    except PreloadError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return PreloadSummary(
        from_date=result.from_date,
        to_date=result.to_date,
        all_cached=result.all_cached,
        failures=result.failures,
        loaded=result.summary(),
    )


@router.get("/preload/status")
def preload_status(services: Services = Depends(get_services)):
    """Progress of the last preload and whether the essentials are cached."""
    return services.orchestrator.get_status()


# =============================================================================
# RESOURCES (read through the cache)
# =============================================================================

def _default_from_date(services: Services) -> str:
    try:
        stored = services.store.get(services.settings.earliest_date_storage_key)
    except StorageError as e:
        logger.warning(f"Failed to read earliest order date: {e}")
        stored = None
    return stored or services.settings.preload_fallback_from_date


@router.get("/api/dashboard")
async def api_dashboard(services: Services = Depends(get_services)):
    try:
        return await services.client.get_dashboard()
    except ResourceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/api/stores")
async def api_stores(services: Services = Depends(get_services)):
    try:
        return await services.client.get_all_stores()
    except ResourceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/api/products")
async def api_products(services: Services = Depends(get_services)):
    try:
        return await services.client.get_all_products()
    except ResourceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/api/sales/kpis")
async def api_sales_kpis(
    from_date: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD, defaults to the earliest order"),
    to_date: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD, defaults to today"),
    services: Services = Depends(get_services),
):
    from_date = from_date or _default_from_date(services)
    to_date = to_date or date.today().isoformat()
    try:
        return await services.client.get_sales_kpis(from_date, to_date)
    except ResourceError as e:
        raise HTTPException(status_code=502, detail=str(e))


def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[PersistentStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings: Settings override; defaults to the environment
        store: Durable store override; defaults to SQLite at cache_db_path
        transport: httpx transport override for the analytics API
    """
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(app_settings, store=store, transport=transport)
        app.state.services = services
        services.cache.start_cleanup(app_settings.cache_cleanup_interval_seconds)
        logger.info(f"{APP_NAME} {APP_VERSION} started")
        try:
            yield
        finally:
            await services.cache.stop_cleanup()
            await services.client.aclose()

    app = FastAPI(
        title=APP_NAME,
        description="Cached retail analytics with bulk preload",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
