"""
fedjoin application entry point.

Initializes the FastAPI application, loads the relation catalog, builds the
shared query cache and wires the join planner behind the transform
endpoint.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fedjoin.api.routes import health_router, transform_router
from fedjoin.cache.store import CacheStore, RedisCacheStore, create_cache_store
from fedjoin.catalog import RelationCatalog, load_catalog
from fedjoin.core.config import Settings, settings
from fedjoin.core.logging import get_logger
from fedjoin.join.planner import JoinPlanner
from fedjoin.join.transforms import SearchRequestTransformer

logger = get_logger(__name__)


def _build_engine(app: FastAPI, cache: CacheStore, catalog: RelationCatalog) -> None:
    app.state.cache = cache
    app.state.catalog = catalog
    app.state.transformer = SearchRequestTransformer(
        JoinPlanner(),
        catalog.relations,
        field_types=catalog.field_types,
        sort_defaults=catalog.sort_defaults,
    )


def create_app(
    config: Settings = settings,
    catalog: Optional[RelationCatalog] = None,
    cache: Optional[CacheStore] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Args:
        config: Application settings
        catalog: Pre-built catalog; loaded from ``config.relations_file`` when omitted
        cache: Pre-built cache store; built from configuration when omitted

    Returns:
        FastAPI: Configured application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting fedjoin")

        store = cache if cache is not None else create_cache_store(config)
        loaded = catalog
        if loaded is None:
            if config.relations_file:
                loaded = load_catalog(config.relations_file, store)
            else:
                logger.warning("No relations file configured, starting with an empty catalog")
                loaded = RelationCatalog({}, {}, {})
        _build_engine(app, store, loaded)
        logger.info("fedjoin started", relations=len(loaded.relations))

        yield

        logger.info("Shutting down fedjoin")
        try:
            await loaded.close()
            if isinstance(store, RedisCacheStore) and cache is None:
                await store.close()
        except Exception as e:
            logger.error(f"Shutdown error: {e}")
        logger.info("fedjoin shut down complete")

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Federated join engine for search requests",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(transform_router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fedjoin.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
    )
