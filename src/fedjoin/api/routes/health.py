"""
Health check API endpoints.

Endpoints:
- GET /: Root endpoint with basic service info
- GET /health: Relation catalog and cache status
"""

from fastapi import APIRouter, Request

from fedjoin.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """
    Root endpoint providing basic service information.

    Returns:
        dict: Application name, version and status
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "operational"
    }


@router.get("/health")
async def health_check(request: Request):
    """
    Health of the join engine components.

    Reports the loaded relations and the query cache statistics. Backends
    are not pinged here; their failures surface per request.
    """
    catalog = getattr(request.app.state, "catalog", None)
    cache = getattr(request.app.state, "cache", None)

    relation_count = len(catalog.list_relations()) if catalog is not None else 0
    return {
        "status": "healthy",
        "components": {
            "api": "healthy",
            "catalog": {
                "status": "healthy" if relation_count > 0 else "no_relations",
                "relations": relation_count,
            },
            "cache": cache.stats() if cache is not None else {"status": "unavailable"},
        },
        "version": settings.app_version,
        "environment": settings.environment
    }
