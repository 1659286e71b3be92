"""
Search request transformation endpoints.

The forwarding proxy in front of the search cluster posts inbound search
bodies here and forwards the rewritten body itself.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from fedjoin.core.config import settings
from fedjoin.core.errors import BackendError, ConfigurationError, FedJoinError, JoinError
from fedjoin.core.logging import get_logger
from fedjoin.queries.models import ExecutionContext

logger = get_logger(__name__)
router = APIRouter(prefix=settings.api_prefix, tags=["transform"])


class TransformRequest(BaseModel):
    """Request model for search body transformation."""
    body: Dict[str, Any]
    username: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    force_refresh: bool = False


class InvalidateRequest(BaseModel):
    key: Optional[str] = None


def _status_for(error: FedJoinError) -> int:
    cause = error
    if isinstance(error, JoinError) and error.cause is not None:
        cause = error.cause
    if isinstance(cause, BackendError):
        return 502
    if isinstance(cause, (ConfigurationError, JoinError)):
        return 400
    return 500


@router.post("/transform")
async def transform_search_body(transform_request: TransformRequest, request: Request):
    """
    Resolve the join directives of a search body.

    Returns the rewritten body, ready to be forwarded to the search cluster.
    """
    transformer = getattr(request.app.state, "transformer", None)
    if transformer is None:
        raise HTTPException(status_code=503, detail="Join engine not initialized")

    context = ExecutionContext(
        username=transform_request.username,
        variables=transform_request.variables,
        force_refresh=transform_request.force_refresh,
    )
    try:
        body = await transformer.transform(transform_request.body, context)
    except FedJoinError as e:
        logger.error("Search body transformation failed", error=str(e))
        raise HTTPException(status_code=_status_for(e), detail=str(e))

    return {"body": body}


@router.post("/cache/invalidate")
async def invalidate_cache(invalidate_request: InvalidateRequest, request: Request):
    """Drop one cached result, or every cached result when no key is given."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache not initialized")

    try:
        if invalidate_request.key:
            await cache.invalidate(invalidate_request.key)
        else:
            await cache.clear()
    except FedJoinError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"invalidated": invalidate_request.key or "*"}
