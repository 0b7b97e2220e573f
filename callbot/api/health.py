"""Health check endpoint."""
import logging
from fastapi import APIRouter, Depends, Request

from callbot.core.dependencies import get_audio_cache, get_retrieval_cache, get_session_registry
from callbot.services.cache.store import TTLCache, stats_dict
from callbot.services.call_session.registry import SessionRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
    retrieval_cache: TTLCache = Depends(get_retrieval_cache),
    audio_cache: TTLCache = Depends(get_audio_cache),
):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    return {
        "status": "healthy",
        "active_sessions": len(registry),
        "caches": {
            "retrieval": stats_dict(retrieval_cache),
            "audio": stats_dict(audio_cache),
        },
    }
