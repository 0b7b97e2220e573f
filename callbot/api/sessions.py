"""Live session API endpoints."""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from callbot.core.dependencies import get_session_registry
from callbot.services.call_session.registry import SessionRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


class SessionResponse(BaseModel):
    """Live session response model."""
    session_id: str
    job_id: int
    direction: Optional[str] = None
    lifecycle: str
    turn_status: str
    turn_count: int
    end_reason: Optional[str] = None


class TerminateRequest(BaseModel):
    reason: str = "terminated"


@router.get("/api/sessions", response_model=List[SessionResponse])
async def list_sessions(registry: SessionRegistry = Depends(get_session_registry)):
    """List active call sessions."""
    return [SessionResponse(**session.snapshot()) for session in registry.active_sessions]


@router.post("/api/sessions/{session_id}/terminate", response_model=SessionResponse)
async def terminate_session(
    session_id: str,
    body: TerminateRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    End a live call.

    Used by the dispatch and billing scheduler when balance runs out or the
    calling window closes.
    """
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    logger.info(f"[SESSIONS] Terminate requested for {session_id}: {body.reason}")
    session.terminate(body.reason)
    return SessionResponse(**session.snapshot())
