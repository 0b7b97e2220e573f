"""Call history API endpoints."""
import logging
from typing import List
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from callbot.db.database import get_db
from callbot.services.persistence.calls import CallPersistenceService


router = APIRouter()
logger = logging.getLogger(__name__)


class CallResponse(BaseModel):
    """Call response model."""
    id: int
    call_sid: str
    job_id: int | None = None
    direction: str | None = None
    started_at: str
    ended_at: str | None = None
    status: str
    end_reason: str | None = None
    transcript: str | None = None
    sentiment: str | None = None
    potential_customer: bool | None = None
    summary: str | None = None

    class Config:
        from_attributes = True


@router.get("/api/calls/history", response_model=List[CallResponse])
async def get_call_history(
    request: Request,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    """Get recorded calls, newest first."""
    logger.info(
        f"[CALLS HISTORY] Request received - limit: {limit}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    try:
        calls = await CallPersistenceService(db).list_calls(limit=limit)
        logger.info(f"[CALLS HISTORY] Found {len(calls)} calls in database")
        return [
            CallResponse(
                id=call.id,
                call_sid=call.call_sid,
                job_id=call.job_id,
                direction=call.direction,
                started_at=call.started_at.isoformat() if call.started_at else "",
                ended_at=call.ended_at.isoformat() if call.ended_at else None,
                status=call.status,
                end_reason=call.end_reason,
                transcript=call.transcript,
                sentiment=call.sentiment,
                potential_customer=call.potential_customer,
                summary=call.summary,
            )
            for call in calls
        ]
    except Exception as e:
        logger.error(
            f"[CALLS HISTORY] Error fetching call history - limit: {limit}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )
        raise HTTPException(status_code=500, detail=f"Error fetching call history: {str(e)}")
