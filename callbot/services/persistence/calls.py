"""Call persistence service."""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callbot.db.models import Call
from callbot.services.agent.base import CallSummary
from callbot.services.call_session.models import Turn
from callbot.services.context.base import CallContext
from callbot.services.persistence.base import CallRecorder

logger = logging.getLogger(__name__)

# End reasons that mean the call did not complete normally
FAILED_END_REASONS = {"config_error", "transport_error"}


class CallPersistenceService:
    """Service for persisting call data."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_call(
        self, call_sid: str, job_id: Optional[int] = None, direction: Optional[str] = None
    ) -> Call:
        """Create a new call record or return existing one."""
        existing_call = await self.get_call_by_sid(call_sid)
        if existing_call:
            return existing_call

        call = Call(call_sid=call_sid, job_id=job_id, direction=direction, status="in_progress")
        self.db.add(call)
        await self.db.commit()
        await self.db.refresh(call)
        return call

    async def get_call_by_sid(self, call_sid: str) -> Optional[Call]:
        """Get call by transport call SID."""
        result = await self.db.execute(
            select(Call).where(Call.call_sid == call_sid)
        )
        return result.scalar_one_or_none()

    async def list_calls(self, limit: int = 50) -> List[Call]:
        """Most recent calls first."""
        result = await self.db.execute(
            select(Call).order_by(Call.started_at.desc(), Call.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def update_call_status(
        self,
        call_sid: str,
        status: str,
        ended_at: Optional[datetime] = None,
        end_reason: Optional[str] = None,
    ) -> Optional[Call]:
        """Update call status."""
        call = await self.get_call_by_sid(call_sid)
        if call:
            call.status = status
            if ended_at:
                call.ended_at = ended_at
            if end_reason:
                call.end_reason = end_reason
            await self.db.commit()
            await self.db.refresh(call)
        return call

    async def update_call_transcript(self, call_sid: str, transcript: str) -> Optional[Call]:
        """Update call transcript."""
        call = await self.get_call_by_sid(call_sid)
        if call:
            call.transcript = transcript
            await self.db.commit()
            await self.db.refresh(call)
        return call

    async def record_outcome(self, call_sid: str, summary: CallSummary) -> Optional[Call]:
        """Store the post-call sentiment and summary."""
        call = await self.get_call_by_sid(call_sid)
        if call:
            call.sentiment = summary.sentiment
            call.potential_customer = summary.potential_customer
            call.summary = summary.summary
            await self.db.commit()
            await self.db.refresh(call)
        return call


def format_transcript(turns: Sequence[Turn]) -> str:
    """Render turns as a plain-text transcript."""
    lines = []
    for turn in turns:
        if turn.query:
            lines.append(f"Caller: {turn.query}")
        if turn.response:
            lines.append(f"Agent: {turn.response}")
    return "\n".join(lines)


class DatabaseCallRecorder(CallRecorder):
    """Writes call records through CallPersistenceService, one DB session per write."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def call_started(self, session_id: str, context: CallContext) -> None:
        async with self.session_factory() as db:
            await CallPersistenceService(db).create_call(
                session_id, job_id=context.job_id, direction=str(context.direction)
            )
        logger.info(f"[RECORDER] Call {session_id} recorded as started")

    async def call_ended(
        self,
        session_id: str,
        turns: Sequence[Turn],
        reason: Optional[str],
        summary: Optional[CallSummary],
    ) -> None:
        status = "failed" if reason in FAILED_END_REASONS else "completed"
        async with self.session_factory() as db:
            service = CallPersistenceService(db)
            await service.update_call_transcript(session_id, format_transcript(turns))
            await service.update_call_status(
                session_id, status, ended_at=datetime.utcnow(), end_reason=reason
            )
            if summary is not None:
                await service.record_outcome(session_id, summary)
        logger.info(f"[RECORDER] Call {session_id} recorded as {status} ({reason})")
