"""Hooks a session uses to record the call outside the engine."""
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from callbot.services.agent.base import CallSummary
from callbot.services.call_session.models import Turn
from callbot.services.context.base import CallContext


class CallRecorder(ABC):
    """Receives call start and end notifications from a session."""

    @abstractmethod
    async def call_started(self, session_id: str, context: CallContext) -> None:
        pass

    @abstractmethod
    async def call_ended(
        self,
        session_id: str,
        turns: Sequence[Turn],
        reason: Optional[str],
        summary: Optional[CallSummary],
    ) -> None:
        pass
