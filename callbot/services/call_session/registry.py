"""Registry of live call sessions."""
import asyncio
import logging
from typing import Dict, List, Optional

from callbot.core.config import Settings, settings as default_settings
from callbot.core.errors import ConfigResolutionError
from callbot.services.call_session.session import CallSession, SessionServices
from callbot.services.call_session.transport import CallTransport

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Owns every live CallSession in the process, keyed by session id.

    Sessions are added when they are opened and removed when they reach
    CLOSED, whichever side ended the call.
    """

    def __init__(self, services: SessionServices, settings: Optional[Settings] = None):
        self.services = services
        self.settings = settings or default_settings
        self._sessions: Dict[str, CallSession] = {}

    async def open_session(
        self, session_id: str, job_id: int, transport: CallTransport
    ) -> CallSession:
        """Create and start a session. Raises ConfigResolutionError."""
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} is already active")

        session = CallSession(
            session_id,
            job_id,
            transport,
            self.services,
            settings=self.settings,
            on_closed=self._remove,
        )
        self._sessions[session_id] = session
        logger.info(f"[REGISTRY] Opening session {session_id} for job {job_id}")
        try:
            await session.start()
        except ConfigResolutionError:
            self._sessions.pop(session_id, None)
            raise
        return session

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    def terminate(self, session_id: str, reason: str) -> bool:
        """Ask a session to close. Returns False if it is unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.terminate(reason)
        return True

    @property
    def active_sessions(self) -> List[CallSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    async def shutdown(self, reason: str = "shutdown", timeout: Optional[float] = None) -> None:
        """Terminate every session and wait for them to close."""
        sessions = self.active_sessions
        if not sessions:
            return
        logger.info(f"[REGISTRY] Terminating {len(sessions)} session(s): {reason}")
        for session in sessions:
            session.terminate(reason)
        waiters = asyncio.gather(*(s.wait_closed() for s in sessions))
        try:
            await asyncio.wait_for(waiters, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[REGISTRY] Timed out waiting for sessions to close")

    def _remove(self, session: CallSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            logger.info(f"[REGISTRY] Session {session.session_id} removed ({len(self)} active)")
