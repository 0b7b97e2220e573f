"""Per-session timers."""
import asyncio
import logging
from typing import Callable, Dict, Optional

from callbot.services.call_session.models import TimerKind

logger = logging.getLogger(__name__)


class SessionTimers:
    """
    At most one pending timer per kind.

    Arming a kind cancels whatever timer of that kind was pending. Cancelling
    is idempotent: cancelling a timer that already fired or was never armed is
    a no-op. Callbacks run on the event loop and must not block.
    """

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._handles: Dict[TimerKind, asyncio.TimerHandle] = {}

    def arm(self, kind: TimerKind, delay_seconds: float, callback: Callable[[], None]) -> None:
        """Arm a timer, replacing any pending timer of the same kind."""
        self.cancel(kind)
        loop = asyncio.get_running_loop()
        delay_seconds = max(0.0, delay_seconds)

        def _fire() -> None:
            # Only the handle that is still current may fire
            if self._handles.get(kind) is handle:
                del self._handles[kind]
                callback()

        handle = loop.call_later(delay_seconds, _fire)
        self._handles[kind] = handle
        logger.debug(f"[TIMERS {self.session_id}] Armed {kind} for {delay_seconds:.2f}s")

    def cancel(self, kind: TimerKind) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        handle = self._handles.pop(kind, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug(f"[TIMERS {self.session_id}] Cancelled {kind}")
        return True

    def cancel_all(self) -> None:
        for kind in list(self._handles):
            self.cancel(kind)

    def is_armed(self, kind: TimerKind) -> bool:
        return kind in self._handles

    def remaining(self, kind: TimerKind) -> Optional[float]:
        """Seconds until a pending timer fires, or None."""
        handle = self._handles.get(kind)
        if handle is None:
            return None
        return max(0.0, handle.when() - asyncio.get_running_loop().time())
