"""Outbound side of the call transport, as seen by a session."""
from abc import ABC, abstractmethod


class CallTransport(ABC):
    """Delivers bot audio to the caller and hangs up."""

    @abstractmethod
    async def send_audio(self, payload: bytes) -> None:
        """Queue audio for playback. Raises TransportError if undeliverable."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Drop audio that was queued but has not played yet."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Hang up the call. Must be safe to call more than once."""
        pass
