"""Speech recognizer and synthesizer interfaces."""
from abc import ABC, abstractmethod
from typing import AsyncIterator

from pydantic import BaseModel


class RecognizerEvent(BaseModel):
    """One recognizer result."""

    text: str
    is_final: bool = False
    confidence: float = 0.0


class SynthesizedAudio(BaseModel):
    """Playable audio for one piece of text."""

    payload: bytes
    duration_seconds: float


class RecognizerStream(ABC):
    """One open, bidirectional recognizer link."""

    @abstractmethod
    def write(self, frame: bytes) -> None:
        """Send a raw audio frame to the recognizer."""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[RecognizerEvent]:
        """Iterate recognizer results until the stream ends.

        Raises RecognizerStreamError if the backend fails.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop sending audio and end the stream. Idempotent."""
        pass


class SpeechRecognizer(ABC):
    """Factory for recognizer streams."""

    @abstractmethod
    def open(self, language_code: str) -> RecognizerStream:
        """Open a new recognizer stream for the given language."""
        pass


class SpeechSynthesizer(ABC):
    """Text-to-speech backend."""

    @abstractmethod
    async def synthesize(self, voice: str, text: str) -> SynthesizedAudio:
        """Synthesize text with the given voice.

        Raises SynthesisError on failure. Must be safe to call concurrently.
        """
        pass
