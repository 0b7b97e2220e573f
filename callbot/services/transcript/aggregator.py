"""Turns recognizer results into finalized caller utterances."""
import asyncio
import logging
from typing import Callable, Optional, Set

from callbot.core.config import Settings, settings as default_settings
from callbot.core.errors import RecognizerStreamError
from callbot.services.call_session.models import PendingUtterance
from callbot.services.speech.base import RecognizerEvent, RecognizerStream, SpeechRecognizer

logger = logging.getLogger(__name__)


class TranscriptAggregator:
    """
    Accumulates final recognizer fragments and emits one utterance per turn.

    Every final fragment (and any further recognizer text while fragments are
    pending) restarts a debounce timer; when it fires the accumulated text is
    emitted once and the accumulator is cleared. Whitespace-only text is never
    emitted.

    The aggregator never reopens a failed recognizer link on its own. The
    owning session calls ``open_stream`` when it sees caller audio and
    ``has_stream`` is False.
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        language_code: str,
        on_utterance: Callable[[str], None],
        on_speech: Optional[Callable[[], None]] = None,
        settings: Optional[Settings] = None,
        session_id: str = "",
    ):
        settings = settings or default_settings
        self.recognizer = recognizer
        self.language_code = language_code
        self.session_id = session_id
        self.debounce_seconds = settings.transcript_debounce_seconds
        self.min_confidence = settings.transcript_min_confidence
        self.restart_on_final = settings.recognizer_restart_on_final
        self.pending = PendingUtterance()
        self._on_utterance = on_utterance
        self._on_speech = on_speech
        self._stream: Optional[RecognizerStream] = None
        self._readers: Set[asyncio.Task] = set()
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def has_stream(self) -> bool:
        return self._stream is not None

    def open_stream(self) -> bool:
        """Open a recognizer link if none is open. Returns True if one is open."""
        if self._closed:
            return False
        if self._stream is not None:
            return True
        try:
            stream = self.recognizer.open(self.language_code)
        except Exception as e:
            logger.warning(
                f"[TRANSCRIPT {self.session_id}] Could not open recognizer stream: "
                f"{type(e).__name__}: {e}"
            )
            return False
        self._stream = stream
        reader = asyncio.create_task(self._read(stream))
        self._readers.add(reader)
        reader.add_done_callback(self._readers.discard)
        logger.debug(f"[TRANSCRIPT {self.session_id}] Recognizer stream opened")
        return True

    def feed_audio(self, frame: bytes) -> bool:
        """Forward an audio frame to the open recognizer link, if any."""
        stream = self._stream
        if stream is None:
            return False
        try:
            stream.write(frame)
        except Exception as e:
            logger.warning(
                f"[TRANSCRIPT {self.session_id}] Recognizer write failed: "
                f"{type(e).__name__}: {e}"
            )
            self._drop_stream(stream)
            return False
        return True

    async def _read(self, stream: RecognizerStream) -> None:
        try:
            async for event in stream.events():
                self.handle_event(event)
        except RecognizerStreamError as e:
            logger.warning(f"[TRANSCRIPT {self.session_id}] Recognizer stream error: {e}")
        except Exception as e:
            logger.error(
                f"[TRANSCRIPT {self.session_id}] Unexpected recognizer failure: "
                f"{type(e).__name__}: {e}",
                exc_info=True,
            )
        finally:
            self._drop_stream(stream)

    def handle_event(self, event: RecognizerEvent) -> None:
        """Apply one recognizer result."""
        if self._closed:
            return
        text = event.text.strip()
        if text and self._on_speech is not None:
            self._on_speech()

        if event.is_final:
            if text and event.confidence >= self.min_confidence:
                self.pending.add(text)
            elif text:
                logger.debug(
                    f"[TRANSCRIPT {self.session_id}] Dropped low-confidence fragment "
                    f"({event.confidence:.2f}): '{text}'"
                )
            if self.restart_on_final and self._stream is not None:
                self._drop_stream(self._stream)

        if not self.pending:
            return
        if text or event.is_final:
            self._restart_debounce()

    def _restart_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.debounce_seconds, self._flush)

    def _flush(self) -> None:
        self._debounce = None
        text = self.pending.text
        self.pending.clear()
        if not text or self._closed:
            return
        logger.info(f"[TRANSCRIPT {self.session_id}] Utterance finalized: '{text}'")
        self._on_utterance(text)

    def _drop_stream(self, stream: RecognizerStream) -> None:
        try:
            stream.close()
        except Exception as e:
            logger.debug(f"[TRANSCRIPT {self.session_id}] Error closing recognizer: {e}")
        if self._stream is stream:
            self._stream = None

    def reset(self) -> None:
        """Discard pending fragments without emitting them."""
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        self.pending.clear()

    def close(self) -> None:
        """Close the recognizer link and stop emitting utterances."""
        self._closed = True
        self.reset()
        if self._stream is not None:
            self._drop_stream(self._stream)
        for reader in list(self._readers):
            reader.cancel()
