"""Streaming speech-to-text with Google Cloud Speech."""
import asyncio
import logging
import queue
import threading
from typing import Any, AsyncIterator, Iterator, Optional

from google.cloud import speech

from callbot.core.errors import RecognizerStreamError
from callbot.services.speech.base import RecognizerEvent, RecognizerStream, SpeechRecognizer

logger = logging.getLogger(__name__)

# Telephony audio: 8 kHz mu-law
SAMPLE_RATE_HZ = 8000
MAX_QUEUED_FRAMES = 400

_END = object()


class GoogleRecognizerStream(RecognizerStream):
    """
    One streaming_recognize call running on a worker thread.

    Audio frames go to the thread through a bounded queue.Queue; results come
    back to the event loop with call_soon_threadsafe.
    """

    def __init__(
        self,
        client: speech.SpeechClient,
        language_code: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.client = client
        self.language_code = language_code
        self._loop = loop or asyncio.get_running_loop()
        self._audio: queue.Queue = queue.Queue(maxsize=MAX_QUEUED_FRAMES)
        self._results: asyncio.Queue = asyncio.Queue()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def write(self, frame: bytes) -> None:
        if self._stop.is_set():
            raise RecognizerStreamError("Recognizer stream is closed")
        try:
            self._audio.put_nowait(frame)
        except queue.Full:
            logger.warning("[STT] Audio queue full, dropping frame")

    async def events(self) -> AsyncIterator[RecognizerEvent]:
        while True:
            item = await self._results.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise RecognizerStreamError(f"Recognizer failed: {item}") from item
            yield item

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        try:
            self._audio.put_nowait(None)
        except queue.Full:
            pass

    def _streaming_config(self) -> speech.StreamingRecognitionConfig:
        config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.MULAW,
            sample_rate_hertz=SAMPLE_RATE_HZ,
            language_code=self.language_code,
            enable_automatic_punctuation=True,
            model="phone_call",
            use_enhanced=True,
        )
        return speech.StreamingRecognitionConfig(
            config=config, interim_results=True, single_utterance=False
        )

    def _requests(self) -> Iterator[speech.StreamingRecognizeRequest]:
        while not self._stop.is_set():
            try:
                frame = self._audio.get(timeout=0.5)
            except queue.Empty:
                continue
            if frame is None:
                break
            yield speech.StreamingRecognizeRequest(audio_content=frame)

    def _worker(self) -> None:
        logger.debug(f"[STT] Worker started (language={self.language_code})")
        try:
            responses = self.client.streaming_recognize(
                config=self._streaming_config(), requests=self._requests()
            )
            for response in responses:
                if self._stop.is_set():
                    break
                for result in response.results:
                    if not result.alternatives:
                        continue
                    best = result.alternatives[0]
                    self._emit(RecognizerEvent(
                        text=best.transcript,
                        is_final=result.is_final,
                        confidence=best.confidence,
                    ))
        except Exception as e:
            if not self._stop.is_set():
                logger.warning(f"[STT] Worker error: {type(e).__name__}: {e}")
                self._emit(e)
        finally:
            self._emit(_END)
            logger.debug(f"[STT] Worker exiting (language={self.language_code})")

    def _emit(self, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._results.put_nowait, item)
        except RuntimeError:
            # Event loop already closed
            pass


class GoogleSpeechRecognizer(SpeechRecognizer):
    """Opens Google streaming recognizer links on demand."""

    def __init__(self, client: Optional[speech.SpeechClient] = None):
        self._client = client

    @property
    def client(self) -> speech.SpeechClient:
        if self._client is None:
            self._client = speech.SpeechClient()
        return self._client

    def open(self, language_code: str) -> RecognizerStream:
        return GoogleRecognizerStream(self.client, language_code)
