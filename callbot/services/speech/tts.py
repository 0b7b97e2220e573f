"""Text-to-speech service."""
import audioop
import logging
from typing import Optional

from openai import AsyncOpenAI

from callbot.core.config import settings
from callbot.core.errors import SynthesisError
from callbot.services.speech.base import SpeechSynthesizer, SynthesizedAudio

logger = logging.getLogger(__name__)

# OpenAI "pcm" output: 24 kHz, 16-bit signed little-endian, mono
SOURCE_RATE_HZ = 24000
SAMPLE_WIDTH = 2
TELEPHONY_RATE_HZ = 8000


def pcm16_to_mulaw(pcm: bytes, source_rate: int = SOURCE_RATE_HZ) -> bytes:
    """Resample 16-bit PCM to 8 kHz and encode it as mu-law for telephony."""
    if len(pcm) % SAMPLE_WIDTH:
        pcm = pcm[:-1]
    if not pcm:
        return b""
    resampled, _ = audioop.ratecv(pcm, SAMPLE_WIDTH, 1, source_rate, TELEPHONY_RATE_HZ, None)
    return audioop.lin2ulaw(resampled, SAMPLE_WIDTH)


def pcm16_duration(pcm: bytes, rate: int = SOURCE_RATE_HZ) -> float:
    return len(pcm) / float(rate * SAMPLE_WIDTH)


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """Synthesizes speech with OpenAI TTS and returns telephony-ready audio."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.tts_model

    async def synthesize(self, voice: str, text: str) -> SynthesizedAudio:
        """
        Synthesize speech from text using OpenAI TTS.

        Args:
            voice: Voice to use (alloy, echo, fable, onyx, nova, shimmer)
            text: Text to convert to speech

        Returns:
            8 kHz mu-law audio and its playback duration
        """
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=text,
                response_format="pcm",
            )
            pcm = response.content
        except Exception as e:
            raise SynthesisError(f"TTS synthesis failed: {str(e)}") from e

        payload = pcm16_to_mulaw(pcm)
        duration = pcm16_duration(pcm)
        logger.debug(f"[TTS] {len(text)} chars -> {duration:.2f}s of audio ({voice})")
        return SynthesizedAudio(payload=payload, duration_seconds=duration)
