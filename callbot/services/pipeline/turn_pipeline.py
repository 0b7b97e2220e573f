"""Utterance in, ordered synthesized audio chunks out."""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from callbot.core.config import Settings, settings as default_settings
from callbot.core.errors import GenerationError, RetrievalTimeout
from callbot.services.agent.base import GenerationRequest, ResponseGenerator
from callbot.services.cache.store import TTLCache
from callbot.services.context.base import CallContext
from callbot.services.pipeline.chunker import SentenceChunker, strip_markup
from callbot.services.retrieval.base import Retriever
from callbot.services.speech.base import SpeechSynthesizer, SynthesizedAudio

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = "I'm sorry, I don't have information about that right now."

_END = object()


@dataclass
class TurnChunk:
    """One sentence of the bot response and its audio."""

    index: int
    text: str
    audio: Optional[bytes]  # None when synthesis failed for this chunk
    duration_seconds: float


class TurnPipeline:
    """
    Runs one bot turn: retrieval, one streaming generation call, sentence
    chunking and synthesis.

    Generation runs as a producer task that cuts the delta stream into
    sentences and queues them. The consumer synthesizes one sentence at a
    time and yields it before starting the next, so chunks always come out
    in generation order while generation keeps running in the background.
    """

    def __init__(
        self,
        generator: ResponseGenerator,
        synthesizer: SpeechSynthesizer,
        retriever: Retriever,
        retrieval_cache: TTLCache,
        audio_cache: TTLCache,
        settings: Optional[Settings] = None,
        session_id: str = "",
    ):
        settings = settings or default_settings
        self.generator = generator
        self.synthesizer = synthesizer
        self.retriever = retriever
        self.retrieval_cache = retrieval_cache
        self.audio_cache = audio_cache
        self.settings = settings
        self.session_id = session_id

    async def retrieve_context(self, query: str, context: CallContext) -> List[str]:
        """Look up context snippets, degrading to an empty list on any failure."""
        if not context.retrieval_index:
            return []
        namespace = (
            f"{self.retriever.backend_id}:{context.retrieval_index}:"
            f"{context.retrieval_namespace or ''}"
        )
        key = TTLCache.make_key(query, namespace)
        cached = self.retrieval_cache.get(key)
        if cached is not None:
            logger.debug(f"[PIPELINE {self.session_id}] Retrieval cache hit")
            return cached

        try:
            snippets = await self.fetch_snippets(query, context)
        except RetrievalTimeout as e:
            logger.warning(f"[PIPELINE {self.session_id}] {e}, using empty context")
            snippets = []
        except Exception as e:
            logger.warning(
                f"[PIPELINE {self.session_id}] Retrieval failed, using empty context: "
                f"{type(e).__name__}: {e}"
            )
            snippets = []

        self.retrieval_cache.set(key, snippets)
        return snippets

    async def fetch_snippets(self, query: str, context: CallContext) -> List[str]:
        """Query the retriever directly, bounded by the retrieval timeout.

        Raises RetrievalTimeout when the backend does not answer in time.
        """
        timeout = self.settings.retrieval_timeout_seconds
        try:
            snippets = await asyncio.wait_for(
                self.retriever.retrieve(
                    query, context.retrieval_index, context.retrieval_namespace
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RetrievalTimeout(f"Retrieval timed out after {timeout}s") from e
        return list(snippets or [])

    def build_request(
        self,
        context: CallContext,
        history: Sequence[Tuple[str, str]],
        snippets: List[str],
        query: str,
    ) -> GenerationRequest:
        """Assemble the generation request with bounded history."""
        limit = self.settings.history_max_chars
        max_turns = self.settings.history_max_turns
        recent = list(history)[-max_turns:] if max_turns > 0 else []
        trimmed = [(q[:limit], r[:limit]) for q, r in recent if q or r]
        return GenerationRequest(
            direction=context.direction,
            prompt_blocks=context.prompt_blocks,
            history=trimmed,
            context=snippets,
            query=query,
            language=context.language,
        )

    async def synthesize(self, voice: str, text: str) -> Optional[SynthesizedAudio]:
        """Synthesize text through the audio cache. Returns None on failure."""
        key = TTLCache.make_key(text, voice)
        cached = self.audio_cache.get(key)
        if cached is not None:
            return cached
        try:
            audio = await asyncio.wait_for(
                self.synthesizer.synthesize(voice, text),
                timeout=self.settings.synthesis_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[PIPELINE {self.session_id}] Synthesis timed out for '{text[:60]}'")
            return None
        except Exception as e:
            logger.warning(
                f"[PIPELINE {self.session_id}] Synthesis failed for '{text[:60]}': "
                f"{type(e).__name__}: {e}"
            )
            return None
        self.audio_cache.set(key, audio)
        return audio

    async def run(
        self,
        context: CallContext,
        history: Sequence[Tuple[str, str]],
        query: str,
    ) -> AsyncIterator[TurnChunk]:
        """Yield the synthesized chunks of the bot response to ``query``."""
        snippets = await self.retrieve_context(query, context)
        request = self.build_request(context, history, snippets, query)

        sentences: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(request, sentences))
        index = 0
        try:
            while True:
                text = await sentences.get()
                if text is _END:
                    break
                spoken = strip_markup(text)
                if len(spoken) < self.settings.synthesis_min_chars:
                    continue
                audio = await self.synthesize(context.voice, spoken)
                chunk = TurnChunk(
                    index=index,
                    text=spoken,
                    audio=audio.payload if audio else None,
                    duration_seconds=audio.duration_seconds if audio else 0.0,
                )
                index += 1
                yield chunk
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def _produce(self, request: GenerationRequest, out: asyncio.Queue) -> None:
        chunker = SentenceChunker(self.settings.chunk_min_chars)
        produced = 0
        stream = self.generator.stream(request)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.generation_timeout_seconds
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationError("Generation exceeded its time budget")
                try:
                    delta = await asyncio.wait_for(stream.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise GenerationError("Generation exceeded its time budget")
                for sentence in chunker.push(delta):
                    out.put_nowait(sentence)
                    produced += 1
            remainder = chunker.flush()
            if remainder:
                out.put_nowait(remainder)
                produced += 1
        except Exception as e:
            logger.warning(
                f"[PIPELINE {self.session_id}] Generation failed after {produced} chunk(s): "
                f"{type(e).__name__}: {e}"
            )
            # A partial sentence is discarded and the turn ends on the fallback
            out.put_nowait(FALLBACK_RESPONSE)
        finally:
            out.put_nowait(_END)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"[PIPELINE {self.session_id}] Error closing generation stream: {e}")
