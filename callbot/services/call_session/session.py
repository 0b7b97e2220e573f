"""Per-call session: lifecycle state machine and turn coordination."""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from callbot.core.config import Settings, settings as default_settings
from callbot.core.errors import ConfigResolutionError, IllegalTransitionError, TransportError
from callbot.services.agent.base import (
    SILENCE_FALLBACK,
    CallSummary,
    ConversationClassifier,
    FollowUpStatus,
    ResponseGenerator,
)
from callbot.services.cache.store import TTLCache
from callbot.services.call_session.models import (
    ALLOWED_TRANSITIONS,
    LifecycleState,
    TimerKind,
    Turn,
    TurnStatus,
)
from callbot.services.call_session.timers import SessionTimers
from callbot.services.call_session.transport import CallTransport
from callbot.services.context.base import CallContext, CallContextResolver
from callbot.services.persistence.base import CallRecorder
from callbot.services.pipeline.turn_pipeline import TurnPipeline
from callbot.services.retrieval.base import Retriever
from callbot.services.speech.base import SpeechRecognizer, SpeechSynthesizer
from callbot.services.transcript.aggregator import TranscriptAggregator

logger = logging.getLogger(__name__)


@dataclass
class SessionServices:
    """Backends and shared caches a session is built from."""

    resolver: CallContextResolver
    recognizer: SpeechRecognizer
    generator: ResponseGenerator
    synthesizer: SpeechSynthesizer
    retriever: Retriever
    classifier: ConversationClassifier
    retrieval_cache: TTLCache
    audio_cache: TTLCache
    recorder: Optional[CallRecorder] = None


# Events serialized onto the session runner


@dataclass
class _Opening:
    pass


@dataclass
class _Utterance:
    text: str


@dataclass
class _SpeechActivity:
    pass


@dataclass
class _ChunkDelivered:
    token: int
    text: str
    duration_seconds: float


@dataclass
class _BotFinished:
    token: int


@dataclass
class _TimerFired:
    kind: TimerKind


@dataclass
class _FollowUpChecked:
    token: int
    status: Optional[FollowUpStatus]


@dataclass
class _CloseRequested:
    reason: str


@dataclass
class _Teardown:
    pass


@dataclass
class _Stop:
    pass


@dataclass
class _BotActivity:
    """The bot turn or silence prompt currently in flight."""

    token: int
    turn: Optional[Turn]  # None for the silence prompt
    total_duration: float = 0.0
    chunks: int = 0


class CallSession:
    """
    One live call.

    Lifecycle: CONNECTING -> ACTIVE -> CLOSING -> CLOSED, with CONNECTING ->
    CLOSED when context resolution fails. Every state change happens on a
    single runner task that consumes an event queue; recognition, generation,
    synthesis and timers run concurrently and only post events.

    Each bot turn or silence prompt gets an activity token. Cancelling it or
    starting the next one bumps the token, so events from superseded work are
    ignored when they arrive.
    """

    def __init__(
        self,
        session_id: str,
        job_id: int,
        transport: CallTransport,
        services: SessionServices,
        settings: Optional[Settings] = None,
        on_closed: Optional[Callable[["CallSession"], None]] = None,
    ):
        self.session_id = session_id
        self.job_id = job_id
        self.transport = transport
        self.services = services
        self.settings = settings or default_settings
        self.state = LifecycleState.CONNECTING
        self.turn_status = TurnStatus.IDLE
        self.context: Optional[CallContext] = None
        self.turns: List[Turn] = []
        self.end_reason: Optional[str] = None
        self.summary: Optional[CallSummary] = None
        self.timers = SessionTimers(session_id)

        self._on_closed = on_closed
        self._pipeline: Optional[TurnPipeline] = None
        self._aggregator: Optional[TranscriptAggregator] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._runner: Optional[asyncio.Task] = None
        self._bot: Optional[_BotActivity] = None
        self._bot_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._activity = 0
        self._playback_ends_at = 0.0
        self._closed = asyncio.Event()

    # Public entry points

    async def start(self) -> None:
        """Resolve call context and begin the conversation.

        Raises ConfigResolutionError if the context cannot be resolved; the
        session is CLOSED in that case.
        """
        self._runner = asyncio.create_task(self._run())
        try:
            context = await self.services.resolver.resolve(self.job_id)
        except Exception as e:
            logger.error(f"[SESSION {self.session_id}] Context resolution failed: {e}")
            self.end_reason = "config_error"
            self._finish()
            if isinstance(e, ConfigResolutionError):
                raise
            raise ConfigResolutionError(f"Could not resolve call context: {e}") from e
        if self.state != LifecycleState.CONNECTING:
            # Terminated while the context was being resolved
            return

        self.context = context
        self._pipeline = TurnPipeline(
            self.services.generator,
            self.services.synthesizer,
            self.services.retriever,
            self.services.retrieval_cache,
            self.services.audio_cache,
            settings=self.settings,
            session_id=self.session_id,
        )
        self._aggregator = TranscriptAggregator(
            self.services.recognizer,
            context.language_code,
            on_utterance=lambda text: self._post(_Utterance(text)),
            on_speech=lambda: self._post(_SpeechActivity()),
            settings=self.settings,
            session_id=self.session_id,
        )
        self._transition(LifecycleState.ACTIVE)
        self.turn_status = TurnStatus.LISTENING
        logger.info(
            f"[SESSION {self.session_id}] Active: job={self.job_id} "
            f"direction={context.direction} language={context.language_code} voice={context.voice}"
        )

        if self.services.recorder is not None:
            try:
                await self.services.recorder.call_started(self.session_id, context)
            except Exception as e:
                logger.error(f"[SESSION {self.session_id}] Failed to record call start: {e}")

        self._post(_Opening())

    def feed_audio(self, frame: bytes) -> None:
        """Accept one inbound audio frame from the transport."""
        if self.state != LifecycleState.ACTIVE or self._aggregator is None:
            return
        if not self._aggregator.has_stream and not self._aggregator.open_stream():
            return
        self._aggregator.feed_audio(frame)

    def caller_disconnected(self) -> bool:
        return self._begin_closing("caller_disconnected")

    def terminate(self, reason: str) -> bool:
        """Move straight to CLOSING from any state.

        Returns False if the session was already closing or closed.
        """
        return self._begin_closing(reason)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def is_closed(self) -> bool:
        return self.state == LifecycleState.CLOSED

    def history(self) -> List[Tuple[str, str]]:
        return [turn.as_pair() for turn in self.turns]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "job_id": self.job_id,
            "direction": str(self.context.direction) if self.context else None,
            "lifecycle": str(self.state),
            "turn_status": str(self.turn_status),
            "turn_count": len(self.turns),
            "end_reason": self.end_reason,
        }

    # State machine

    def _transition(self, target: LifecycleState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.state, target)
        logger.debug(f"[SESSION {self.session_id}] {self.state} -> {target}")
        self.state = target

    def _begin_closing(self, reason: str) -> bool:
        if self.state in (LifecycleState.CLOSING, LifecycleState.CLOSED):
            return False
        logger.info(f"[SESSION {self.session_id}] Closing: {reason}")
        self.end_reason = reason
        self._transition(LifecycleState.CLOSING)
        self.timers.cancel_all()
        self._activity += 1
        self._bot = None
        if self._bot_task is not None and not self._bot_task.done():
            self._bot_task.cancel()
        for task in list(self._background):
            task.cancel()
        if self._aggregator is not None:
            self._aggregator.close()
        self.turn_status = TurnStatus.IDLE
        self._post(_Teardown())
        return True

    def _finish(self) -> None:
        if self.state == LifecycleState.CLOSED:
            return
        self._transition(LifecycleState.CLOSED)
        self.turn_status = TurnStatus.IDLE
        self.timers.cancel_all()
        self._closed.set()
        logger.info(f"[SESSION {self.session_id}] Closed ({self.end_reason})")
        if self._on_closed is not None:
            self._on_closed(self)
        self._post(_Stop())

    # Event loop

    def _post(self, event: Any) -> None:
        self._events.put_nowait(event)

    def _timer_callback(self, kind: TimerKind) -> Callable[[], None]:
        return lambda: self._post(_TimerFired(kind))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            if isinstance(event, _Stop):
                break
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(
                    f"[SESSION {self.session_id}] Error handling {type(event).__name__}: {e}",
                    exc_info=True,
                )

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, _Teardown):
            await self._teardown()
            return
        if self.state != LifecycleState.ACTIVE:
            return

        if isinstance(event, _Opening):
            self._start_turn("")
        elif isinstance(event, _Utterance):
            await self._on_utterance(event.text)
        elif isinstance(event, _SpeechActivity):
            self.timers.cancel(TimerKind.SILENCE)
            self.timers.cancel(TimerKind.FINAL_CUT)
            if self.timers.cancel(TimerKind.NO_INTEREST):
                # Speech that never finalizes still needs a way to end the call
                self.timers.arm(
                    TimerKind.SILENCE,
                    self.settings.silence_grace_seconds,
                    self._timer_callback(TimerKind.SILENCE),
                )
        elif isinstance(event, _ChunkDelivered):
            self._on_chunk_delivered(event)
        elif isinstance(event, _BotFinished):
            self._on_bot_finished(event)
        elif isinstance(event, _TimerFired):
            self._on_timer(event.kind)
        elif isinstance(event, _FollowUpChecked):
            self._on_follow_up(event)
        elif isinstance(event, _CloseRequested):
            self._begin_closing(event.reason)

    # Handlers

    async def _on_utterance(self, text: str) -> None:
        # Caller speech wins over every pending bot timer
        self.timers.cancel(TimerKind.SILENCE)
        self.timers.cancel(TimerKind.FINAL_CUT)
        self.timers.cancel(TimerKind.NO_INTEREST)

        if self.turn_status in (TurnStatus.GENERATING, TurnStatus.SPEAKING):
            if not self.settings.barge_in:
                logger.info(
                    f"[SESSION {self.session_id}] Bot is {self.turn_status}, "
                    f"dropping utterance: '{text}'"
                )
                if self._bot is None:
                    # Only playback is left; restart the quiet period after it
                    self.timers.arm(
                        TimerKind.SILENCE,
                        self._remaining_playback() + self.settings.silence_grace_seconds,
                        self._timer_callback(TimerKind.SILENCE),
                    )
                return
            logger.info(f"[SESSION {self.session_id}] Caller interrupted the bot")
            await self._interrupt_bot()

        self._start_turn(text)

    async def _interrupt_bot(self) -> None:
        self._activity += 1
        self._bot = None
        task, self._bot_task = self._bot_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.timers.cancel(TimerKind.PLAYBACK)
        self._playback_ends_at = asyncio.get_running_loop().time()
        try:
            await self.transport.clear()
        except TransportError as e:
            logger.warning(f"[SESSION {self.session_id}] Could not clear queued audio: {e}")

    def _start_turn(self, query: str) -> None:
        if self._bot is not None:
            # Barge-in clears the bot turn before starting the next one
            raise IllegalTransitionError(self.turn_status, TurnStatus.GENERATING)
        self._activity += 1
        history = self.history()
        turn = Turn(query=query)
        self.turns.append(turn)
        self._bot = _BotActivity(token=self._activity, turn=turn)
        self.turn_status = TurnStatus.GENERATING
        if query:
            logger.info(f"[SESSION {self.session_id}] Turn {len(self.turns)}: '{query}'")
        self._bot_task = asyncio.create_task(self._speak_turn(self._activity, query, history))

    def _start_nudge(self) -> None:
        self._activity += 1
        last = self.turns[-1] if self.turns else Turn(query="")
        self._bot = _BotActivity(token=self._activity, turn=None)
        self.turn_status = TurnStatus.GENERATING
        logger.info(f"[SESSION {self.session_id}] Caller is silent, sending a prompt")
        self._bot_task = asyncio.create_task(
            self._speak_nudge(self._activity, last.query, last.response)
        )

    def _on_chunk_delivered(self, event: _ChunkDelivered) -> None:
        bot = self._bot
        if bot is None or bot.token != event.token:
            return
        now = asyncio.get_running_loop().time()
        self._playback_ends_at = max(now, self._playback_ends_at) + event.duration_seconds
        bot.total_duration += event.duration_seconds
        bot.chunks += 1
        if bot.turn is not None:
            bot.turn.append_response(event.text)
        self.turn_status = TurnStatus.SPEAKING

    def _on_bot_finished(self, event: _BotFinished) -> None:
        bot = self._bot
        if bot is None or bot.token != event.token:
            return
        self._bot = None
        self._bot_task = None

        remaining = self._remaining_playback()
        if remaining > 0:
            self.turn_status = TurnStatus.SPEAKING
            self.timers.arm(TimerKind.PLAYBACK, remaining, self._timer_callback(TimerKind.PLAYBACK))
        else:
            self.turn_status = TurnStatus.LISTENING

        quiet_after = remaining + self.settings.silence_grace_seconds
        if bot.turn is None:
            self.timers.arm(TimerKind.FINAL_CUT, quiet_after, self._timer_callback(TimerKind.FINAL_CUT))
            return

        logger.info(
            f"[SESSION {self.session_id}] Bot turn done: {bot.chunks} chunk(s), "
            f"{bot.total_duration:.2f}s of audio"
        )
        self.timers.arm(TimerKind.SILENCE, quiet_after, self._timer_callback(TimerKind.SILENCE))
        if bot.turn.query:
            recent = self.history()[-self.settings.follow_up_history_turns:]
            self._spawn(self._check_follow_up(bot.token, recent))

    def _on_timer(self, kind: TimerKind) -> None:
        logger.debug(f"[SESSION {self.session_id}] Timer fired: {kind}")
        if kind == TimerKind.PLAYBACK:
            if self._bot is None and self.turn_status == TurnStatus.SPEAKING:
                self.turn_status = TurnStatus.LISTENING
        elif kind == TimerKind.SILENCE:
            if self._bot is None:
                self._start_nudge()
        elif kind == TimerKind.FINAL_CUT:
            self._begin_closing("silence")
        elif kind == TimerKind.NO_INTEREST:
            self._begin_closing("no_interest")

    def _on_follow_up(self, event: _FollowUpChecked) -> None:
        if event.token != self._activity or self._bot is not None:
            return
        logger.info(f"[SESSION {self.session_id}] Follow-up status: {event.status}")
        if event.status != FollowUpStatus.NO:
            return
        # No-interest is the one closing path once armed
        self.timers.cancel(TimerKind.SILENCE)
        self.timers.cancel(TimerKind.FINAL_CUT)
        self.timers.arm(
            TimerKind.NO_INTEREST,
            self._remaining_playback() + self.settings.no_interest_grace_seconds,
            self._timer_callback(TimerKind.NO_INTEREST),
        )

    async def _teardown(self) -> None:
        pending = [t for t in [self._bot_task, *self._background] if t is not None]
        self._bot_task = None
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        summary_task = None
        if self.context is not None and self.turns:
            summary_task = asyncio.create_task(self.services.classifier.summarize(self.history()))

        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning(f"[SESSION {self.session_id}] Transport disconnect failed: {e}")

        if summary_task is not None:
            try:
                self.summary = await asyncio.wait_for(
                    summary_task, timeout=self.settings.summary_timeout_seconds
                )
            except Exception as e:
                logger.warning(
                    f"[SESSION {self.session_id}] Call summary failed: {type(e).__name__}: {e}"
                )

        if self.services.recorder is not None and self.context is not None:
            try:
                await self.services.recorder.call_ended(
                    self.session_id, list(self.turns), self.end_reason, self.summary
                )
            except Exception as e:
                logger.error(f"[SESSION {self.session_id}] Failed to record call end: {e}")

        self._finish()

    # Background work

    async def _speak_turn(self, token: int, query: str, history: List[Tuple[str, str]]) -> None:
        try:
            async with aclosing(self._pipeline.run(self.context, history, query)) as chunks:
                async for chunk in chunks:
                    if chunk.audio is None:
                        continue
                    await self.transport.send_audio(chunk.audio)
                    self._post(_ChunkDelivered(token, chunk.text, chunk.duration_seconds))
        except TransportError as e:
            logger.error(f"[SESSION {self.session_id}] Transport failed: {e}")
            self._post(_CloseRequested("transport_error"))
        except Exception as e:
            logger.error(
                f"[SESSION {self.session_id}] Bot turn failed: {type(e).__name__}: {e}",
                exc_info=True,
            )
        self._post(_BotFinished(token))

    async def _speak_nudge(self, token: int, last_query: str, last_response: str) -> None:
        try:
            text = await self.services.classifier.silence_prompt(last_query, last_response)
        except Exception as e:
            logger.warning(f"[SESSION {self.session_id}] Silence prompt failed: {e}")
            text = SILENCE_FALLBACK
        text = text.strip() or SILENCE_FALLBACK
        try:
            audio = await self._pipeline.synthesize(self.context.voice, text)
            if audio is not None:
                await self.transport.send_audio(audio.payload)
                self._post(_ChunkDelivered(token, text, audio.duration_seconds))
        except TransportError as e:
            logger.error(f"[SESSION {self.session_id}] Transport failed: {e}")
            self._post(_CloseRequested("transport_error"))
        except Exception as e:
            logger.error(
                f"[SESSION {self.session_id}] Silence prompt failed: {type(e).__name__}: {e}",
                exc_info=True,
            )
        self._post(_BotFinished(token))

    async def _check_follow_up(self, token: int, recent: List[Tuple[str, str]]) -> None:
        try:
            status = await self.services.classifier.check_follow_up(recent)
        except Exception as e:
            logger.warning(f"[SESSION {self.session_id}] Follow-up check failed: {e}")
            status = None
        self._post(_FollowUpChecked(token, status))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _remaining_playback(self) -> float:
        return max(0.0, self._playback_ends_at - asyncio.get_running_loop().time())
