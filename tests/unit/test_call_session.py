"""Unit tests for the call session lifecycle."""
import asyncio

import pytest

from callbot.core.errors import ConfigResolutionError, IllegalTransitionError
from callbot.services.agent.base import CallSummary, FollowUpStatus
from callbot.services.call_session.models import LifecycleState, TimerKind, TurnStatus
from callbot.services.call_session.session import CallSession

OPENING = "Hello, thanks for taking my call."


@pytest.fixture
async def make_session(services, fake_transport, fast_settings):
    """Build sessions against the fakes and make sure each one is closed."""
    created = []

    def _make(settings=None, **kwargs):
        session = CallSession(
            "CA123",
            1,
            fake_transport,
            services,
            settings=settings or fast_settings,
            **kwargs,
        )
        created.append(session)
        return session

    yield _make

    for session in created:
        if session._runner is None:
            continue
        session.terminate("test_cleanup")
        await asyncio.wait_for(session.wait_closed(), timeout=2)


def say(session, recognizer, text):
    """Caller audio followed by a final transcript."""
    session.feed_audio(b"\xff" * 160)
    recognizer.latest.push(text)


async def wait_until_listening(session, eventually):
    await eventually(
        lambda: session.turn_status == TurnStatus.LISTENING
        and session.timers.is_armed(TimerKind.SILENCE)
    )


@pytest.mark.asyncio
class TestSessionStart:
    """Test context resolution and the opening turn."""

    async def test_opening_turn_speaks_greeting(
        self, make_session, fake_transport, fake_generator, fake_recorder, fake_classifier, eventually
    ):
        session = make_session()
        await session.start()

        assert session.state == LifecycleState.ACTIVE
        await eventually(lambda: len(fake_transport.sent) == 1)
        await wait_until_listening(session, eventually)

        assert fake_transport.sent == [f"audio:{OPENING}".encode()]
        assert fake_generator.requests[0].query == ""
        assert session.history() == [("", OPENING)]
        assert [sid for sid, _ in fake_recorder.started] == ["CA123"]
        # No follow-up check for the opening
        assert fake_classifier.follow_up_calls == []

    async def test_config_error_closes_session(self, make_session, fake_resolver, fake_recorder, fake_generator):
        fake_resolver.error = ConfigResolutionError("Job 1 not found")
        closed = []
        session = make_session(on_closed=closed.append)

        with pytest.raises(ConfigResolutionError):
            await session.start()

        assert session.is_closed
        assert session.end_reason == "config_error"
        assert closed == [session]
        assert fake_recorder.started == []
        assert fake_generator.requests == []

    async def test_unexpected_resolver_error_becomes_config_error(self, make_session, fake_resolver):
        fake_resolver.error = RuntimeError("database is locked")
        session = make_session()

        with pytest.raises(ConfigResolutionError):
            await session.start()

        assert session.is_closed

    async def test_closed_session_rejects_transitions(self, make_session, fake_resolver):
        fake_resolver.error = ConfigResolutionError("Job 1 not found")
        session = make_session()
        with pytest.raises(ConfigResolutionError):
            await session.start()

        with pytest.raises(IllegalTransitionError):
            session._transition(LifecycleState.ACTIVE)

    async def test_snapshot(self, make_session, eventually):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        snapshot = session.snapshot()
        assert snapshot["session_id"] == "CA123"
        assert snapshot["job_id"] == 1
        assert snapshot["direction"] == "outbound"
        assert snapshot["lifecycle"] == "active"
        assert snapshot["turn_status"] == "listening"
        assert snapshot["turn_count"] == 1
        assert snapshot["end_reason"] is None


@pytest.mark.asyncio
class TestSilenceHandling:
    """Test the silence prompt and the final cut."""

    async def test_silence_timer_waits_for_playback_and_grace(
        self, make_session, fake_classifier, eventually
    ):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        # 0.05s of audio plus 0.2s grace, measured from delivery
        remaining = session.timers.remaining(TimerKind.SILENCE)
        assert 0.1 < remaining <= 0.26

        await asyncio.sleep(0.05)
        assert fake_classifier.silence_calls == []

    async def test_silent_caller_gets_prompt_then_call_ends(
        self, make_session, fake_transport, fake_classifier, fake_recorder
    ):
        fake_classifier.summary = CallSummary(
            sentiment="Neutral", potential_customer=False, summary="Caller never answered."
        )
        session = make_session()
        await session.start()

        await asyncio.wait_for(session.wait_closed(), timeout=3)

        assert session.end_reason == "silence"
        assert fake_transport.sent == [
            f"audio:{OPENING}".encode(),
            b"audio:Are you still there?",
        ]
        assert fake_classifier.silence_calls == [("", OPENING)]
        # The silence prompt is not a conversation turn
        assert session.history() == [("", OPENING)]
        assert fake_transport.disconnected == 1
        assert session.summary == fake_classifier.summary
        assert fake_classifier.summary_calls == [[("", OPENING)]]
        assert fake_recorder.ended == [{
            "session_id": "CA123",
            "turns": [("", OPENING)],
            "reason": "silence",
            "summary": fake_classifier.summary,
        }]

    async def test_speech_activity_cancels_silence_timer(
        self, make_session, fake_recognizer, fake_classifier, fake_transport, eventually
    ):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        session.feed_audio(b"\xff" * 160)
        fake_recognizer.latest.push("um", is_final=False)

        await eventually(lambda: not session.timers.is_armed(TimerKind.SILENCE))
        await asyncio.sleep(0.35)

        assert fake_classifier.silence_calls == []
        assert len(fake_transport.sent) == 1
        assert session.state == LifecycleState.ACTIVE

    async def test_speech_after_prompt_cancels_final_cut(
        self, make_session, fake_recognizer, fake_classifier, eventually
    ):
        session = make_session()
        await session.start()
        await eventually(lambda: session.timers.is_armed(TimerKind.FINAL_CUT))

        session.feed_audio(b"\xff" * 160)
        fake_recognizer.latest.push("yes I'm", is_final=False)

        await eventually(lambda: not session.timers.is_armed(TimerKind.FINAL_CUT))
        await asyncio.sleep(0.35)

        assert session.state == LifecycleState.ACTIVE
        assert len(fake_classifier.silence_calls) == 1

    async def test_failed_prompt_still_arms_final_cut(
        self, make_session, fake_transport, fake_classifier, eventually
    ):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        fake_transport.error = RuntimeError("send buffer full")
        await eventually(lambda: session.timers.is_armed(TimerKind.FINAL_CUT))
        assert session.turn_status == TurnStatus.LISTENING

        await asyncio.wait_for(session.wait_closed(), timeout=3)
        assert session.end_reason == "silence"
        assert len(fake_classifier.silence_calls) == 1
        assert fake_transport.sent == [f"audio:{OPENING}".encode()]


@pytest.mark.asyncio
class TestTurnTaking:
    """Test caller utterances and the follow-up check."""

    async def test_utterance_starts_turn_with_history(
        self, make_session, fake_recognizer, fake_generator, fake_classifier, eventually
    ):
        fake_generator.deltas = ["We are open 9 to 5. ", "Anything else?"]
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        say(session, fake_recognizer, "What are your hours?")
        await eventually(lambda: len(fake_classifier.follow_up_calls) == 1)

        request = fake_generator.requests[1]
        assert request.query == "What are your hours?"
        assert request.history == [("", "We are open 9 to 5. Anything else?")]
        assert session.history()[-1] == ("What are your hours?", "We are open 9 to 5. Anything else?")
        assert fake_classifier.follow_up_calls[0][-1][0] == "What are your hours?"
        assert session.state == LifecycleState.ACTIVE

    async def test_no_interest_closes_call(
        self, make_session, fake_recognizer, fake_classifier, eventually
    ):
        fake_classifier.follow_up = FollowUpStatus.NO
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        say(session, fake_recognizer, "No thanks, I'm not interested.")
        await asyncio.wait_for(session.wait_closed(), timeout=3)

        assert session.end_reason == "no_interest"
        assert fake_classifier.silence_calls == []
        assert len(session.turns) == 2

    async def test_utterance_cancels_no_interest(
        self, make_session, fast_settings, fake_recognizer, fake_classifier, eventually
    ):
        fake_classifier.follow_up = FollowUpStatus.NO
        session = make_session(
            settings=fast_settings.model_copy(update={"no_interest_grace_seconds": 1.0})
        )
        await session.start()
        await wait_until_listening(session, eventually)

        say(session, fake_recognizer, "Not really.")
        await eventually(
            lambda: session.timers.is_armed(TimerKind.NO_INTEREST)
            and session.turn_status == TurnStatus.LISTENING
        )
        fake_classifier.follow_up = FollowUpStatus.YES
        say(session, fake_recognizer, "Actually, tell me more.")

        await eventually(lambda: len(session.turns) == 3)
        assert not session.timers.is_armed(TimerKind.NO_INTEREST)
        assert session.state == LifecycleState.ACTIVE

    async def test_speech_during_debounce_cancels_no_interest(
        self, make_session, fast_settings, fake_recognizer, fake_classifier, eventually
    ):
        fake_classifier.follow_up = FollowUpStatus.NO
        session = make_session(
            settings=fast_settings.model_copy(update={
                "transcript_debounce_seconds": 0.5,
                "no_interest_grace_seconds": 0.3,
                "silence_grace_seconds": 1.0,
            })
        )
        await session.start()
        await wait_until_listening(session, eventually)

        say(session, fake_recognizer, "No thanks.")
        await eventually(
            lambda: session.timers.is_armed(TimerKind.NO_INTEREST)
            and session.turn_status == TurnStatus.LISTENING
        )
        fake_classifier.follow_up = FollowUpStatus.YES
        # Still inside the debounce window when the grace period runs out
        say(session, fake_recognizer, "wait, actually one more question")
        await asyncio.sleep(0.35)

        assert session.state == LifecycleState.ACTIVE
        assert not session.timers.is_armed(TimerKind.NO_INTEREST)
        await eventually(lambda: len(session.turns) == 3)
        assert session.turns[-1].query == "wait, actually one more question"

    async def test_utterance_dropped_while_generating(
        self, make_session, fake_recognizer, fake_generator, eventually
    ):
        fake_generator.deltas = []
        fake_generator.block = True
        session = make_session()
        await session.start()
        await eventually(lambda: len(fake_generator.requests) == 1)
        assert session.turn_status == TurnStatus.GENERATING

        say(session, fake_recognizer, "Hello? Anyone there?")
        await asyncio.sleep(0.15)

        assert len(fake_generator.requests) == 1
        assert len(session.turns) == 1

    async def test_second_turn_while_generating_is_refused(
        self, make_session, fake_generator, eventually
    ):
        fake_generator.deltas = []
        fake_generator.block = True
        session = make_session()
        await session.start()
        await eventually(lambda: len(fake_generator.requests) == 1)

        with pytest.raises(IllegalTransitionError):
            session._start_turn("Is anyone there?")

        assert len(session.turns) == 1
        assert session.turn_status == TurnStatus.GENERATING
        assert len(fake_generator.requests) == 1

    async def test_barge_in_interrupts_bot(
        self, make_session, fast_settings, fake_recognizer, fake_generator, fake_transport, eventually
    ):
        fake_generator.deltas = ["Hello there, this is Ava calling. "]
        fake_generator.block = True
        session = make_session(settings=fast_settings.model_copy(update={"barge_in": True}))
        await session.start()
        await eventually(lambda: len(fake_transport.sent) == 1)

        fake_generator.block = False
        fake_generator.deltas = ["Sure, I can help with that."]
        say(session, fake_recognizer, "Wait, who is this?")

        await eventually(lambda: len(fake_transport.sent) == 2)
        assert fake_transport.cleared == 1
        assert fake_generator.closed >= 1
        assert session.history() == [
            ("", "Hello there, this is Ava calling."),
            ("Wait, who is this?", "Sure, I can help with that."),
        ]


@pytest.mark.asyncio
class TestTermination:
    """Test forced and failure-driven closing."""

    async def test_terminate_while_generating(
        self, make_session, fake_generator, fake_transport, fake_recorder, eventually
    ):
        fake_generator.deltas = []
        fake_generator.block = True
        session = make_session()
        await session.start()
        await eventually(lambda: len(fake_generator.requests) == 1)

        assert session.terminate("balance exhausted") is True
        assert session.state == LifecycleState.CLOSING

        await asyncio.wait_for(session.wait_closed(), timeout=1)

        assert session.end_reason == "balance exhausted"
        assert fake_generator.closed == 1
        assert fake_transport.disconnected == 1
        assert fake_recorder.ended[0]["reason"] == "balance exhausted"
        assert session.terminate("again") is False

    async def test_terminate_cancels_pending_timers(self, make_session, eventually):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        session.terminate("operator")
        await asyncio.wait_for(session.wait_closed(), timeout=1)

        assert not session.timers.is_armed(TimerKind.SILENCE)
        assert session.end_reason == "operator"

    async def test_caller_disconnect(self, make_session, fake_recognizer, eventually):
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        assert session.caller_disconnected() is True
        await asyncio.wait_for(session.wait_closed(), timeout=1)

        streams = len(fake_recognizer.streams)
        session.feed_audio(b"\xff" * 160)
        assert session.end_reason == "caller_disconnected"
        assert len(fake_recognizer.streams) == streams

    async def test_transport_failure_closes_call(self, make_session, fake_transport):
        fake_transport.fail = True
        session = make_session()
        await session.start()

        await asyncio.wait_for(session.wait_closed(), timeout=2)

        assert session.end_reason == "transport_error"
        assert fake_transport.disconnected == 1

    async def test_summary_timeout_does_not_block_close(
        self, make_session, fake_classifier, fake_recorder, eventually
    ):
        async def slow_summary(turns):
            await asyncio.sleep(5)

        fake_classifier.summarize = slow_summary
        session = make_session()
        await session.start()
        await wait_until_listening(session, eventually)

        session.terminate("operator")
        await asyncio.wait_for(session.wait_closed(), timeout=2)

        assert session.summary is None
        assert fake_recorder.ended[0]["summary"] is None

    async def test_on_closed_called_once(self, make_session, eventually):
        closed = []
        session = make_session(on_closed=closed.append)
        await session.start()
        await wait_until_listening(session, eventually)

        session.terminate("operator")
        session.terminate("operator again")
        await asyncio.wait_for(session.wait_closed(), timeout=1)
        await asyncio.sleep(0.02)

        assert closed == [session]
