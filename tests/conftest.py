"""Shared test fixtures and configuration."""
import asyncio
import os
from typing import Callable, List, Optional, Sequence, Tuple
from unittest.mock import Mock, AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from callbot.main import app
from callbot.db.database import get_db
from callbot.db.models import Base
from callbot.core.config import Settings
from callbot.core.dependencies import get_session_registry
from callbot.core.errors import RecognizerStreamError, SynthesisError, TransportError
from callbot.services.agent.base import (
    CallSummary,
    ConversationClassifier,
    FollowUpStatus,
    GenerationRequest,
    ResponseGenerator,
)
from callbot.services.cache.store import TTLCache
from callbot.services.call_session.registry import SessionRegistry
from callbot.services.call_session.session import SessionServices
from callbot.services.call_session.transport import CallTransport
from callbot.services.context.base import (
    CallContext,
    CallContextResolver,
    CallDirection,
    PromptBlocks,
)
from callbot.services.persistence.base import CallRecorder
from callbot.services.retrieval.base import Retriever
from callbot.services.speech.base import (
    RecognizerEvent,
    RecognizerStream,
    SpeechRecognizer,
    SpeechSynthesizer,
    SynthesizedAudio,
)


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeRecognizerStream(RecognizerStream):
    """Recognizer link driven by the test through push() and fail()."""

    def __init__(self, language_code: str):
        self.language_code = language_code
        self.frames: List[bytes] = []
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def write(self, frame: bytes) -> None:
        if self.closed:
            raise RecognizerStreamError("closed")
        self.frames.append(frame)

    async def events(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def push(self, text: str, is_final: bool = True, confidence: float = 0.9) -> None:
        self._queue.put_nowait(RecognizerEvent(text=text, is_final=is_final, confidence=confidence))

    def fail(self, message: str = "recognizer went away") -> None:
        self._queue.put_nowait(RecognizerStreamError(message))


class FakeRecognizer(SpeechRecognizer):
    def __init__(self):
        self.streams: List[FakeRecognizerStream] = []

    def open(self, language_code: str) -> RecognizerStream:
        stream = FakeRecognizerStream(language_code)
        self.streams.append(stream)
        return stream

    @property
    def latest(self) -> Optional[FakeRecognizerStream]:
        return self.streams[-1] if self.streams else None


class FakeGenerator(ResponseGenerator):
    """
    Streams ``deltas`` for every request.

    ``error`` is raised after the deltas; ``block`` keeps the stream open
    until it is cancelled.
    """

    def __init__(self):
        self.deltas: List[str] = ["Hello, thanks for taking my call."]
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.block = False
        self.requests: List[GenerationRequest] = []
        self.closed = 0

    async def stream(self, request: GenerationRequest):
        self.requests.append(request)
        try:
            for delta in self.deltas:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield delta
            if self.error is not None:
                raise self.error
            if self.block:
                await asyncio.Event().wait()
        finally:
            self.closed += 1


class FakeSynthesizer(SpeechSynthesizer):
    def __init__(self):
        self.duration = 0.05
        self.latency: Optional[Callable[[str], float]] = None
        self.fail_on: set = set()
        self.calls: List[Tuple[str, str]] = []

    async def synthesize(self, voice: str, text: str) -> SynthesizedAudio:
        self.calls.append((voice, text))
        if self.latency is not None:
            await asyncio.sleep(self.latency(text))
        if text in self.fail_on:
            raise SynthesisError(f"cannot synthesize '{text}'")
        return SynthesizedAudio(payload=f"audio:{text}".encode(), duration_seconds=self.duration)


class FakeRetriever(Retriever):
    backend_id = "fake"

    def __init__(self):
        self.snippets: List[str] = []
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []

    async def retrieve(self, query, index_handle, namespace=None):
        self.calls.append((query, index_handle, namespace))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.snippets)


class FakeClassifier(ConversationClassifier):
    def __init__(self):
        self.follow_up: Optional[FollowUpStatus] = FollowUpStatus.YES
        self.silence_text = "Are you still there?"
        self.summary: Optional[CallSummary] = None
        self.follow_up_calls: List[List[Tuple[str, str]]] = []
        self.silence_calls: List[Tuple[str, str]] = []
        self.summary_calls: List[List[Tuple[str, str]]] = []

    async def check_follow_up(self, turns: Sequence[Tuple[str, str]]):
        self.follow_up_calls.append(list(turns))
        return self.follow_up

    async def silence_prompt(self, last_query: str, last_response: str) -> str:
        self.silence_calls.append((last_query, last_response))
        return self.silence_text

    async def summarize(self, turns: Sequence[Tuple[str, str]]):
        self.summary_calls.append(list(turns))
        return self.summary


class FakeTransport(CallTransport):
    def __init__(self):
        self.sent: List[bytes] = []
        self.cleared = 0
        self.disconnected = 0
        self.fail = False
        self.error: Optional[Exception] = None

    async def send_audio(self, payload: bytes) -> None:
        if self.fail:
            raise TransportError("socket closed")
        if self.error is not None:
            raise self.error
        self.sent.append(payload)

    async def clear(self) -> None:
        self.cleared += 1

    async def disconnect(self) -> None:
        self.disconnected += 1


class FakeRecorder(CallRecorder):
    def __init__(self):
        self.started: List[Tuple[str, CallContext]] = []
        self.ended: List[dict] = []

    async def call_started(self, session_id, context):
        self.started.append((session_id, context))

    async def call_ended(self, session_id, turns, reason, summary):
        self.ended.append({
            "session_id": session_id,
            "turns": [turn.as_pair() for turn in turns],
            "reason": reason,
            "summary": summary,
        })


class FakeResolver(CallContextResolver):
    def __init__(self, context: CallContext):
        self.context = context
        self.error: Optional[Exception] = None
        self.calls: List[int] = []

    async def resolve(self, job_id: int) -> CallContext:
        self.calls.append(job_id)
        if self.error is not None:
            raise self.error
        return self.context.model_copy(update={"job_id": job_id})


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        openai_api_key="test-key",
        database_url=TEST_DATABASE_URL,
    )


@pytest.fixture
def fast_settings():
    """Settings with every engine delay shrunk so lifecycle tests run quickly."""
    return Settings(
        openai_api_key="test-key",
        database_url=TEST_DATABASE_URL,
        transcript_debounce_seconds=0.05,
        retrieval_timeout_seconds=0.2,
        generation_timeout_seconds=2.0,
        synthesis_timeout_seconds=0.5,
        silence_grace_seconds=0.2,
        no_interest_grace_seconds=0.05,
        summary_timeout_seconds=0.5,
    )


@pytest.fixture
def call_context():
    return CallContext(
        job_id=1,
        agent_id=7,
        direction=CallDirection.OUTBOUND,
        language="English",
        language_code="en-US",
        voice="nova",
        prompt_blocks=PromptBlocks(
            company_introduction="Acme Solar installs rooftop panels.",
            greeting_message="Hi, this is Ava from Acme Solar.",
        ),
        retrieval_index="acme-kb",
        retrieval_namespace="7",
    )


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def fake_retriever():
    return FakeRetriever()


@pytest.fixture
def fake_classifier():
    return FakeClassifier()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_recorder():
    return FakeRecorder()


@pytest.fixture
def fake_resolver(call_context):
    return FakeResolver(call_context)


@pytest.fixture
def services(
    fake_resolver,
    fake_recognizer,
    fake_generator,
    fake_synthesizer,
    fake_retriever,
    fake_classifier,
    fake_recorder,
):
    """Session services wired to fakes, with fresh caches."""
    return SessionServices(
        resolver=fake_resolver,
        recognizer=fake_recognizer,
        generator=fake_generator,
        synthesizer=fake_synthesizer,
        retriever=fake_retriever,
        classifier=fake_classifier,
        retrieval_cache=TTLCache(60, 100),
        audio_cache=TTLCache(60, 100),
        recorder=fake_recorder,
    )


@pytest.fixture
def eventually():
    """Poll a condition until it holds or the timeout elapses."""
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _eventually


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_db(test_session_factory):
    """Create test database session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def override_get_db(test_db):
    """Override get_db dependency with test database."""
    async def _override_get_db():
        yield test_db
    return _override_get_db


@pytest.fixture
def test_registry(services, fast_settings):
    return SessionRegistry(services, settings=fast_settings)


@pytest.fixture
def test_client(override_get_db, test_registry, test_settings, monkeypatch):
    """Create FastAPI test client with overrides."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_registry] = lambda: test_registry

    # Override settings in modules that use it
    monkeypatch.setattr("callbot.api.webhooks.voice.settings", test_settings)

    client = TestClient(app)

    yield client

    # Clear overrides
    app.dependency_overrides.clear()


@pytest.fixture
def mock_openai():
    """Mock OpenAI API client."""
    mock_client = Mock()
    mock_completion = Mock()
    mock_completion.choices = [
        Mock(message=Mock(content='{"FollowUpQueries": "YES", "reason": "The user asked a question."}'))
    ]
    mock_client.chat.completions.create = AsyncMock(return_value=mock_completion)
    return mock_client


# Pytest configuration
def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )
