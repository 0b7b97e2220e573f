"""FastAPI dependencies."""
from functools import lru_cache

from callbot.core.config import settings
from callbot.db.database import AsyncSessionLocal
from callbot.services.agent.classifier import OpenAIConversationClassifier
from callbot.services.agent.generation import OpenAIResponseGenerator
from callbot.services.cache.store import TTLCache
from callbot.services.call_session.registry import SessionRegistry
from callbot.services.call_session.session import SessionServices
from callbot.services.context.resolver import DatabaseContextResolver
from callbot.services.persistence.calls import DatabaseCallRecorder
from callbot.services.retrieval.base import NullRetriever, Retriever
from callbot.services.retrieval.pinecone_retriever import PineconeRetriever
from callbot.services.speech.stt import GoogleSpeechRecognizer
from callbot.services.speech.tts import OpenAISpeechSynthesizer


@lru_cache
def get_retrieval_cache() -> TTLCache:
    """Process-wide retrieval result cache."""
    return TTLCache(settings.retrieval_cache_ttl_seconds, settings.retrieval_cache_max_entries)


@lru_cache
def get_audio_cache() -> TTLCache:
    """Process-wide synthesized audio cache."""
    return TTLCache(settings.audio_cache_ttl_seconds, settings.audio_cache_max_entries)


def get_retriever() -> Retriever:
    if not settings.pinecone_api_key:
        return NullRetriever()
    return PineconeRetriever()


@lru_cache
def get_session_services() -> SessionServices:
    return SessionServices(
        resolver=DatabaseContextResolver(AsyncSessionLocal),
        recognizer=GoogleSpeechRecognizer(),
        generator=OpenAIResponseGenerator(),
        synthesizer=OpenAISpeechSynthesizer(),
        retriever=get_retriever(),
        classifier=OpenAIConversationClassifier(),
        retrieval_cache=get_retrieval_cache(),
        audio_cache=get_audio_cache(),
        recorder=DatabaseCallRecorder(AsyncSessionLocal),
    )


@lru_cache
def get_session_registry() -> SessionRegistry:
    """The registry of live call sessions."""
    return SessionRegistry(get_session_services())
