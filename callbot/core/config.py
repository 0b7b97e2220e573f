"""Application configuration."""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str
    generation_model: str = "gpt-4o-mini"
    classifier_model: str = "gpt-4o-mini"
    tts_model: str = "tts-1"
    embedding_model: str = "text-embedding-3-small"

    # Pinecone (retrieval is disabled when no key is set)
    pinecone_api_key: Optional[str] = None

    # Database
    database_url: str

    # Public URL used when building media stream URLs for TwiML
    base_url: Optional[str] = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Transcript aggregation
    transcript_debounce_seconds: float = 0.5
    transcript_min_confidence: float = 0.4
    recognizer_restart_on_final: bool = True

    # Turn pipeline
    retrieval_timeout_seconds: float = 2.0
    retrieval_top_k: int = 2
    generation_timeout_seconds: float = 15.0
    synthesis_timeout_seconds: float = 5.0
    history_max_turns: int = 3
    history_max_chars: int = 500
    chunk_min_chars: int = 12
    synthesis_min_chars: int = 2

    # Lifecycle timers
    silence_grace_seconds: float = 7.0
    no_interest_grace_seconds: float = 0.5
    follow_up_history_turns: int = 5
    summary_timeout_seconds: float = 15.0
    barge_in: bool = False

    # Caches
    retrieval_cache_ttl_seconds: float = 3600.0
    retrieval_cache_max_entries: int = 100
    audio_cache_ttl_seconds: float = 1800.0
    audio_cache_max_entries: int = 500

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
