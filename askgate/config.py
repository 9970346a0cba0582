"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- Provider API keys and model names (OpenAI, speech)
- The tenant directory database and the default datastore
- Retrieval/generation knobs
- Rate limiting windows and per-endpoint ceilings
- HTTP surface (prefix, port, allowed origin, admin credential)

ProviderConfig is the explicit credential bundle handed to each component's
constructor, so nothing below the app factory reads the environment.
"""
from dataclasses import dataclass
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Providers
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_MODEL: str = "gpt-3.5-turbo-1106"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims

    # Speech
    TTS_PROVIDER: str = "openai"  # openai | google | fake
    TTS_API_KEY: str = Field(default="", description="Speech provider credential; OpenAI falls back to OPENAI_API_KEY")
    OPENAI_TTS_MODEL: str = "tts-1"
    TTS_VOICE: str = "coral"
    TTS_LANGUAGE_CODE: str = "en-US"
    TTS_GENDER: str = "FEMALE"
    TTS_SPEAKING_RATE: float = 1.0
    TTS_TIMEOUT_SECONDS: float = 30.0

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://gate_user:gate_pass@db:5432/gate_db"
    DEFAULT_DATASTORE_URL: str = ""
    DEFAULT_DATASTORE_KEY: str = ""
    # Serving the default store for an unresolved tenant is a degraded/test mode only
    ALLOW_DEFAULT_DATASTORE: bool = False
    REDIS_URL: str = "redis://redis:6379/0"

    # Retrieval/Generation
    MATCH_COUNT: int = 10
    MATCH_THRESHOLD: float = 0.1
    MAX_OUTPUT_TOKENS: int = 150
    TEMPERATURE: float = 0.3
    ANSWER_SUFFIX: str = "Do you have any other questions?"

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_ASK: int = 50
    RATE_LIMIT_ASK_TEXT: int = 100
    RATE_LIMIT_VOICES: int = 100
    TRUST_X_FORWARDED_FOR: bool = True
    REAL_IP_HEADER: str = "X-Forwarded-For"

    # HTTP
    API_PREFIX: str = "/api"
    PORT: int = 3000
    ALLOWED_ORIGIN: str = "*"
    ADMIN_API_KEY: str = ""
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Observability
    OTEL_CONSOLE_EXPORT: bool = False

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-large" in model:
            return 3072
        return 1536

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials each component receives at construction time.

    Attributes:
        embedding_provider_key: Key for the embedding endpoint.
        completion_provider_key: Key for the chat completion endpoint.
        speech_provider_credential: Key for the speech synthesis provider.
        datastore_default_url: Store used only when ALLOW_DEFAULT_DATASTORE is on.
        datastore_default_key: Credential for the default store.
    """
    embedding_provider_key: str
    completion_provider_key: str
    speech_provider_credential: str
    datastore_default_url: str = ""
    datastore_default_key: str = ""

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "ProviderConfig":
        s = s or settings
        return cls(
            embedding_provider_key=s.OPENAI_API_KEY,
            completion_provider_key=s.OPENAI_API_KEY,
            speech_provider_credential=s.TTS_API_KEY or s.OPENAI_API_KEY,
            datastore_default_url=s.DEFAULT_DATASTORE_URL,
            datastore_default_key=s.DEFAULT_DATASTORE_KEY,
        )


settings = Settings()
