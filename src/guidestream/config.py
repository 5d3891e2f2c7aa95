"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Text generation (OpenAI-compatible Responses endpoint)
    llm_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("LLM_API_KEY", "OPENAI_API_KEY", "llm_api_key"),
    )
    llm_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("LLM_BASE_URL", "llm_base_url"),
    )
    llm_model: str = Field(
        default="gpt-4.1-mini",
        validation_alias=AliasChoices("LLM_MODEL", "llm_model"),
    )
    llm_temperature: float = Field(
        default=0.8,
        validation_alias=AliasChoices("LLM_TEMPERATURE", "llm_temperature"),
    )
    llm_max_output_tokens: int = Field(
        default=4096,
        validation_alias=AliasChoices("LLM_MAX_OUTPUT_TOKENS", "llm_max_output_tokens"),
    )
    request_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices("REQUEST_TIMEOUT", "request_timeout"),
    )

    # Speech synthesis
    tts_provider: Literal["elevenlabs", "openai"] = Field(
        default="elevenlabs",
        validation_alias=AliasChoices("TTS_PROVIDER", "tts_provider"),
    )
    elevenlabs_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("ELEVENLABS_API_KEY", "elevenlabs_api_key"),
    )
    elevenlabs_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.elevenlabs.io/v1"),
        validation_alias=AliasChoices("ELEVENLABS_BASE_URL", "elevenlabs_base_url"),
    )
    elevenlabs_model_id: str = Field(
        default="eleven_flash_v2_5",
        validation_alias=AliasChoices("ELEVENLABS_MODEL_ID", "elevenlabs_model_id"),
    )
    openai_tts_model: str = Field(
        default="tts-1",
        validation_alias=AliasChoices("OPENAI_TTS_MODEL", "openai_tts_model"),
    )
    openai_tts_voice: str = Field(
        default="nova",
        validation_alias=AliasChoices("OPENAI_TTS_VOICE", "openai_tts_voice"),
    )
    default_voice_id: str = Field(
        default="EXAVITQu4vr4xnSDxMaL",
        validation_alias=AliasChoices("DEFAULT_VOICE_ID", "default_voice_id"),
    )
    tts_sample_rate: int = Field(
        default=24000,
        validation_alias=AliasChoices("TTS_SAMPLE_RATE", "tts_sample_rate"),
    )
    tts_speed: float = Field(
        default=0.95,
        validation_alias=AliasChoices("TTS_SPEED", "tts_speed"),
    )
    previous_text_limit: int = Field(
        default=1000,
        validation_alias=AliasChoices("TTS_PREVIOUS_TEXT_LIMIT", "previous_text_limit"),
    )

    # Session lifecycle
    session_state_path: Path = Field(
        default=Path("data/session_state.db"),
        validation_alias=AliasChoices("SESSION_STATE_PATH", "session_state_path"),
    )
    session_state_ttl_seconds: int = Field(
        default=3600,
        validation_alias=AliasChoices(
            "SESSION_STATE_TTL_SECONDS", "session_state_ttl_seconds"
        ),
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices(
            "HEARTBEAT_INTERVAL_SECONDS", "heartbeat_interval_seconds"
        ),
    )
    min_sentence_length: int = Field(
        default=40,
        validation_alias=AliasChoices("MIN_SENTENCE_LENGTH", "min_sentence_length"),
    )
    sentences_per_minute: int = Field(
        default=13,
        validation_alias=AliasChoices("SENTENCES_PER_MINUTE", "sentences_per_minute"),
    )
    allowed_session_lengths: tuple[int, ...] = Field(
        default=(10, 15, 20, 30),
        validation_alias=AliasChoices(
            "ALLOWED_SESSION_LENGTHS", "allowed_session_lengths"
        ),
    )
    default_session_length: int = Field(
        default=15,
        validation_alias=AliasChoices(
            "DEFAULT_SESSION_LENGTH", "default_session_length"
        ),
    )

    cors_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        validation_alias=AliasChoices("CORS_ORIGINS", "cors_origins"),
    )

    @field_validator("default_session_length")
    @classmethod
    def _positive_length(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("default_session_length must be positive")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # type: ignore[call-arg]


__all__ = ["Settings", "get_settings", "PROJECT_ROOT"]
