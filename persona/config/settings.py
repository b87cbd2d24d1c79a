"""
Persona - Centralized Configuration
=====================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``MONGO_URI`` is typed as ``SecretStr`` and has **no default value**.
  If it is missing at startup, Pydantic raises a ``ValidationError``.
  Connection strings contain credentials and must never leak into logs.
- Provider API keys (``GOOGLE_API_KEY``, ``OPENAI_API_KEY``) are optional
  ``SecretStr`` fields: a user may run entirely on a local Ollama model.
  The backend that needs a key raises ``BackendConfigurationError`` when
  it is absent.

History Budget
--------------
``MAX_HISTORY_TOKENS`` × 4 chars/token is the character budget of a
persisted transcript (8000 tokens ≈ 32,000 characters).  Turns older
than ``HISTORY_RETENTION_HOURS`` are dropped on every trim pass.

Debug Mode
----------
``STREAM_DEBUG_MODE=true`` swaps every LLM provider for the canned
``DebugBackend`` so front-ends can exercise streaming without API calls.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required**.

    Attributes
    ----------
    MONGO_URI : SecretStr
        MongoDB connection string for the profile store.  **Required.**
    MONGO_DB_NAME : str
        MongoDB database holding the ``PROFILE_COLLECTION``.
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    EMBEDDING_PROVIDER : Literal["gemini", "fastapi"]
        Gateway-wide provider used for retrieval vectors and as the
        default for newly created profiles.
    VECTOR_SIZE : int
        Dimension of the LanceDB vector column; must match the
        embedding model output.
    MAX_HISTORY_TOKENS : int
        Token budget of a trimmed transcript.
    GENERATION_TIMEOUT_SECONDS : float
        Upper bound on a single LLM generation (whole or streamed).
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_RAW_DIR: Path = BASE_DIR / "data" / "raw"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"

    # ── Provider Credentials (optional) ────────────────────────────────
    GOOGLE_API_KEY: SecretStr | None = None
    OPENAI_API_KEY: SecretStr | None = None
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    FASTAPI_EMBEDDING_URL: str | None = None

    # ── MongoDB (REQUIRED, no default) ────────────────────────────────
    MONGO_URI: SecretStr
    MONGO_DB_NAME: str = "persona"
    PROFILE_COLLECTION: str = "user_ai_profiles"

    # ── Model Configuration ────────────────────────────────────────────
    DEFAULT_LLM_PROVIDER: Literal["gemini", "gpt", "ollama"] = "gemini"
    DEFAULT_LLM_MODEL: str = "gemini-2.5-flash"
    DEFAULT_LLM_TEMPERATURE: float = 0.7
    DEFAULT_LLM_MAX_TOKENS: int = 2048
    EMBEDDING_PROVIDER: Literal["gemini", "fastapi"] = "gemini"
    EMBEDDING_MODEL: str = "gemini-embedding-001"

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "persona_documents"
    VECTOR_SIZE: int = 768

    # ── Conversation History ───────────────────────────────────────────
    MAX_HISTORY_TOKENS: int = 8000
    MAX_HISTORY_MESSAGES: int = 20
    HISTORY_RETENTION_HOURS: float = 24.0
    PROMPT_HISTORY_LIMIT: int | None = None

    # ── Embedding Cache ────────────────────────────────────────────────
    EMBED_CACHE_MAX_SIZE: int = 1000
    EMBED_CACHE_TTL_SECONDS: float = 24 * 60 * 60

    # ── Generation ─────────────────────────────────────────────────────
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    STREAM_DEBUG_MODE: bool = False
    DEBUG_STREAM_DELAY_SECONDS: float = 0.5

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("MAX_HISTORY_TOKENS", "MAX_HISTORY_MESSAGES", "EMBED_CACHE_MAX_SIZE", "VECTOR_SIZE")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v


    @field_validator("HISTORY_RETENTION_HOURS", "EMBED_CACHE_TTL_SECONDS", "GENERATION_TIMEOUT_SECONDS")
    @classmethod
    def _positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"duration must be > 0, got {v}")
        return v


    @field_validator("DEFAULT_LLM_TEMPERATURE")
    @classmethod
    def _temperature_range(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"DEFAULT_LLM_TEMPERATURE must be 0.0–2.0, got {v}")
        return v

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from persona.config.settings import settings
settings = Settings()
