"""
Persona - Domain Models
=========================
Pydantic models shared by the history trimmer, retrieval coordinator,
chat orchestrator and the profile store.

``ConversationTurn`` is frozen: once a turn is created it never changes.
A ``Transcript`` is simply a chronological ``list[ConversationTurn]``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from persona.config.settings import settings


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class LLMProvider(str, Enum):
    GEMINI = "gemini"
    GPT = "gpt"
    OLLAMA = "ollama"


class EmbeddingProvider(str, Enum):
    GEMINI = "gemini"
    FASTAPI = "fastapi"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Conversation ───────────────────────────────────────────────────────

class ConversationTurn(BaseModel):
    """One message of a transcript.  ``timestamp`` is absent on legacy turns."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str
    timestamp: datetime | None = None


Transcript = list[ConversationTurn]


# ── Profile ────────────────────────────────────────────────────────────

class LLMConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    model: str = Field(default_factory=lambda: settings.DEFAULT_LLM_MODEL)
    temperature: float = Field(default_factory=lambda: settings.DEFAULT_LLM_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default_factory=lambda: settings.DEFAULT_LLM_MAX_TOKENS, gt=0, alias="maxTokens")


class UserAIProfile(BaseModel):
    """
    Per-user AI record.

    Created lazily by the ``UserStore`` on first interaction; mutated by
    settings updates and by every committed chat turn.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    preferences: dict[str, Any] = Field(default_factory=dict)
    personal_info: dict[str, Any] = Field(default_factory=dict)
    transcript: Transcript = Field(default_factory=list)
    llm_provider: LLMProvider = Field(default_factory=lambda: LLMProvider(settings.DEFAULT_LLM_PROVIDER))
    llm_config: LLMConfig = Field(default_factory=LLMConfig)
    embedding_provider: EmbeddingProvider = Field(default_factory=lambda: EmbeddingProvider(settings.EMBEDDING_PROVIDER))
    embedding_config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def settings_view(self) -> dict[str, Any]:
        """Fields returned by ``get_settings``; the transcript is not included."""
        return {
            "llm_provider": self.llm_provider,
            "llm_config": self.llm_config.model_dump(),
            "embedding_provider": self.embedding_provider,
            "embedding_config": dict(self.embedding_config),
            "preferences": dict(self.preferences),
            "personal_info": dict(self.personal_info),
        }


# Fields a caller may change through ``update_settings``
SETTINGS_FIELDS: frozenset[str] = frozenset({"llm_provider", "llm_config", "embedding_provider", "embedding_config", "preferences", "personal_info"})


# ── Retrieval ──────────────────────────────────────────────────────────

class RetrievedDocument(BaseModel):
    id: str
    text: str
    relevance_score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoredDocument(BaseModel):
    """Input to the write path; ``id`` is generated when omitted."""

    id: str | None = None
    text: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Caller-facing results ──────────────────────────────────────────────

class ChatResult(BaseModel):
    response: str
    message: str


class EmbeddingResult(BaseModel):
    embedding: list[float] | None = None
    embeddings: list[list[float]] | None = None
    count: int | None = None
    cached: bool = True


class StreamEvent(BaseModel):
    """
    One event of a streamed chat.

    Exactly one of ``chunk`` / ``done`` / ``error`` is set.  ``done`` and
    ``error`` are terminal.
    """

    kind: Literal["chunk", "done", "error"]
    chunk: str | None = None
    error: str | None = None

    @classmethod
    def of_chunk(cls, text: str) -> StreamEvent:
        return cls(kind="chunk", chunk=text)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(kind="done")

    @classmethod
    def failed(cls, message: str) -> StreamEvent:
        return cls(kind="error", error=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind != "chunk"

    def payload(self) -> dict[str, Any]:
        if self.kind == "chunk":
            return {"chunk": self.chunk}
        if self.kind == "done":
            return {"done": True}
        return {"error": self.error}

    def to_sse(self) -> str:
        """Server-sent-event framing: ``data: <json>\\n\\n``."""
        return f"data: {json.dumps(self.payload(), ensure_ascii=False)}\n\n"
