"""Pytest configuration for Persona tests.

Sets up a minimal environment for unit tests without requiring MongoDB,
LanceDB files or any provider API, and provides in-memory fakes for the
four collaborator interfaces.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncIterator, Sequence

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Set minimal environment variables for Settings
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/persona_test")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("STREAM_DEBUG_MODE", "false")

from persona.src.core.chat_engine import ChatOrchestrator  # noqa: E402
from persona.src.core.embedding_cache import EmbeddingCache  # noqa: E402
from persona.src.core.errors import EmbeddingError, GenerationError, PersistenceError  # noqa: E402
from persona.src.core.gateway import PersonaGateway  # noqa: E402
from persona.src.core.history import HistoryTrimmer  # noqa: E402
from persona.src.core.models import ConversationTurn, LLMConfig, UserAIProfile  # noqa: E402
from persona.src.core.retrieval import RetrievalCoordinator  # noqa: E402
from persona.src.utils.vector_utils import normalize_embedding  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeUserStore:
    """Dict-backed ``UserStore`` that records every transcript write."""

    def __init__(self) -> None:
        self.profiles: dict[str, UserAIProfile] = {}
        self.saved: list[tuple[str, list[ConversationTurn]]] = []
        self.fail_saves = False
        self.fail_loads = False

    async def get_or_create_ai_profile(self, user_id: str) -> UserAIProfile:
        if self.fail_loads:
            raise PersistenceError("mongo is down")
        if user_id not in self.profiles:
            self.profiles[user_id] = UserAIProfile(user_id=user_id)
        return self.profiles[user_id].model_copy(deep=True)

    async def get_profile(self, user_id: str) -> UserAIProfile | None:
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def save_transcript(self, user_id: str, transcript: list[ConversationTurn]) -> None:
        if self.fail_saves:
            raise ConnectionError("mongo is down")
        self.saved.append((user_id, list(transcript)))
        self.profiles[user_id] = self.profiles[user_id].model_copy(update={"transcript": list(transcript)})

    async def update_profile(self, user_id: str, fields: dict) -> UserAIProfile:
        data = {**self.profiles[user_id].model_dump(), **fields}
        self.profiles[user_id] = UserAIProfile.model_validate(data)
        return self.profiles[user_id].model_copy(deep=True)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(normalize_embedding(a), normalize_embedding(b), strict=True))


class FakeVectorStore:
    """List-backed ``VectorStore`` using exact cosine similarity."""

    def __init__(self) -> None:
        self.points: dict[str, dict] = {}
        self.fail = False

    def _matches(self, point: dict, filter_dict: dict | None) -> bool:
        return all(point["metadata"].get(k) == v for k, v in (filter_dict or {}).items())

    def upsert(self, points: list[dict]) -> int:
        for point in points:
            self.points[point["id"]] = point
        return len(points)

    def search(self, query_vector: list[float], limit: int = 5, filter_dict: dict | None = None) -> list[dict]:
        if self.fail:
            raise ConnectionError("vector store is down")
        hits = [{"id": p["id"], "text": p["text"], "score": _cosine(query_vector, p["vector"]), "metadata": p["metadata"]} for p in self.points.values() if self._matches(p, filter_dict)]
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:limit]

    def delete(self, filter_dict: dict | None = None, ids: list[str] | None = None) -> None:
        for doc_id in list(self.points):
            point = self.points[doc_id]
            if (ids is None or doc_id in ids) and self._matches(point, filter_dict):
                del self.points[doc_id]

    def get(self, doc_id: str) -> dict | None:
        point = self.points.get(doc_id)
        return {"id": point["id"], "text": point["text"], "score": 1.0, "metadata": point["metadata"]} if point else None

    def scroll(self, filter_dict: dict | None = None, limit: int = 20, offset: int = 0) -> list[dict]:
        rows = [self.get(doc_id) for doc_id, p in self.points.items() if self._matches(p, filter_dict)]
        return rows[offset:offset + limit]

    def count(self, filter_dict: dict | None = None) -> int:
        return sum(1 for p in self.points.values() if self._matches(p, filter_dict))


def text_vector(text: str, dims: int = 8) -> list[float]:
    """Deterministic bag-of-characters vector."""
    vector = [0.0] * dims
    for ch in text.lower():
        vector[ord(ch) % dims] += 1.0
    return vector


class FakeEmbedder:
    """Counts calls; vectors are deliberately not unit length."""

    def __init__(self, cache_namespace: str = "fake:default", dims: int = 8) -> None:
        self.cache_namespace = cache_namespace
        self.dims = dims
        self.calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.fail = False

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise EmbeddingError("embedding service is down")
        self.calls.append(text)
        return text_vector(text, self.dims)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if self.fail:
            raise EmbeddingError("embedding service is down")
        self.batch_calls.append(list(texts))
        return [text_vector(t, self.dims) for t in texts]


class FakeLLM:
    """Scriptable ``LLMBackend``; records prompts and whether the stream was closed."""

    def __init__(self, reply: str = "Hi there", chunks: Sequence[str] = ("Hi", " there")) -> None:
        self.reply = reply
        self.chunks = list(chunks)
        self.prompts: list[list[ConversationTurn]] = []
        self.fail_after: int | None = None
        self.delay = 0.0
        self.stream_closed = False
        self.chunks_produced = 0

    async def generate(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> str:
        self.prompts.append(list(turns))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None:
            raise GenerationError("model overloaded")
        return self.reply

    async def generate_stream(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> AsyncIterator[str]:
        self.prompts.append(list(turns))
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise GenerationError("model overloaded")
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.chunks_produced += 1
                yield chunk
        finally:
            self.stream_closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def user_store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_embedder() -> type[FakeEmbedder]:
    return FakeEmbedder


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def cache() -> EmbeddingCache:
    return EmbeddingCache(max_size=100, ttl_seconds=3600)


@pytest.fixture
def retrieval(embedder: FakeEmbedder, vector_store: FakeVectorStore, cache: EmbeddingCache) -> RetrievalCoordinator:
    return RetrievalCoordinator(embedder, vector_store, cache)


@pytest.fixture
def orchestrator(user_store: FakeUserStore, retrieval: RetrievalCoordinator, llm: FakeLLM) -> ChatOrchestrator:
    trimmer = HistoryTrimmer(max_history_tokens=8000, max_messages=20, retention_hours=24)
    return ChatOrchestrator(user_store, retrieval, lambda provider: llm, trimmer=trimmer, generation_timeout=5.0)


@pytest.fixture
def gateway(orchestrator: ChatOrchestrator, retrieval: RetrievalCoordinator, user_store: FakeUserStore, embedder: FakeEmbedder, cache: EmbeddingCache) -> PersonaGateway:
    return PersonaGateway(orchestrator, retrieval, user_store, lambda provider, config: embedder, cache)
