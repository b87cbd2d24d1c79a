"""
Persona - Gateway Facade
==========================
Caller-facing operations and the composition root that wires every
collaborator together.

``PersonaGateway``
    ``chat`` / ``chat_stream``          → ``ChatOrchestrator``
    ``embed``                           → user's embedding provider + cache
    ``get_settings`` / ``update_settings`` / ``clear_history`` → ``UserStore``
    document operations                 → ``RetrievalCoordinator``

``build_gateway(app_settings)``
    Builds the production graph: ``MongoUserStore``, ``LanceVectorStore``,
    the LLM and embedding backend factories, and the *single*
    ``EmbeddingCache`` instance shared by ``embed`` and retrieval.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from persona.config.settings import Settings, settings as default_settings
from persona.src.backends.embeddings import EmbeddingBackend, EmbeddingBackendFactory
from persona.src.backends.llm import LLMBackendFactory
from persona.src.core.chat_engine import ChatOrchestrator
from persona.src.core.embedding_cache import EmbeddingCache
from persona.src.core.errors import ValidationError
from persona.src.core.history import HistoryTrimmer
from persona.src.core.models import SETTINGS_FIELDS, ChatResult, EmbeddingResult, LLMConfig, RetrievedDocument, StoredDocument, StreamEvent, UserAIProfile
from persona.src.core.retrieval import RetrievalCoordinator
from persona.src.core.validation import require, validate_embedding_batch, validate_embedding_text
from persona.src.database.user_store import MongoUserStore, UserStore
from persona.src.database.vector_store import LanceVectorStore
from persona.src.utils.logger import get_logger
from persona.src.utils.vector_utils import normalize_embedding, normalize_embeddings

logger = get_logger(__name__)

EmbedderFor = Callable[[str, dict[str, Any] | None], EmbeddingBackend]


class PersonaGateway:
    """
    Facade over the orchestrator, the retrieval coordinator and the
    profile store.

    Parameters
    ----------
    orchestrator
        Runs chat requests.
    retrieval
        Document search and write path.
    user_store
        Profile persistence.
    embedder_for
        ``(provider, embedding_config) -> EmbeddingBackend`` used by ``embed``.
    cache
        The shared ``EmbeddingCache``.
    """

    __slots__ = ("_orchestrator", "_retrieval", "_users", "_embedder_for", "cache")

    def __init__(self, orchestrator: ChatOrchestrator, retrieval: RetrievalCoordinator, user_store: UserStore, embedder_for: EmbedderFor, cache: EmbeddingCache) -> None:
        self._orchestrator = orchestrator
        self._retrieval = retrieval
        self._users = user_store
        self._embedder_for = embedder_for
        self.cache = cache

    # ── Chat ───────────────────────────────────────────────────────────

    async def chat(self, user_id: str, message: str, context: Sequence[str] | None = None, auto_retrieve: bool = True, retrieve_limit: int = 3) -> ChatResult:
        return await self._orchestrator.chat(user_id, message, context, auto_retrieve, retrieve_limit)


    def chat_stream(self, user_id: str, message: str, context: Sequence[str] | None = None, auto_retrieve: bool = True, retrieve_limit: int = 3) -> AsyncIterator[StreamEvent]:
        return self._orchestrator.chat_stream(user_id, message, context, auto_retrieve, retrieve_limit)

    # ── Embeddings ─────────────────────────────────────────────────────

    async def embed(self, user_id: str, text: str | None = None, texts: Sequence[str] | None = None, use_cache: bool = True) -> EmbeddingResult:
        """
        Embed one ``text`` or a batch of ``texts`` with the user's provider.

        Vectors are normalized before they are cached or returned.  With
        ``use_cache`` a single text is served from the cache when present;
        batch texts are looked up one by one and only the misses are sent
        to the backend.

        Raises
        ------
        ValidationError
            Neither or both of ``text`` / ``texts`` given, or size limits
            exceeded.
        EmbeddingError
            The backend failed.
        """
        if (text is None) == (texts is None):
            raise ValidationError.single("text", "text or texts array is required")

        require(validate_embedding_text(text) if text is not None else validate_embedding_batch(texts))
        profile = await self._users.get_or_create_ai_profile(user_id)
        embedder = self._embedder_for(profile.embedding_provider, profile.embedding_config)
        namespace = embedder.cache_namespace

        if text is not None:
            cached = self.cache.get(text, namespace) if use_cache else None
            if cached is not None:
                return EmbeddingResult(embedding=cached, cached=True)
            vector = normalize_embedding(await embedder.embed(text))
            if use_cache:
                self.cache.set(text, vector, namespace)
            return EmbeddingResult(embedding=vector, cached=False)

        texts = list(texts)
        vectors: list[list[float] | None] = [self.cache.get(t, namespace) if use_cache else None for t in texts]
        missing = [i for i, v in enumerate(vectors) if v is None]
        if missing:
            fresh = normalize_embeddings(await embedder.embed_batch([texts[i] for i in missing]))
            for i, vector in zip(missing, fresh, strict=True):
                vectors[i] = vector
                if use_cache:
                    self.cache.set(texts[i], vectors[i], namespace)
        logger.info("[EMBED] user=%s batch of %d text(s), %d from cache.", user_id, len(texts), len(texts) - len(missing))
        return EmbeddingResult(embeddings=vectors, count=len(vectors), cached=not missing)

    # ── Settings & history ─────────────────────────────────────────────

    async def get_settings(self, user_id: str) -> dict[str, Any]:
        profile = await self._users.get_or_create_ai_profile(user_id)
        return profile.settings_view()


    async def update_settings(self, user_id: str, **fields: Any) -> dict[str, Any]:
        """
        Update any of the six settings fields.

        Raises
        ------
        ValidationError
            Unknown field names or values the profile model rejects.
        """
        unknown = sorted(set(fields) - SETTINGS_FIELDS)
        if unknown:
            raise ValidationError([{"field": name, "message": f"'{name}' is not a settings field"} for name in unknown])

        current = await self._users.get_or_create_ai_profile(user_id)
        if "llm_config" in fields and fields["llm_config"] is not None:
            patch = dict(fields["llm_config"])
            if "maxTokens" in patch:
                patch["max_tokens"] = patch.pop("maxTokens")
            fields["llm_config"] = {**current.llm_config.model_dump(), **patch}
        try:
            candidate = UserAIProfile.model_validate({**current.model_dump(), **fields})
        except PydanticValidationError as exc:
            raise ValidationError([{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]) from exc

        changes: dict[str, Any] = {}
        for name in fields:
            value = getattr(candidate, name)
            changes[name] = value.model_dump(by_alias=True) if isinstance(value, LLMConfig) else value
        profile = await self._users.update_profile(user_id, changes)
        return profile.settings_view()


    async def clear_history(self, user_id: str) -> None:
        await self._users.get_or_create_ai_profile(user_id)
        await self._users.save_transcript(user_id, [])
        logger.info("[HISTORY] Cleared transcript for user '%s'.", user_id)

    # ── Documents ──────────────────────────────────────────────────────

    async def store_document(self, user_id: str, text: str, doc_id: str | None = None, metadata: dict[str, Any] | None = None) -> str:
        return await self._retrieval.store(text, user_id, doc_id, metadata)


    async def store_documents(self, user_id: str, documents: Sequence[StoredDocument | dict[str, Any]]) -> list[str]:
        return await self._retrieval.store_batch(documents, user_id)


    async def search_documents(self, user_id: str, query: str, limit: int = 5, global_scope: bool = False) -> list[RetrievedDocument]:
        return await self._retrieval.search_documents(query, user_id, limit, global_scope)


    async def get_document(self, doc_id: str) -> StoredDocument | None:
        return await self._retrieval.get_document(doc_id)


    async def list_documents(self, user_id: str, limit: int = 20, offset: int = 0) -> list[StoredDocument]:
        return await self._retrieval.list_documents(user_id, limit, offset)


    async def count_documents(self, user_id: str | None = None) -> int:
        return await self._retrieval.count_documents(user_id)


    async def delete_document(self, doc_id: str) -> None:
        await self._retrieval.delete_document(doc_id)


    async def delete_user_documents(self, user_id: str) -> None:
        await self._retrieval.delete_user_documents(user_id)


# ══════════════════════════════════════════════════════════════════════
#  COMPOSITION ROOT
# ══════════════════════════════════════════════════════════════════════


def build_gateway(app_settings: Settings | None = None, user_store: UserStore | None = None, vector_store: LanceVectorStore | None = None) -> PersonaGateway:
    """Wire the production object graph from *app_settings*."""
    app_settings = app_settings or default_settings

    cache = EmbeddingCache(max_size=app_settings.EMBED_CACHE_MAX_SIZE, ttl_seconds=app_settings.EMBED_CACHE_TTL_SECONDS)
    embedder_for = EmbeddingBackendFactory(app_settings)
    users = user_store or MongoUserStore()
    store = vector_store or LanceVectorStore(db_path=str(app_settings.LANCEDB_PATH), table_name=app_settings.LANCEDB_TABLE_NAME, dimension=app_settings.VECTOR_SIZE)

    retrieval = RetrievalCoordinator(embedder_for(app_settings.EMBEDDING_PROVIDER), store, cache)
    trimmer = HistoryTrimmer(max_history_tokens=app_settings.MAX_HISTORY_TOKENS, max_messages=app_settings.MAX_HISTORY_MESSAGES, retention_hours=app_settings.HISTORY_RETENTION_HOURS)
    orchestrator = ChatOrchestrator(users, retrieval, LLMBackendFactory(app_settings), trimmer=trimmer, generation_timeout=app_settings.GENERATION_TIMEOUT_SECONDS, prompt_history_limit=app_settings.PROMPT_HISTORY_LIMIT)

    logger.info("Persona gateway ready (embeddings=%s, cache=%d, store=%r).", app_settings.EMBEDDING_PROVIDER, app_settings.EMBED_CACHE_MAX_SIZE, store)
    return PersonaGateway(orchestrator, retrieval, users, embedder_for, cache)
