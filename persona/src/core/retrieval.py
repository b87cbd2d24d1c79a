"""
Persona - Retrieval Coordinator
=================================
Retrieval-augmented context for the chat pipeline, plus the document
write path and management operations.

Read path::

    query ──► EmbeddingCache ──(miss)──► EmbeddingBackend.embed
                  │                            │
                  │◄──── normalize + set ──────┘
                  ▼
    VectorStore.search(vector, limit, {"user_id": user_id})
                  ▼
    [RetrievedDocument, ...]   (best first)

Every per-user search is filtered on ``user_id``; only
``search_documents(..., global_scope=True)`` drops the filter.

``retrieve`` never raises: an embedding or vector-store failure is
logged and an empty list returned, so chat proceeds without context.
``retrieve_strict`` runs the same pipeline but raises
``RetrievalUnavailable``.

LanceDB is synchronous, so store calls run in ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Sequence
from typing import Any

from persona.src.backends.embeddings import EmbeddingBackend
from persona.src.core.embedding_cache import EmbeddingCache
from persona.src.core.errors import PersistenceError, RetrievalUnavailable, ValidationError
from persona.src.core.models import RetrievedDocument, StoredDocument, utcnow
from persona.src.database.vector_store import Hit, VectorStore
from persona.src.utils.logger import get_logger
from persona.src.utils.text_utils import truncate
from persona.src.utils.vector_utils import normalize_embedding

logger = get_logger(__name__)

MAX_BATCH_SIZE = 100


def _to_document(hit: Hit) -> RetrievedDocument:
    return RetrievedDocument(id=str(hit["id"]), text=hit.get("text", ""), relevance_score=float(hit.get("score", 0.0)), metadata=hit.get("metadata") or {})


def _to_stored(hit: Hit) -> StoredDocument:
    return StoredDocument.model_construct(id=str(hit["id"]), text=hit.get("text", ""), metadata=hit.get("metadata") or {})


class RetrievalCoordinator:
    """
    Embeds queries (cache-checked) and searches the user's documents.

    Parameters
    ----------
    embedder
        Gateway-wide ``EmbeddingBackend`` for query and document vectors.
    vector_store
        Synchronous ``VectorStore`` (``LanceVectorStore`` in production).
    cache
        The shared ``EmbeddingCache`` owned by the composition root.
    """

    __slots__ = ("_embedder", "_store", "_cache")

    def __init__(self, embedder: EmbeddingBackend, vector_store: VectorStore, cache: EmbeddingCache) -> None:
        self._embedder = embedder
        self._store = vector_store
        self._cache = cache

    # ══════════════════════════════════════════════════════════════════
    #  READ PATH
    # ══════════════════════════════════════════════════════════════════

    async def embed_query(self, query: str) -> list[float]:
        """Return the normalized vector for *query*, computing it on a cache miss."""
        namespace = self._embedder.cache_namespace
        cached = self._cache.get(query, namespace)
        if cached is not None:
            logger.debug("[CACHE] Hit for query '%s'", truncate(query, 50))
            return cached

        vector = normalize_embedding(await self._embedder.embed(query))
        self._cache.set(query, vector, namespace)
        return vector


    async def retrieve(self, query: str, user_id: str, limit: int = 3) -> list[RetrievedDocument]:
        try:
            return await self.retrieve_strict(query, user_id, limit)
        except RetrievalUnavailable as exc:
            logger.warning("[RAG] Retrieval unavailable for user '%s', continuing without context: %s", user_id, exc)
            return []


    async def retrieve_strict(self, query: str, user_id: str, limit: int = 3) -> list[RetrievedDocument]:
        """
        Top-*limit* documents of *user_id* for *query*, best first.

        Raises
        ------
        RetrievalUnavailable
            If the embedding backend or the vector store fails.
        """
        return await self._search(query, limit, {"user_id": user_id})


    async def search_documents(self, query: str, user_id: str, limit: int = 5, global_scope: bool = False) -> list[RetrievedDocument]:
        """Like ``retrieve_strict``; ``global_scope=True`` searches every user's documents."""
        return await self._search(query, limit, None if global_scope else {"user_id": user_id})


    async def _search(self, query: str, limit: int, filter_dict: dict[str, str] | None) -> list[RetrievedDocument]:
        t_start = time.perf_counter()
        try:
            vector = await self.embed_query(query)
        except Exception as exc:
            raise RetrievalUnavailable(f"query embedding failed: {exc}") from exc

        try:
            hits = await asyncio.to_thread(self._store.search, vector, limit, filter_dict)
        except Exception as exc:
            raise RetrievalUnavailable(f"vector search failed: {exc}") from exc

        documents = sorted((_to_document(hit) for hit in hits), key=lambda d: d.relevance_score, reverse=True)
        logger.info("[RAG] %d document(s) retrieved in %.1fms (filter=%s)", len(documents), (time.perf_counter() - t_start) * 1000, filter_dict)
        return documents

    # ══════════════════════════════════════════════════════════════════
    #  WRITE PATH
    # ══════════════════════════════════════════════════════════════════

    async def store(self, text: str, user_id: str, doc_id: str | None = None, metadata: dict[str, Any] | None = None) -> str:
        """Embed and store a single document; returns its id."""
        ids = await self.store_batch([{"id": doc_id, "text": text, "metadata": metadata or {}}], user_id)
        return ids[0]


    async def store_batch(self, documents: Sequence[StoredDocument | dict[str, Any]], user_id: str) -> list[str]:
        """
        Embed and upsert up to ``MAX_BATCH_SIZE`` documents for *user_id*.

        ``user_id`` and a server-assigned ``created_at`` are written into
        each document's metadata.  Missing ids become
        ``<user_id>_<epoch ms>_<uuid4 hex>``, unique across batches and
        concurrent calls.

        Raises
        ------
        ValidationError
            Empty batch, more than ``MAX_BATCH_SIZE`` documents, or an
            empty text.
        EmbeddingError
            The embedding backend failed.
        PersistenceError
            The vector store rejected the upsert.
        """
        if not documents:
            raise ValidationError.single("documents", "At least one document is required")
        if len(documents) > MAX_BATCH_SIZE:
            raise ValidationError.single("documents", f"Maximum {MAX_BATCH_SIZE} documents per batch")

        try:
            docs = [doc if isinstance(doc, StoredDocument) else StoredDocument.model_validate(doc) for doc in documents]
        except ValueError as exc:
            raise ValidationError.single("documents", str(exc)) from exc

        vectors = await self._embedder.embed_batch([doc.text for doc in docs])

        stamp = int(time.time() * 1000)
        created_at = utcnow().isoformat()
        points: list[dict[str, Any]] = []
        for doc, vector in zip(docs, vectors, strict=True):
            points.append({"id": doc.id or f"{user_id}_{stamp}_{uuid.uuid4().hex}", "vector": vector, "text": doc.text, "metadata": {**doc.metadata, "user_id": user_id, "created_at": created_at}})

        try:
            await asyncio.to_thread(self._store.upsert, points)
        except Exception as exc:
            logger.exception("[STORE] Upsert of %d document(s) for '%s' failed.", len(points), user_id)
            raise PersistenceError(f"Could not store documents: {exc}") from exc

        logger.info("[STORE] Stored %d document(s) for user '%s'.", len(points), user_id)
        return [p["id"] for p in points]

    # ══════════════════════════════════════════════════════════════════
    #  DOCUMENT MANAGEMENT
    # ══════════════════════════════════════════════════════════════════

    async def get_document(self, doc_id: str) -> StoredDocument | None:
        hit = await asyncio.to_thread(self._store.get, doc_id)
        return _to_stored(hit) if hit else None


    async def list_documents(self, user_id: str, limit: int = 20, offset: int = 0) -> list[StoredDocument]:
        hits = await asyncio.to_thread(self._store.scroll, {"user_id": user_id}, limit, offset)
        return [_to_stored(hit) for hit in hits]


    async def count_documents(self, user_id: str | None = None) -> int:
        return await asyncio.to_thread(self._store.count, {"user_id": user_id} if user_id else None)


    async def delete_document(self, doc_id: str) -> None:
        await asyncio.to_thread(self._store.delete, None, [doc_id])
        logger.info("[STORE] Deleted document '%s'.", doc_id)


    async def delete_user_documents(self, user_id: str) -> None:
        await asyncio.to_thread(self._store.delete, {"user_id": user_id})
        logger.info("[STORE] Deleted all documents of user '%s'.", user_id)
