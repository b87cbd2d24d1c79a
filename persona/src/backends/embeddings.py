"""
Persona - Embedding Backends
==============================
Closed set of embedding variants behind the ``EmbeddingBackend`` protocol.

Variants
--------
``GeminiEmbeddingBackend``
    ``GoogleGenerativeAIEmbeddings`` from ``langchain-google-genai``.
``FastAPIEmbeddingBackend``
    A self-hosted embedding service reached over HTTP with ``httpx``::

        POST {url}/embed        {"text": ...,  "model": ...} → {"embedding": [...]}
        POST {url}/embed_batch  {"texts": [...], "model": ...} → {"embeddings": [[...], ...]}

Backends return raw vectors.  Each exposes ``cache_namespace``, which
identifies its embedding space in the shared ``EmbeddingCache``.
Normalisation and caching are the caller's concern (see ``RetrievalCoordinator`` and ``PersonaGateway.embed``).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

import httpx

from persona.config.settings import Settings, settings as default_settings
from persona.src.core.errors import BackendConfigurationError, EmbeddingError
from persona.src.core.models import EmbeddingProvider
from persona.src.utils.logger import get_logger

logger = get_logger(__name__)

_HTTP_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Anything that can produce embedding vectors from text."""

    cache_namespace: str

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


class GeminiEmbeddingBackend:
    """Gemini embeddings through LangChain's async ``aembed_*`` API."""

    __slots__ = ("_embedder", "model", "cache_namespace")

    def __init__(self, api_key: str | None, model: str) -> None:
        if not api_key:
            raise BackendConfigurationError("GOOGLE_API_KEY is required for gemini embeddings.")
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        self.model = model
        self.cache_namespace = f"gemini:{model}"
        self._embedder = GoogleGenerativeAIEmbeddings(model=model, google_api_key=api_key)
        logger.info("[EMBED] Gemini embedder initialised: %s", model)


    async def embed(self, text: str) -> list[float]:
        try:
            return list(await self._embedder.aembed_query(text))
        except Exception as exc:
            logger.error("[EMBED] Gemini embed failed: %s", exc)
            raise EmbeddingError(f"Gemini embedding failed: {exc}") from exc


    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            vectors = await self._embedder.aembed_documents(list(texts))
        except Exception as exc:
            logger.error("[EMBED] Gemini batch embed (%d texts) failed: %s", len(texts), exc)
            raise EmbeddingError(f"Gemini batch embedding failed: {exc}") from exc
        return [list(v) for v in vectors]


class FastAPIEmbeddingBackend:
    """
    HTTP client for a custom FastAPI embedding service.

    Parameters
    ----------
    base_url
        Service root, e.g. ``http://embedder:8000``.
    model
        Model name forwarded in every request body.
    client
        Optional pre-built ``httpx.AsyncClient`` (tests inject a
        ``MockTransport``-backed client here).
    """

    __slots__ = ("_client", "_base_url", "model", "cache_namespace")

    def __init__(self, base_url: str | None, model: str = "default", client: httpx.AsyncClient | None = None) -> None:
        if not base_url:
            raise BackendConfigurationError("FASTAPI_EMBEDDING_URL is required for fastapi embeddings.")
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.cache_namespace = f"fastapi:{self._base_url}:{model}"
        self._client = client or httpx.AsyncClient(timeout=_HTTP_TIMEOUT_SECONDS)


    async def _post(self, path: str, body: dict[str, Any], field: str) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("[EMBED] FastAPI call %s failed: %s", url, exc)
            raise EmbeddingError(f"FastAPI embedding failed: {exc}") from exc

        if not isinstance(data, dict) or field not in data:
            raise EmbeddingError(f"Invalid response from FastAPI embedding service: missing '{field}'.")
        return data[field]


    async def embed(self, text: str) -> list[float]:
        vector = await self._post("/embed", {"text": text, "model": self.model}, "embedding")
        return [float(v) for v in vector]


    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        vectors = await self._post("/embed_batch", {"texts": list(texts), "model": self.model}, "embeddings")
        if len(vectors) != len(texts):
            raise EmbeddingError(f"FastAPI returned {len(vectors)} vectors for {len(texts)} texts.")
        return [[float(v) for v in vector] for vector in vectors]


    async def aclose(self) -> None:
        await self._client.aclose()


class EmbeddingBackendFactory:
    """
    Resolve an embedding backend for a provider plus per-user overrides.

    ``embedding_config`` may carry ``model`` and, for ``fastapi``,
    ``fastapi_url``.  Backends are memoised per distinct configuration.
    """

    _BUILDERS: dict[str, Callable[[Settings, str, str], EmbeddingBackend]] = {
        EmbeddingProvider.GEMINI.value: lambda s, model, url: GeminiEmbeddingBackend(s.GOOGLE_API_KEY.get_secret_value() if s.GOOGLE_API_KEY else None, model),
        EmbeddingProvider.FASTAPI.value: lambda s, model, url: FastAPIEmbeddingBackend(url or None, model),
    }

    __slots__ = ("_settings", "_backends")

    def __init__(self, app_settings: Settings | None = None) -> None:
        self._settings = app_settings or default_settings
        self._backends: dict[tuple[str, str, str], EmbeddingBackend] = {}


    def __call__(self, provider: str, embedding_config: dict[str, Any] | None = None) -> EmbeddingBackend:
        provider = EmbeddingProvider(provider).value
        overrides = embedding_config or {}
        model = str(overrides.get("model") or (self._settings.EMBEDDING_MODEL if provider == EmbeddingProvider.GEMINI.value else "default"))
        url = str(overrides.get("fastapi_url") or overrides.get("fastapiUrl") or self._settings.FASTAPI_EMBEDDING_URL or "")

        key = (provider, model, url)
        if key not in self._backends:
            self._backends[key] = self._BUILDERS[provider](self._settings, model, url)
        return self._backends[key]

