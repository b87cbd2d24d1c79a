"""
Persona - Error Taxonomy
==========================

``ValidationError``
    Bad input shape or size.  Always reported to the caller, never retried.
``RetrievalUnavailable``
    Embedding backend or vector store down during RAG.  Recovered by
    degrading to an empty context.
``GenerationError``
    LLM backend failure.  Raised in whole-response mode, turned into a
    terminal ``error`` event in streaming mode.
``EmbeddingError``
    Embedding backend failure outside the retrieval path (``embed``,
    ``store``).  Surfaced to the caller.
``PersistenceError``
    Transcript save failure.  Logged only; the response stands.
``BackendConfigurationError``
    A provider was selected but its API key / URL is missing.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for every error raised by the Persona core."""


class ValidationError(GatewayError):
    """
    Input rejected before any side effect.

    ``errors`` is a list of ``{"field": ..., "message": ...}`` dicts, one
    per violated rule.
    """

    def __init__(self, errors: list[dict[str, str]]) -> None:
        self.errors = errors
        super().__init__("; ".join(f"{e['field']}: {e['message']}" for e in errors))

    @classmethod
    def single(cls, field: str, message: str) -> ValidationError:
        return cls([{"field": field, "message": message}])


class RetrievalUnavailable(GatewayError):
    pass


class GenerationError(GatewayError):
    pass


class EmbeddingError(GatewayError):
    pass


class BackendConfigurationError(GenerationError, EmbeddingError):
    """Raised for LLM and embedding providers alike when a key or URL is missing."""


class PersistenceError(GatewayError):
    pass
