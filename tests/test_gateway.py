"""Tests for PersonaGateway: embeddings, settings, history and documents."""

from __future__ import annotations

import math

import pytest

from persona.src.core.errors import ValidationError
from persona.src.core.gateway import PersonaGateway
from persona.src.core.models import ConversationTurn, UserAIProfile
from persona.src.utils.vector_utils import magnitude


# ---------------------------------------------------------------------------
# embed()
# ---------------------------------------------------------------------------

class TestEmbed:

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, gateway, embedder):
        first = await gateway.embed("alice", text="same text")
        second = await gateway.embed("alice", text="same text")

        assert embedder.calls == ["same text"]
        assert first.cached is False
        assert second.cached is True
        assert second.embedding == first.embedding
        assert math.isclose(magnitude(first.embedding), 1.0)

    @pytest.mark.asyncio
    async def test_cache_bypass(self, gateway, embedder):
        await gateway.embed("alice", text="same text", use_cache=False)
        await gateway.embed("alice", text="same text", use_cache=False)
        assert len(embedder.calls) == 2
        assert len(gateway.cache) == 0

    @pytest.mark.asyncio
    async def test_batch_only_embeds_misses(self, gateway, embedder):
        await gateway.embed("alice", text="known")

        result = await gateway.embed("alice", texts=["known", "new one", "new two"])

        assert embedder.batch_calls == [["new one", "new two"]]
        assert result.count == 3
        assert result.cached is False
        assert all(math.isclose(magnitude(v), 1.0) for v in result.embeddings)

        again = await gateway.embed("alice", texts=["known", "new one"])
        assert again.cached is True
        assert len(embedder.batch_calls) == 1

    @pytest.mark.asyncio
    async def test_other_provider_vectors_never_reach_retrieval(self, orchestrator, retrieval, user_store, embedder, cache, make_embedder):
        fastapi_embedder = make_embedder(cache_namespace="fastapi:http://embedder:default", dims=3)
        gateway = PersonaGateway(orchestrator, retrieval, user_store, lambda provider, config: fastapi_embedder if provider == "fastapi" else embedder, cache)
        user_store.profiles["bob"] = UserAIProfile(user_id="bob", embedding_provider="fastapi")

        result = await gateway.embed("bob", text="hello")
        vector = await retrieval.embed_query("hello")

        assert len(result.embedding) == 3
        assert len(vector) == 8
        assert embedder.calls == ["hello"]
        assert len(cache) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{}, {"text": "a", "texts": ["b"]}, {"text": ""}, {"text": "x" * 10_001}, {"texts": []}, {"texts": ["t"] * 101}])
    async def test_invalid_input(self, gateway, embedder, user_store, kwargs):
        with pytest.raises(ValidationError):
            await gateway.embed("alice", **kwargs)
        assert embedder.calls == []
        assert user_store.profiles == {}


# ---------------------------------------------------------------------------
# Settings & history
# ---------------------------------------------------------------------------

class TestSettings:

    @pytest.mark.asyncio
    async def test_defaults(self, gateway):
        view = await gateway.get_settings("alice")
        assert view["llm_provider"] == "gemini"
        assert view["llm_config"] == {"model": "gemini-2.5-flash", "temperature": 0.7, "max_tokens": 2048}
        assert view["embedding_provider"] == "gemini"
        assert "transcript" not in view

    @pytest.mark.asyncio
    async def test_update_merges_llm_config(self, gateway, user_store):
        view = await gateway.update_settings("alice", llm_provider="ollama", llm_config={"model": "llama3", "maxTokens": 512}, preferences={"tone": "casual"})

        assert view["llm_provider"] == "ollama"
        assert view["llm_config"]["model"] == "llama3"
        assert view["llm_config"]["max_tokens"] == 512
        assert view["llm_config"]["temperature"] == 0.7
        assert user_store.profiles["alice"].preferences == {"tone": "casual"}

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, gateway):
        with pytest.raises(ValidationError) as excinfo:
            await gateway.update_settings("alice", transcript=[])
        assert excinfo.value.errors[0]["field"] == "transcript"

    @pytest.mark.asyncio
    async def test_invalid_value_rejected(self, gateway, user_store):
        with pytest.raises(ValidationError):
            await gateway.update_settings("alice", llm_provider="claude")
        with pytest.raises(ValidationError):
            await gateway.update_settings("alice", llm_config={"temperature": 5})
        assert user_store.profiles["alice"].llm_provider == "gemini"

    @pytest.mark.asyncio
    async def test_clear_history(self, gateway, user_store):
        await gateway.chat("alice", "Hello", auto_retrieve=False)
        assert user_store.profiles["alice"].transcript

        await gateway.clear_history("alice")

        assert user_store.profiles["alice"].transcript == []


# ---------------------------------------------------------------------------
# Chat & documents delegate
# ---------------------------------------------------------------------------

class TestDelegation:

    @pytest.mark.asyncio
    async def test_chat_stream_events_render_as_sse(self, gateway):
        frames = [event.to_sse() async for event in gateway.chat_stream("alice", "Hello", auto_retrieve=False)]
        assert frames == ['data: {"chunk": "Hi"}\n\n', 'data: {"chunk": " there"}\n\n', 'data: {"done": true}\n\n']

    @pytest.mark.asyncio
    async def test_document_operations(self, gateway, user_store):
        doc_id = await gateway.store_document("alice", "remember the milk")
        await gateway.store_documents("alice", [{"text": "buy eggs"}, {"text": "call mom", "metadata": {"priority": "high"}}])

        hits = await gateway.search_documents("alice", "remember the milk", limit=1)
        assert hits[0].id == doc_id
        assert await gateway.count_documents("alice") == 3
        assert (await gateway.get_document(doc_id)).text == "remember the milk"
        assert len(await gateway.list_documents("alice")) == 3

        await gateway.delete_document(doc_id)
        await gateway.delete_user_documents("alice")
        assert await gateway.count_documents("alice") == 0

    @pytest.mark.asyncio
    async def test_retrieved_context_reaches_model(self, gateway, llm):
        await gateway.store_document("alice", "alice is vegetarian")
        await gateway.chat("alice", "suggest dinner")
        context_turns = [t for t in llm.prompts[0] if t.role == "system" and t.content.startswith("Relevant context:")]
        assert context_turns == [ConversationTurn(role="system", content="Relevant context:\nalice is vegetarian")]
