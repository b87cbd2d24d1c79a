"""Tests for MongoUserStore (against a fake collection) and LanceVectorStore."""

from __future__ import annotations

import copy

import pytest
from pymongo import ReturnDocument

from persona.src.core.models import ConversationTurn, utcnow
from persona.src.database.user_store import MongoUserStore
from persona.src.database.vector_store import LanceVectorStore, where_clause


class FakeCollection:
    """Just enough of motor's collection API for the profile store."""

    def __init__(self) -> None:
        self.docs: dict[str, dict] = {}
        self.calls: list[tuple[str, dict, dict]] = []

    async def find_one(self, query: dict) -> dict | None:
        doc = self.docs.get(query["user_id"])
        return copy.deepcopy(doc) if doc else None

    async def find_one_and_update(self, query: dict, update: dict, upsert: bool = False, return_document: bool = ReturnDocument.BEFORE) -> dict | None:
        self.calls.append(("find_one_and_update", query, update))
        user_id = query["user_id"]
        if user_id not in self.docs:
            if not upsert:
                return None
            self.docs[user_id] = {"_id": f"oid-{user_id}", "user_id": user_id, **copy.deepcopy(update.get("$setOnInsert", {}))}
        self.docs[user_id].update(copy.deepcopy(update.get("$set", {})))
        return copy.deepcopy(self.docs[user_id])

    async def update_one(self, query: dict, update: dict) -> None:
        self.calls.append(("update_one", query, update))
        if query["user_id"] in self.docs:
            self.docs[query["user_id"]].update(copy.deepcopy(update["$set"]))


# ---------------------------------------------------------------------------
# MongoUserStore
# ---------------------------------------------------------------------------

class TestMongoUserStore:

    @pytest.mark.asyncio
    async def test_profile_created_once_with_defaults(self):
        collection = FakeCollection()
        store = MongoUserStore(collection)

        first = await store.get_or_create_ai_profile("alice")
        second = await store.get_or_create_ai_profile("alice")

        assert len(collection.docs) == 1
        assert first.llm_provider == "gemini"
        assert first.llm_config.max_tokens == 2048
        assert collection.docs["alice"]["llm_config"]["maxTokens"] == 2048
        assert second.created_at == first.created_at
        assert collection.calls[0][2]["$setOnInsert"]["transcript"] == []

    @pytest.mark.asyncio
    async def test_save_transcript_round_trips(self):
        collection = FakeCollection()
        store = MongoUserStore(collection)
        await store.get_or_create_ai_profile("alice")

        now = utcnow()
        await store.save_transcript("alice", [ConversationTurn(role="user", content="hi", timestamp=now)])

        profile = await store.get_profile("alice")
        assert profile.transcript == [ConversationTurn(role="user", content="hi", timestamp=now)]

    @pytest.mark.asyncio
    async def test_update_profile(self):
        collection = FakeCollection()
        store = MongoUserStore(collection)
        await store.get_or_create_ai_profile("alice")

        profile = await store.update_profile("alice", {"llm_provider": "gpt", "preferences": {"tone": "dry"}})

        assert profile.llm_provider == "gpt"
        assert profile.preferences == {"tone": "dry"}

    @pytest.mark.asyncio
    async def test_missing_profile(self):
        assert await MongoUserStore(FakeCollection()).get_profile("ghost") is None


# ---------------------------------------------------------------------------
# LanceVectorStore
# ---------------------------------------------------------------------------

class TestWhereClause:

    def test_user_filter_is_quoted(self):
        assert where_clause({"user_id": "o'brien"}) == "user_id = 'o''brien'"

    def test_ids_and_filter(self):
        assert where_clause({"user_id": "a"}, ["1", "2"]) == "user_id = 'a' AND id IN ('1', '2')"

    def test_empty(self):
        assert where_clause() is None

    def test_rejects_unknown_columns(self):
        with pytest.raises(ValueError):
            where_clause({"text": "anything"})


class TestLanceVectorStore:

    @pytest.fixture
    def store(self, tmp_path) -> LanceVectorStore:
        return LanceVectorStore(db_path=str(tmp_path / "lancedb"), table_name="docs", dimension=3)

    def _point(self, doc_id: str, vector: list[float], user_id: str) -> dict:
        return {"id": doc_id, "vector": vector, "text": f"text of {doc_id}", "metadata": {"user_id": user_id, "created_at": "2026-01-01T00:00:00+00:00"}}

    def test_upsert_search_and_scope(self, store):
        store.upsert([self._point("a1", [1.0, 0.0, 0.0], "alice"), self._point("a2", [0.7, 0.7, 0.0], "alice"), self._point("b1", [1.0, 0.0, 0.0], "bob")])

        hits = store.search([1.0, 0.0, 0.0], limit=5, filter_dict={"user_id": "alice"})

        assert [h["id"] for h in hits] == ["a1", "a2"]
        assert hits[0]["score"] == pytest.approx(1.0, abs=1e-5)
        assert hits[0]["metadata"]["user_id"] == "alice"

    def test_upsert_replaces_by_id(self, store):
        store.upsert([self._point("a1", [1.0, 0.0, 0.0], "alice")])
        replacement = self._point("a1", [0.0, 1.0, 0.0], "alice")
        replacement["text"] = "updated"
        store.upsert([replacement])

        assert store.count() == 1
        assert store.get("a1")["text"] == "updated"

    def test_count_scroll_delete(self, store):
        store.upsert([self._point("a1", [1.0, 0.0, 0.0], "alice"), self._point("a2", [0.0, 1.0, 0.0], "alice"), self._point("b1", [0.0, 0.0, 1.0], "bob")])

        assert store.count({"user_id": "alice"}) == 2
        assert len(store.scroll({"user_id": "alice"}, limit=1, offset=1)) == 1

        store.delete(ids=["a1"])
        assert store.get("a1") is None
        store.delete({"user_id": "alice"})
        assert store.count() == 1

    def test_rejects_wrong_dimension_and_unbounded_delete(self, store):
        with pytest.raises(ValueError):
            store.upsert([self._point("x", [1.0, 0.0], "alice")])
        with pytest.raises(ValueError):
            store.delete()
