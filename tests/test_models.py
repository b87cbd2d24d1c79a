"""Tests for domain models, text utilities and validation helpers."""

from __future__ import annotations

import pydantic
import pytest

from persona.src.core.errors import ValidationError
from persona.src.core.models import ConversationTurn, LLMConfig, StreamEvent, UserAIProfile
from persona.src.core.validation import require, validate_context, validate_embedding_batch, validate_message, validate_retrieve_limit
from persona.src.utils.text_utils import clean_text, estimate_tokens, metadata_from_filename, split_text, truncate


class TestModels:

    def test_turn_is_immutable(self):
        turn = ConversationTurn(role="user", content="hi")
        with pytest.raises(pydantic.ValidationError):
            turn.content = "changed"

    def test_unknown_role_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ConversationTurn(role="tool", content="hi")

    def test_llm_config_accepts_camel_case_alias(self):
        assert LLMConfig(maxTokens=100).max_tokens == 100
        assert LLMConfig(max_tokens=200).model_dump(by_alias=True)["maxTokens"] == 200

    def test_profile_defaults(self):
        profile = UserAIProfile(user_id="u")
        assert profile.llm_provider == "gemini"
        assert profile.llm_config.model == "gemini-2.5-flash"
        assert profile.transcript == []

    def test_stream_event_payloads(self):
        assert StreamEvent.of_chunk("héllo").to_sse() == 'data: {"chunk": "héllo"}\n\n'
        assert StreamEvent.done().payload() == {"done": True}
        assert StreamEvent.failed("boom").payload() == {"error": "boom"}
        assert StreamEvent.done().is_terminal
        assert not StreamEvent.of_chunk("x").is_terminal


class TestTextUtils:

    @pytest.mark.parametrize(("text", "tokens"), [("", 0), ("a", 1), ("abcd", 1), ("abcde", 2), ("x" * 32_000, 8000)])
    def test_estimate_tokens(self, text, tokens):
        assert estimate_tokens(text) == tokens

    def test_clean_text(self):
        assert clean_text("  hello\u200b   world \n\n\n\n next ") == "hello world\n\nnext"

    def test_truncate(self):
        assert truncate("short") == "short"
        assert truncate("x" * 120) == "x" * 100 + "..."

    def test_metadata_from_filename(self):
        assert metadata_from_filename("notes/travel_plans.txt") == {"source": "travel_plans.txt", "doc_type": "txt"}
        assert metadata_from_filename("README") == {"source": "README", "doc_type": "text"}

    def test_split_text_respects_limit_and_paragraphs(self):
        text = "\n\n".join(["alpha " * 30, "beta " * 30, "gamma " * 200])
        chunks = split_text(text, max_chars=400)
        assert all(len(c) <= 400 for c in chunks)
        assert chunks[0].startswith("alpha")
        assert "".join(chunks).count("gamma") == 200

    def test_split_text_short_and_empty(self):
        assert split_text("tiny") == ["tiny"]
        assert split_text("   ") == []


class TestValidation:

    def test_valid_input_passes(self):
        require(validate_message("hi"), validate_context(None), validate_retrieve_limit(3))

    def test_collects_every_error(self):
        with pytest.raises(ValidationError) as excinfo:
            require(validate_message(42), validate_context("not a list"), validate_retrieve_limit(21))
        assert [e["field"] for e in excinfo.value.errors] == ["message", "context", "retrieve_limit"]

    def test_context_item_type(self):
        assert validate_context(["ok", 3])[0]["field"] == "context[1]"

    def test_retrieve_limit_rejects_bool(self):
        assert validate_retrieve_limit(True)

    def test_embedding_batch(self):
        assert validate_embedding_batch(["a", "b"]) == []
        assert validate_embedding_batch("ab")[0]["message"] == "texts must be an array"
        assert validate_embedding_batch(["x" * 10_001])[0]["field"] == "texts[0]"

    def test_single_error_message(self):
        error = ValidationError.single("text", "text cannot be empty")
        assert str(error) == "text: text cannot be empty"
