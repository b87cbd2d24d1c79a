"""
Persona - LLM Backends
========================
Closed set of chat-model variants behind the ``LLMBackend`` protocol.

Variants
--------
``GeminiBackend``   Google Gemini via ``langchain-google-genai``.
``OpenAIBackend``   OpenAI chat models via ``langchain-openai`` (``gpt``).
``OllamaBackend``   Locally served models via ``langchain-ollama``.
``DebugBackend``    Canned text, no network.  Selected for *every*
                    provider when ``settings.STREAM_DEBUG_MODE`` is on.

Each variant implements both a whole-response ``generate`` and an
incremental ``generate_stream``.  Provider SDK errors are re-raised as
``GenerationError``; retries, if any, belong to the SDK clients.

Adding a provider means adding a variant and an entry in
``LLMBackendFactory._BUILDERS``; the orchestrator never changes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any, Protocol, runtime_checkable

from persona.config.prompt_templates import DEBUG_RESPONSE, DEBUG_STREAM_CHUNKS
from persona.config.settings import Settings, settings as default_settings
from persona.src.core.errors import BackendConfigurationError, GenerationError
from persona.src.core.models import ConversationTurn, LLMConfig, LLMProvider
from persona.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class LLMBackend(Protocol):
    """Anything that turns prompt turns into text."""

    async def generate(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> str: ...

    def generate_stream(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> AsyncIterator[str]: ...


def _content_text(content: Any) -> str:
    """Flatten a LangChain message ``content`` (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content) if content is not None else ""


# ══════════════════════════════════════════════════════════════════════
#  LANGCHAIN BASE
# ══════════════════════════════════════════════════════════════════════


class LangChainBackend:
    """Shared ``ainvoke`` / ``astream`` plumbing for LangChain chat models."""

    provider: str = "langchain"

    def _build_model(self, config: LLMConfig) -> Any:
        raise NotImplementedError


    def _to_messages(self, turns: Sequence[ConversationTurn]) -> list[Any]:
        from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

        messages: list[Any] = []
        for turn in turns:
            if turn.role == "system":
                messages.append(SystemMessage(content=turn.content))
            elif turn.role == "assistant":
                messages.append(AIMessage(content=turn.content))
            else:
                messages.append(HumanMessage(content=turn.content))
        return messages


    async def generate(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> str:
        model = self._build_model(config)
        try:
            response = await model.ainvoke(self._to_messages(turns))
        except Exception as exc:
            logger.error("[LLM] %s generate failed: %s", self.provider, exc)
            raise GenerationError(f"{self.provider} generation failed: {exc}") from exc
        return _content_text(getattr(response, "content", response))


    async def generate_stream(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> AsyncIterator[str]:
        model = self._build_model(config)
        try:
            async for chunk in model.astream(self._to_messages(turns)):
                text = _content_text(getattr(chunk, "content", chunk))
                if text:
                    yield text
        except Exception as exc:
            logger.error("[LLM] %s stream failed: %s", self.provider, exc)
            raise GenerationError(f"{self.provider} streaming failed: {exc}") from exc


# ══════════════════════════════════════════════════════════════════════
#  VARIANTS
# ══════════════════════════════════════════════════════════════════════


class GeminiBackend(LangChainBackend):
    """
    Gemini chat via ``ChatGoogleGenerativeAI``.

    Gemini accepts a single leading system instruction, so any later
    system turn (the retrieved-context block) is sent as a user turn.
    """

    provider = "gemini"

    __slots__ = ("_api_key",)

    def __init__(self, api_key: str | None) -> None:
        if not api_key:
            raise BackendConfigurationError("GOOGLE_API_KEY is required for the gemini provider.")
        self._api_key = api_key


    def _build_model(self, config: LLMConfig) -> Any:
        from langchain_google_genai import ChatGoogleGenerativeAI

        return ChatGoogleGenerativeAI(model=config.model, temperature=config.temperature, max_output_tokens=config.max_tokens, google_api_key=self._api_key)


    def _to_messages(self, turns: Sequence[ConversationTurn]) -> list[Any]:
        from langchain_core.messages import HumanMessage, SystemMessage

        messages = super()._to_messages(turns)
        for i in range(1, len(messages)):
            if isinstance(messages[i], SystemMessage):
                messages[i] = HumanMessage(content=messages[i].content)
        return messages


class OpenAIBackend(LangChainBackend):
    provider = "gpt"

    __slots__ = ("_api_key",)

    def __init__(self, api_key: str | None) -> None:
        if not api_key:
            raise BackendConfigurationError("OPENAI_API_KEY is required for the gpt provider.")
        self._api_key = api_key


    def _build_model(self, config: LLMConfig) -> Any:
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(model=config.model, temperature=config.temperature, max_tokens=config.max_tokens, api_key=self._api_key)


class OllamaBackend(LangChainBackend):
    provider = "ollama"

    __slots__ = ("_base_url",)

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url


    def _build_model(self, config: LLMConfig) -> Any:
        from langchain_ollama import ChatOllama

        return ChatOllama(model=config.model, temperature=config.temperature, num_predict=config.max_tokens, base_url=self._base_url)


class DebugBackend:
    """
    Canned responses for front-end development.  No API calls are made.

    ``generate_stream`` yields ``DEBUG_STREAM_CHUNKS`` with ``delay``
    seconds between chunks.
    """

    provider = "debug"

    __slots__ = ("_delay", "_chunks", "_response")

    def __init__(self, delay: float = 0.0, chunks: Sequence[str] = DEBUG_STREAM_CHUNKS, response: str = DEBUG_RESPONSE) -> None:
        self._delay = delay
        self._chunks = tuple(chunks)
        self._response = response


    async def generate(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> str:
        return self._response


    async def generate_stream(self, turns: Sequence[ConversationTurn], config: LLMConfig) -> AsyncIterator[str]:
        for chunk in self._chunks:
            yield chunk
            if self._delay:
                await asyncio.sleep(self._delay)


# ══════════════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════════════


def _secret(value: Any) -> str | None:
    return value.get_secret_value() if value is not None else None


class LLMBackendFactory:
    """
    Resolve the backend for a profile's ``llm_provider``.

    Instances are built on first use and reused for the process lifetime.
    """

    _BUILDERS: dict[str, Callable[[Settings], LLMBackend]] = {
        LLMProvider.GEMINI.value: lambda s: GeminiBackend(_secret(s.GOOGLE_API_KEY)),
        LLMProvider.GPT.value: lambda s: OpenAIBackend(_secret(s.OPENAI_API_KEY)),
        LLMProvider.OLLAMA.value: lambda s: OllamaBackend(s.OLLAMA_BASE_URL),
    }

    __slots__ = ("_settings", "_backends")

    def __init__(self, app_settings: Settings | None = None) -> None:
        self._settings = app_settings or default_settings
        self._backends: dict[str, LLMBackend] = {}


    def __call__(self, provider: str) -> LLMBackend:
        provider = LLMProvider(provider).value
        if provider not in self._backends:
            if self._settings.STREAM_DEBUG_MODE:
                logger.warning("[LLM] STREAM_DEBUG_MODE is on, '%s' served by DebugBackend.", provider)
                self._backends[provider] = DebugBackend(delay=self._settings.DEBUG_STREAM_DELAY_SECONDS)
            else:
                self._backends[provider] = self._BUILDERS[provider](self._settings)
                logger.info("[LLM] Backend initialised for provider '%s'.", provider)
        return self._backends[provider]
