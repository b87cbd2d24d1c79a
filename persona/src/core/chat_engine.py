"""
Persona - Chat Orchestrator
=============================
Per-request pipeline that turns a user message into an LLM answer and
persists the resulting transcript exactly once.

``ChatOrchestrator``
    Runs one request through::

        Idle → ValidatingInput → LoadingProfile → Retrieving →
        PromptAssembled → Generating → Committing → Done
                                   └──────────────→ Failed(reason)

    The current state lives on a ``ChatRequestState`` and every
    transition is logged under ``[CHAT]``.

Prompt layout (regenerated for every request, never persisted)::

    [system]    profile system prompt (personal info + preferences)
    [history]   stored transcript, trimmed first when over 80 % of budget
    [system]    "Relevant context:\\n" + caller context + retrieved texts
    [user]      the new message

Failure policy:
  • ``ValidationError`` is raised before any side effect.
  • ``RetrievalUnavailable`` degrades to an empty document set.
  • Generation failures raise ``GenerationError`` (whole mode) or end
    the stream with one terminal ``error`` event (streaming mode).
    Nothing is committed.
  • A failed commit is logged as a persistence error; the caller still
    gets the answer.
  • A streaming consumer that stops iterating closes the backend stream
    and skips the commit.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from persona.config.prompt_templates import CONTEXT_PREFIX, CONTEXT_SEPARATOR, PERSONAL_INFO_HEADER, PREFERENCES_HEADER, PROFILE_LINE, SYSTEM_PROMPT_BASE
from persona.config.settings import settings
from persona.src.backends.llm import LLMBackend
from persona.src.core.errors import GenerationError, PersistenceError, RetrievalUnavailable, ValidationError
from persona.src.core.history import HistoryTrimmer
from persona.src.core.models import ChatResult, ConversationTurn, Role, StreamEvent, Transcript, UserAIProfile, utcnow
from persona.src.core.retrieval import RetrievalCoordinator
from persona.src.core.validation import require, validate_context, validate_message, validate_retrieve_limit
from persona.src.database.user_store import UserStore
from persona.src.utils.logger import get_logger
from persona.src.utils.text_utils import truncate

logger = get_logger(__name__)


class ChatState(str, Enum):
    IDLE = "idle"
    VALIDATING_INPUT = "validating_input"
    LOADING_PROFILE = "loading_profile"
    RETRIEVING = "retrieving"
    PROMPT_ASSEMBLED = "prompt_assembled"
    GENERATING = "generating"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class ChatRequestState:
    """Mutable bookkeeping for one chat request."""

    user_id: str
    streaming: bool = False
    state: ChatState = ChatState.IDLE
    reason: str | None = None
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

    def advance(self, state: ChatState) -> None:
        logger.debug("[CHAT] user=%s %s → %s (%.1fms)", self.user_id, self.state.value, state.value, self.elapsed_ms)
        self.state = state

    def fail(self, reason: str) -> None:
        logger.warning("[CHAT] user=%s failed in %s: %s", self.user_id, self.state.value, reason)
        self.state = ChatState.FAILED
        self.reason = reason


# ══════════════════════════════════════════════════════════════════════
#  PROMPT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════


def build_system_prompt(profile: UserAIProfile) -> str:
    """System prompt from ``personal_info`` and ``preferences``; empty sections are omitted."""
    prompt = SYSTEM_PROMPT_BASE
    for header, values in ((PERSONAL_INFO_HEADER, profile.personal_info), (PREFERENCES_HEADER, profile.preferences)):
        if values:
            prompt += header + "".join(PROFILE_LINE.format(key=k, value=v) for k, v in values.items()) + "\n"
    return prompt


def build_context_turn(context: Sequence[str], documents: Sequence[str]) -> ConversationTurn | None:
    items = [*context, *documents]
    if not items:
        return None
    return ConversationTurn(role=Role.SYSTEM, content=CONTEXT_PREFIX + CONTEXT_SEPARATOR.join(items))


@dataclass(slots=True)
class PreparedChat:
    profile: UserAIProfile
    message: str
    turns: list[ConversationTurn]


# ══════════════════════════════════════════════════════════════════════
#  ORCHESTRATOR
# ══════════════════════════════════════════════════════════════════════


class ChatOrchestrator:
    """
    Runs ``chat`` and ``chat_stream`` requests.

    Parameters
    ----------
    user_store
        Profile and transcript persistence.
    retrieval
        ``RetrievalCoordinator`` used when ``auto_retrieve`` is on.
    llm_for
        Callable mapping a provider name to an ``LLMBackend``
        (``LLMBackendFactory`` in production).
    trimmer
        ``HistoryTrimmer``; defaults to one built from settings.
    generation_timeout
        Upper bound in seconds on one generation.  Defaults to
        ``settings.GENERATION_TIMEOUT_SECONDS``.
    prompt_history_limit
        Optional cap on how many stored turns are sent to the model.
        ``None`` sends the whole (trimmed) transcript.
    """

    __slots__ = ("_users", "_retrieval", "_llm_for", "_trimmer", "_timeout", "_prompt_history_limit")

    def __init__(self, user_store: UserStore, retrieval: RetrievalCoordinator, llm_for: Callable[[str], LLMBackend], trimmer: HistoryTrimmer | None = None, generation_timeout: float | None = None, prompt_history_limit: int | None = None) -> None:
        self._users = user_store
        self._retrieval = retrieval
        self._llm_for = llm_for
        self._trimmer = trimmer or HistoryTrimmer()
        self._timeout = generation_timeout or settings.GENERATION_TIMEOUT_SECONDS
        self._prompt_history_limit = prompt_history_limit if prompt_history_limit is not None else settings.PROMPT_HISTORY_LIMIT


    async def chat(self, user_id: str, message: str, context: Sequence[str] | None = None, auto_retrieve: bool = True, retrieve_limit: int = 3) -> ChatResult:
        """
        Whole-response chat.

        Raises
        ------
        ValidationError
            Bad input; nothing was loaded or written.
        GenerationError
            The backend failed or exceeded the generation timeout.
        """
        request = ChatRequestState(user_id)
        prepared = await self._prepare(request, message, context, auto_retrieve, retrieve_limit)

        request.advance(ChatState.GENERATING)
        try:
            backend = self._llm_for(prepared.profile.llm_provider)
            response = await asyncio.wait_for(backend.generate(prepared.turns, prepared.profile.llm_config), self._timeout)
        except asyncio.TimeoutError as exc:
            request.fail("generation timed out")
            raise GenerationError(f"Generation exceeded {self._timeout:.0f}s") from exc
        except GenerationError as exc:
            request.fail(str(exc))
            raise
        except Exception as exc:
            request.fail(str(exc))
            raise GenerationError(str(exc)) from exc

        logger.info("[CHAT] user=%s generated %d chars in %.1fms", user_id, len(response), request.elapsed_ms)
        await self._commit(request, prepared, response)
        return ChatResult(response=response, message=prepared.message)


    async def chat_stream(self, user_id: str, message: str, context: Sequence[str] | None = None, auto_retrieve: bool = True, retrieve_limit: int = 3) -> AsyncIterator[StreamEvent]:
        """
        Streaming chat: ``chunk`` events in backend order, then exactly one
        terminal ``done`` or ``error`` event.

        ``ValidationError`` is raised on the first iteration, before any
        event is produced.
        """
        request = ChatRequestState(user_id, streaming=True)
        prepared = await self._prepare(request, message, context, auto_retrieve, retrieve_limit)

        request.advance(ChatState.GENERATING)
        parts: list[str] = []
        stream: AsyncIterator[str] | None = None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            backend = self._llm_for(prepared.profile.llm_provider)
            stream = backend.generate_stream(prepared.turns, prepared.profile.llm_config)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                try:
                    chunk = await asyncio.wait_for(anext(stream), remaining)
                except StopAsyncIteration:
                    break
                parts.append(chunk)
                yield StreamEvent.of_chunk(chunk)
        except (GeneratorExit, asyncio.CancelledError):
            request.fail(f"consumer went away after {len(parts)} chunk(s); commit skipped")
            raise
        except asyncio.TimeoutError:
            request.fail("generation timed out")
            yield StreamEvent.failed(f"Generation exceeded {self._timeout:.0f}s")
            return
        except Exception as exc:
            request.fail(str(exc))
            yield StreamEvent.failed(str(exc))
            return
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        response = "".join(parts)
        logger.info("[CHAT] user=%s streamed %d chunk(s), %d chars in %.1fms", user_id, len(parts), len(response), request.elapsed_ms)
        await self._commit(request, prepared, response)
        yield StreamEvent.done()

    # ══════════════════════════════════════════════════════════════════
    #  PIPELINE STAGES
    # ══════════════════════════════════════════════════════════════════

    async def _prepare(self, request: ChatRequestState, message: str, context: Sequence[str] | None, auto_retrieve: bool, retrieve_limit: int) -> PreparedChat:
        # ── Validate ──────────────────────────────────────────────────
        request.advance(ChatState.VALIDATING_INPUT)
        try:
            require(validate_message(message), validate_context(context), validate_retrieve_limit(retrieve_limit))
        except ValidationError as exc:
            request.fail(str(exc))
            raise
        context = list(context or [])

        # ── Load profile (created on first use) ───────────────────────
        request.advance(ChatState.LOADING_PROFILE)
        try:
            profile = await self._users.get_or_create_ai_profile(request.user_id)
        except PersistenceError as exc:
            request.fail(str(exc))
            raise

        # ── Retrieve ──────────────────────────────────────────────────
        documents: list[str] = []
        if auto_retrieve:
            request.advance(ChatState.RETRIEVING)
            try:
                documents = [doc.text for doc in await self._retrieval.retrieve_strict(message, request.user_id, retrieve_limit)]
            except RetrievalUnavailable as exc:
                logger.warning("[RAG] Continuing without retrieved context for user '%s': %s", request.user_id, exc)
            if documents:
                logger.info("[RAG] Retrieved %d document(s) for user '%s'", len(documents), request.user_id)

        # ── Assemble prompt ───────────────────────────────────────────
        history = self._history_for_prompt(profile.transcript, request.user_id)
        turns = [ConversationTurn(role=Role.SYSTEM, content=build_system_prompt(profile)), *history]
        context_turn = build_context_turn(context, documents)
        if context_turn is not None:
            turns.append(context_turn)
        turns.append(ConversationTurn(role=Role.USER, content=message))

        request.advance(ChatState.PROMPT_ASSEMBLED)
        logger.debug("[CHAT] Prompt for '%s': %d turn(s), %d history, query='%s'", request.user_id, len(turns), len(history), truncate(message, 50))
        return PreparedChat(profile=profile, message=message, turns=turns)


    def _history_for_prompt(self, transcript: Transcript, user_id: str) -> Transcript:
        history = list(transcript)
        if self._trimmer.needs_cleanup(history):
            history = self._trimmer.trim(history)
            logger.info("[HISTORY] Trimmed history for user '%s' to %d turn(s) before prompting.", user_id, len(history))
        if self._prompt_history_limit:
            history = history[-self._prompt_history_limit:]
        return history


    async def _commit(self, request: ChatRequestState, prepared: PreparedChat, response: str) -> None:
        """Append the exchange to the loaded transcript, trim, save once."""
        request.advance(ChatState.COMMITTING)
        now = utcnow()
        transcript = [*prepared.profile.transcript, ConversationTurn(role=Role.USER, content=prepared.message, timestamp=now), ConversationTurn(role=Role.ASSISTANT, content=response, timestamp=now)]
        transcript = self._trimmer.trim(transcript, now=now)

        try:
            await self._users.save_transcript(request.user_id, transcript)
        except Exception:
            logger.exception("[CHAT] PersistenceError: transcript for user '%s' was not saved; returning the response anyway.", request.user_id)
        else:
            logger.debug("[HISTORY] Committed %d turn(s) for user '%s'.", len(transcript), request.user_id)
        request.advance(ChatState.DONE)
