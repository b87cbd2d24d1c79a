"""
Persona - Conversation History Trimming
=========================================
Keeps a user's transcript bounded before it is fed to the LLM and
before it is persisted.

``HistoryTrimmer.trim`` applies three stages in a fixed order, each on
the output of the previous one:

    1. **Age filter**: drop turns older than ``now - retention``.
       Turns without a timestamp are kept.
    2. **Count cap**: keep the last ``max_messages`` turns.
    3. **Token budget**: walk newest → oldest summing
       ``estimate(role) + estimate(content)`` and keep
       the contiguous newest suffix that fits.

The result is chronological and, for a fixed ``now``, deterministic.
Each stage is idempotent on its own output, so ``trim(trim(t)) == trim(t)``.

Usage:
    from persona.src.core.history import HistoryTrimmer
    trimmer = HistoryTrimmer()
    bounded = trimmer.trim(profile.transcript)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from persona.config.settings import settings
from persona.src.core.models import ConversationTurn, Transcript
from persona.src.utils.logger import get_logger
from persona.src.utils.text_utils import estimate_tokens, tokens_to_chars, truncate

logger = get_logger(__name__)

# needs_cleanup() fires once the transcript fills this share of the budget
_CLEANUP_THRESHOLD = 0.8


def _as_utc(ts: datetime) -> datetime:
    """Naive datetimes read back from MongoDB are UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def turn_tokens(turn: ConversationTurn) -> int:
    return estimate_tokens(turn.role) + estimate_tokens(turn.content)


class HistoryTrimmer:
    """
    Bounds a transcript by age, message count, and token budget.

    Parameters
    ----------
    max_history_tokens
        Token budget of the trimmed transcript (default 8000).
    max_messages
        Default count cap used by ``trim`` (default 20).
    retention_hours
        Default retention window used by ``trim`` (default 24).
    """

    __slots__ = ("max_history_tokens", "max_messages", "retention_hours")

    def __init__(self, max_history_tokens: int | None = None, max_messages: int | None = None, retention_hours: float | None = None) -> None:
        self.max_history_tokens: int = max_history_tokens if max_history_tokens is not None else settings.MAX_HISTORY_TOKENS
        self.max_messages: int = max_messages if max_messages is not None else settings.MAX_HISTORY_MESSAGES
        self.retention_hours: float = retention_hours if retention_hours is not None else settings.HISTORY_RETENTION_HOURS

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC API
    # ══════════════════════════════════════════════════════════════════

    def trim(self, transcript: Sequence[ConversationTurn], max_messages: int | None = None, retention_hours: float | None = None, now: datetime | None = None) -> Transcript:
        """
        Apply age → count → token-budget trimming.

        Parameters
        ----------
        transcript
            Chronological turns (oldest first).
        max_messages
            Override of the count cap.
        retention_hours
            Override of the retention window.
        now
            Reference instant for the age filter.  Defaults to the
            current UTC time; pass it explicitly for reproducible output.
        """
        max_messages = self.max_messages if max_messages is None else max_messages
        retention_hours = self.retention_hours if retention_hours is None else retention_hours

        trimmed = self.trim_by_age(transcript, retention_hours, now)
        trimmed = self.trim_to_last_n(trimmed, max_messages)
        trimmed = self.trim_to_token_budget(trimmed)

        if len(trimmed) != len(transcript):
            logger.debug("[HISTORY] Trimmed transcript %d → %d turn(s).", len(transcript), len(trimmed))
        return trimmed


    def needs_cleanup(self, transcript: Sequence[ConversationTurn]) -> bool:
        """
        True when the transcript's content volume exceeds 80 % of the
        character-equivalent of the token budget.
        """
        total_chars = sum(len(turn.content) for turn in transcript)
        return total_chars > tokens_to_chars(self.max_history_tokens) * _CLEANUP_THRESHOLD

    # ══════════════════════════════════════════════════════════════════
    #  STAGES
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def trim_by_age(transcript: Sequence[ConversationTurn], retention_hours: float, now: datetime | None = None) -> Transcript:
        """Drop every timestamped turn older than ``now - retention_hours``."""
        reference = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        cutoff = reference - timedelta(hours=retention_hours)
        return [turn for turn in transcript if turn.timestamp is None or _as_utc(turn.timestamp) >= cutoff]


    @staticmethod
    def trim_to_last_n(transcript: Sequence[ConversationTurn], count: int) -> Transcript:
        """Keep the chronological suffix of at most *count* turns."""
        if count <= 0:
            return []
        return list(transcript[-count:])


    def trim_to_token_budget(self, transcript: Sequence[ConversationTurn]) -> Transcript:
        """
        Keep the longest contiguous newest suffix whose estimated token
        total fits in ``max_history_tokens``.

        A turn skipped for size ends the walk; older turns are never
        considered after it, even if they would fit.
        """
        total = 0
        start = len(transcript)

        for index in range(len(transcript) - 1, -1, -1):
            cost = turn_tokens(transcript[index])
            if total + cost > self.max_history_tokens:
                break
            total += cost
            start = index

        return list(transcript[start:])

    # ══════════════════════════════════════════════════════════════════
    #  FORMATTING
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def total_tokens(transcript: Sequence[ConversationTurn]) -> int:
        return sum(turn_tokens(turn) for turn in transcript)


    @staticmethod
    def format_history(transcript: Sequence[ConversationTurn]) -> str:
        """Render a short, one-line-per-turn digest for debug logs."""
        lines: list[str] = []
        for turn in transcript:
            stamp = _as_utc(turn.timestamp).strftime("%H:%M:%S") if turn.timestamp else "unknown"
            lines.append(f"[{stamp}] {turn.role.upper()}: {truncate(turn.content, 100)}")
        return "\n".join(lines)


    def __repr__(self) -> str:
        return f"HistoryTrimmer(max_history_tokens={self.max_history_tokens}, max_messages={self.max_messages}, retention_hours={self.retention_hours})"
