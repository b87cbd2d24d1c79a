"""
Persona - Text Utilities
==========================
Stateless helpers for token estimation, text cleaning, chunking and
filename-based document metadata.

Token estimation is a fixed heuristic (``ceil(len / 4)``), not a real
tokenizer.
"""

from __future__ import annotations

import math
import re
import unicodedata
from pathlib import Path


CHARS_PER_TOKEN = 4

# Control characters (C0/C1) except \n, \r, \t, plus BOM, zero-width
# characters, soft hyphens and directional marks.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")


# ── Token Estimation ───────────────────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """
    Approximate the token cost of *text*.

    Returns ``ceil(len(text) / 4)``; an empty string costs 0 tokens.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    """Character-equivalent of a token budget under the same heuristic."""
    return tokens * CHARS_PER_TOKEN


# ── Cleaning ───────────────────────────────────────────────────────────

def clean_text(text: str) -> str:
    """
    Sanitise raw document text before it is embedded.

    Steps:
        1. Unicode NFC normalisation.
        2. Strip non-printable / zero-width characters.
        3. Collapse runs of horizontal whitespace into a single space,
           *preserving* newlines.
        4. Strip every line.
        5. Collapse 3+ consecutive blank lines to 2.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate(text: str, limit: int = 100) -> str:
    """Cut *text* to *limit* characters, marking the cut with ``...``."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# ── Document Metadata ──────────────────────────────────────────────────

def metadata_from_filename(filename: str) -> dict[str, str]:
    """
    Derive document metadata from a source filename.

    Examples::

        "notes/travel_plans.txt" → {"source": "travel_plans.txt", "doc_type": "txt"}
        "README"                 → {"source": "README", "doc_type": "text"}
    """
    path = Path(filename)
    doc_type = path.suffix.lower().lstrip(".") or "text"
    return {"source": path.name, "doc_type": doc_type}


# ── Chunking ───────────────────────────────────────────────────────────

_SEPARATORS = ("\n\n", "\n", ". ", " ")


def split_text(text: str, max_chars: int = 2000, separators: tuple[str, ...] = _SEPARATORS) -> list[str]:
    """
    Split *text* into chunks of at most *max_chars*.

    Tries each separator in order (paragraph, line, sentence, word) and
    greedily packs the pieces; falls back to a hard character cut.
    """
    text = text.strip()
    if len(text) <= max_chars:
        return [text] if text else []
    if not separators:
        return [text[i:i + max_chars].strip() for i in range(0, len(text), max_chars) if text[i:i + max_chars].strip()]

    sep, rest = separators[0], separators[1:]
    parts = [p.strip() for p in text.split(sep) if p.strip()]
    if len(parts) <= 1:
        return split_text(text, max_chars, rest)

    chunks: list[str] = []
    current = ""
    for part in parts:
        candidate = f"{current}{sep}{part}" if current else part
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            chunks.append(current.strip())
        if len(part) > max_chars:
            chunks.extend(split_text(part, max_chars, rest))
            current = ""
        else:
            current = part
    if current:
        chunks.append(current.strip())
    return chunks
