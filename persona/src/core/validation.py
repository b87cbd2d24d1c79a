"""
Persona - Input Validation
============================
Size and shape checks run before any side effect.  Each checker returns
a list of ``{"field", "message"}`` errors; ``require`` raises
``ValidationError`` when the combined list is non-empty.
"""

from __future__ import annotations

from typing import Any

from persona.src.core.errors import ValidationError

# ── Limits ─────────────────────────────────────────────────────────────
MAX_MESSAGE_CHARS = 10_000
MAX_CONTEXT_ITEMS = 10
MAX_CONTEXT_ITEM_CHARS = 5_000
MAX_EMBED_TEXT_CHARS = 10_000
MAX_EMBED_BATCH = 100
MAX_RETRIEVE_LIMIT = 20

FieldErrors = list[dict[str, str]]


def _error(field: str, message: str) -> dict[str, str]:
    return {"field": field, "message": message}


def _check_text(field: str, value: Any, max_chars: int) -> FieldErrors:
    if not isinstance(value, str):
        return [_error(field, f"{field} must be a string")]
    errors: FieldErrors = []
    if not value.strip():
        errors.append(_error(field, f"{field} cannot be empty"))
    if len(value) > max_chars:
        errors.append(_error(field, f"{field} too long (max {max_chars} chars, got {len(value)})"))
    return errors


def validate_message(message: Any) -> FieldErrors:
    return _check_text("message", message, MAX_MESSAGE_CHARS)


def validate_context(context: Any) -> FieldErrors:
    """``None`` is treated as an empty context."""
    if context is None:
        return []
    if not isinstance(context, (list, tuple)):
        return [_error("context", "context must be an array")]

    errors: FieldErrors = []
    if len(context) > MAX_CONTEXT_ITEMS:
        errors.append(_error("context", f"context array too large (max {MAX_CONTEXT_ITEMS} items, got {len(context)})"))
    for i, item in enumerate(context):
        if not isinstance(item, str):
            errors.append(_error(f"context[{i}]", "each context item must be a string"))
        elif len(item) > MAX_CONTEXT_ITEM_CHARS:
            errors.append(_error(f"context[{i}]", f"context item too large (max {MAX_CONTEXT_ITEM_CHARS} chars, got {len(item)})"))
    return errors


def validate_retrieve_limit(limit: Any) -> FieldErrors:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_RETRIEVE_LIMIT:
        return [_error("retrieve_limit", f"retrieve_limit must be an integer between 1 and {MAX_RETRIEVE_LIMIT}")]
    return []


def validate_embedding_text(text: Any) -> FieldErrors:
    return _check_text("text", text, MAX_EMBED_TEXT_CHARS)


def validate_embedding_batch(texts: Any) -> FieldErrors:
    if not isinstance(texts, (list, tuple)):
        return [_error("texts", "texts must be an array")]

    errors: FieldErrors = []
    if not texts:
        errors.append(_error("texts", "texts array cannot be empty"))
    if len(texts) > MAX_EMBED_BATCH:
        errors.append(_error("texts", f"too many texts (max {MAX_EMBED_BATCH}, got {len(texts)})"))
    for i, item in enumerate(texts):
        if not isinstance(item, str):
            errors.append(_error(f"texts[{i}]", "each text must be a string"))
        elif len(item) > MAX_EMBED_TEXT_CHARS:
            errors.append(_error(f"texts[{i}]", f"text too long (max {MAX_EMBED_TEXT_CHARS} chars, got {len(item)})"))
    return errors


def require(*checks: FieldErrors) -> None:
    """Raise one ``ValidationError`` carrying every collected field error."""
    errors = [error for check in checks for error in check]
    if errors:
        raise ValidationError(errors)
