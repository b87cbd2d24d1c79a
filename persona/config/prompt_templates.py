"""
Persona - Prompt Templates
============================
All prompt text lives here so it can be reviewed and versioned
independently of the orchestration logic.

Exports
-------
SYSTEM_PROMPT_BASE, PERSONAL_INFO_HEADER, PREFERENCES_HEADER,
CONTEXT_PREFIX, CONTEXT_SEPARATOR, DEBUG_RESPONSE, DEBUG_STREAM_CHUNKS.
"""

# ══════════════════════════════════════════════════════════════════════
#  SYSTEM PROMPT
# ══════════════════════════════════════════════════════════════════════
# Synthesised fresh on every request from the profile; never persisted.

SYSTEM_PROMPT_BASE: str = "You are a helpful AI assistant personalized for this user.\n\n"

PERSONAL_INFO_HEADER: str = "User Information:\n"

PREFERENCES_HEADER: str = "User Preferences:\n"

PROFILE_LINE: str = "- {key}: {value}\n"


# ══════════════════════════════════════════════════════════════════════
#  RETRIEVED / CALLER CONTEXT
# ══════════════════════════════════════════════════════════════════════

CONTEXT_PREFIX: str = "Relevant context:\n"

CONTEXT_SEPARATOR: str = "\n\n"


# ══════════════════════════════════════════════════════════════════════
#  DEBUG BACKEND
# ══════════════════════════════════════════════════════════════════════

DEBUG_RESPONSE: str = (
    "This is a debug response. The chat endpoint is working correctly. "
    "Debug mode is enabled via STREAM_DEBUG_MODE env variable. "
    "No actual LLM API calls are made in debug mode. "
    "Perfect for development and testing!"
)

DEBUG_STREAM_CHUNKS: tuple[str, ...] = (
    "This is a debug response. ",
    "Streaming is working correctly. ",
    "The SSE connection is established. ",
    "Each chunk appears with a small delay. ",
    "You can test the frontend streaming UI with this. ",
    "Debug mode is enabled via STREAM_DEBUG_MODE env variable. ",
    "This helps you verify the streaming functionality. ",
    "No actual LLM API calls are made in debug mode. ",
    "Perfect for development and testing! ",
)
