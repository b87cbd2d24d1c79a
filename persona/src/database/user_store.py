"""
Persona - Profile Store
=========================
``UserStore`` protocol and its MongoDB implementation via ``motor``.

Collection schema (``settings.PROFILE_COLLECTION``)::

    {
        "user_id": str,                      # unique
        "preferences": {...},
        "personal_info": {...},
        "transcript": [{"role", "content", "timestamp"}, ...],
        "llm_provider": "gemini" | "gpt" | "ollama",
        "llm_config": {"model", "temperature", "maxTokens"},
        "embedding_provider": "gemini" | "fastapi",
        "embedding_config": {...},
        "created_at": datetime,
        "updated_at": datetime
    }

Exactly one profile exists per user: ``get_or_create_ai_profile`` is an
atomic ``find_one_and_update(..., upsert=True)`` with ``$setOnInsert``
defaults, so two concurrent first requests cannot create duplicates.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import motor.motor_asyncio
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from persona.config.settings import settings
from persona.src.core.errors import PersistenceError
from persona.src.core.models import ConversationTurn, UserAIProfile, utcnow
from persona.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class UserStore(Protocol):
    async def get_or_create_ai_profile(self, user_id: str) -> UserAIProfile: ...

    async def get_profile(self, user_id: str) -> UserAIProfile | None: ...

    async def save_transcript(self, user_id: str, transcript: list[ConversationTurn]) -> None: ...

    async def update_profile(self, user_id: str, fields: dict[str, Any]) -> UserAIProfile: ...


# ── Singleton MongoDB Client ───────────────────────────────────────────
_mongo_client: motor.motor_asyncio.AsyncIOMotorClient | None = None


def _get_mongo_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client."""
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_URI.get_secret_value())
        logger.info("MongoDB async client created (singleton).")
    return _mongo_client


def _default_profile_document(user_id: str) -> dict[str, Any]:
    profile = UserAIProfile(user_id=user_id)
    doc = profile.model_dump(by_alias=True, exclude={"user_id", "created_at", "updated_at"})
    doc["created_at"] = utcnow()
    return doc


def _turns_to_documents(transcript: list[ConversationTurn]) -> list[dict[str, Any]]:
    return [turn.model_dump() for turn in transcript]


class MongoUserStore:
    """
    Async profile store backed by MongoDB.

    Every query filters by ``user_id``, so one user can never read or
    overwrite another's profile.

    Parameters
    ----------
    collection
        Optional pre-built collection (tests inject a fake here).  When
        omitted the shared client is used with ``settings.MONGO_DB_NAME``
        and ``settings.PROFILE_COLLECTION``.
    """

    __slots__ = ("_collection",)

    def __init__(self, collection: Any | None = None) -> None:
        if collection is None:
            client = _get_mongo_client()
            collection = client[settings.MONGO_DB_NAME][settings.PROFILE_COLLECTION]
        self._collection = collection


    async def ensure_indexes(self) -> None:
        await self._collection.create_index("user_id", unique=True)


    async def get_or_create_ai_profile(self, user_id: str) -> UserAIProfile:
        """Load the profile for *user_id*, creating it with defaults on first use."""
        try:
            doc = await self._collection.find_one_and_update({"user_id": user_id}, {"$setOnInsert": _default_profile_document(user_id), "$set": {"updated_at": utcnow()}}, upsert=True, return_document=ReturnDocument.AFTER)
        except PyMongoError as exc:
            logger.exception("[PROFILE] Load failed for user '%s'.", user_id)
            raise PersistenceError(f"Could not load profile for '{user_id}': {exc}") from exc
        return UserAIProfile.model_validate(doc)


    async def get_profile(self, user_id: str) -> UserAIProfile | None:
        doc = await self._collection.find_one({"user_id": user_id})
        return UserAIProfile.model_validate(doc) if doc is not None else None


    async def save_transcript(self, user_id: str, transcript: list[ConversationTurn]) -> None:
        """Overwrite the stored transcript (last write wins)."""
        try:
            await self._collection.update_one({"user_id": user_id}, {"$set": {"transcript": _turns_to_documents(transcript), "updated_at": utcnow()}})
        except PyMongoError as exc:
            raise PersistenceError(f"Could not save transcript for '{user_id}': {exc}") from exc
        logger.debug("[PROFILE] Transcript saved for '%s' (%d turns).", user_id, len(transcript))


    async def update_profile(self, user_id: str, fields: dict[str, Any]) -> UserAIProfile:
        """``$set`` the given top-level *fields* and return the updated profile."""
        try:
            doc = await self._collection.find_one_and_update({"user_id": user_id}, {"$set": {**fields, "updated_at": utcnow()}}, return_document=ReturnDocument.AFTER)
        except PyMongoError as exc:
            raise PersistenceError(f"Could not update profile for '{user_id}': {exc}") from exc
        if doc is None:
            return await self.get_or_create_ai_profile(user_id)
        logger.info("[PROFILE] Updated %s for '%s'.", sorted(fields), user_id)
        return UserAIProfile.model_validate(doc)
