"""
Conversation store.

Owns every persisted record of the chat client: conversations, their
messages and the per-user provider configuration. Built on the SQLite
document store; callers deal in pydantic models, never raw documents.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from chatkeep.errors import ConversationNotFoundError
from chatkeep.models import Conversation, ConversationMetadata, Message, ProviderConfig
from chatkeep.models.conversation import DEFAULT_TITLE
from chatkeep.sqlite_db import SQLiteDatabase
from chatkeep.utils.encryption import decrypt_api_key, encrypt_api_key

logger = logging.getLogger(__name__)

_ASCENDING = 1
_DESCENDING = -1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """
    Async repository over the local database.

    Args:
        db: Connected SQLiteDatabase.
        encryption_key: Secret used to encrypt provider credentials at rest;
            defaults to the configured key.
    """

    def __init__(self, db: SQLiteDatabase, encryption_key: Optional[str] = None):
        self.db = db
        self._encryption_key = encryption_key

    # ============================================================
    # Conversations
    # ============================================================

    async def list_conversations(self, user_id: str, app_scope: str) -> List[Conversation]:
        """All conversations of a user within one app scope, newest first."""
        cursor = self.db.conversations.find(
            {"userId": user_id, "appScope": app_scope}
        ).sort("timestamp", _DESCENDING)
        return [Conversation.from_doc(doc) async for doc in cursor]

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self.db.conversations.find_one({"_id": conversation_id})
        return Conversation.from_doc(doc) if doc else None

    async def create_conversation(
        self,
        user_id: str,
        app_scope: str,
        title: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation with a fresh id and timestamp."""
        doc = {
            "userId": user_id,
            "appScope": app_scope,
            "title": title or DEFAULT_TITLE,
            "timestamp": _utcnow(),
        }
        result = await self.db.conversations.insert_one(doc)
        doc["_id"] = result.inserted_id
        logger.info(f"Created conversation {result.inserted_id} for user {user_id}")
        return Conversation.from_doc(doc)

    async def rename_conversation(self, conversation_id: str, new_title: str) -> None:
        """Replace the title only; silently does nothing for an unknown id."""
        result = await self.db.conversations.update_one(
            {"_id": conversation_id},
            {"$set": {"title": new_title}},
        )
        if not result.matched_count:
            logger.debug(f"Rename skipped, conversation {conversation_id} not found")

    async def set_conversation_metadata(
        self,
        conversation_id: str,
        summary: str,
        keywords: List[str],
    ) -> None:
        """Replace the derived metadata wholesale; no-op for an unknown id."""
        metadata = ConversationMetadata(summary=summary, keywords=list(keywords))
        await self.db.conversations.update_one(
            {"_id": conversation_id},
            {"$set": {"metadata": metadata.model_dump()}},
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and all of its messages atomically."""
        async with self.db.transaction() as session:
            removed = await self.db.messages.delete_many(
                {"conversationId": conversation_id}, session=session
            )
            await self.db.conversations.delete_many(
                {"_id": conversation_id}, session=session
            )
        logger.info(
            f"Deleted conversation {conversation_id} "
            f"with {removed.deleted_count} messages"
        )

    # ============================================================
    # Messages
    # ============================================================

    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Messages oldest first; insertion order breaks timestamp ties."""
        cursor = self.db.messages.find(
            {"conversationId": conversation_id}
        ).sort("timestamp", _ASCENDING)
        return [Message.from_doc(doc) async for doc in cursor]

    async def count_messages(self, conversation_id: str) -> int:
        return await self.db.messages.count_documents({"conversationId": conversation_id})

    async def get_last_message(self, conversation_id: str, session=None) -> Optional[Message]:
        doc = await self.db.messages.find_one(
            {"conversationId": conversation_id},
            sort=[("timestamp", _DESCENDING)],
            session=session,
        )
        return Message.from_doc(doc) if doc else None

    async def _next_timestamp(self, conversation_id: str, session=None) -> datetime:
        # Never earlier than the newest message, so a clock step backwards
        # cannot reorder the conversation.
        now = _utcnow()
        last = await self.get_last_message(conversation_id, session=session)
        if last and last.timestamp > now:
            return last.timestamp
        return now

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        app_scope: str,
        content: str,
        is_user: bool,
    ) -> Message:
        """Store a new message and return it with its id and timestamp.

        Raises:
            ConversationNotFoundError: the conversation does not exist (or
                was deleted while the caller was working).
        """
        async with self.db.transaction() as session:
            if await self.db.conversations.find_one({"_id": conversation_id}, session=session) is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            doc = {
                "conversationId": conversation_id,
                "userId": user_id,
                "appScope": app_scope,
                "content": content,
                "isUser": is_user,
                "timestamp": await self._next_timestamp(conversation_id, session=session),
            }
            result = await self.db.messages.insert_one(doc, session=session)
        doc["_id"] = result.inserted_id
        return Message.from_doc(doc)

    async def update_message_content(
        self, message_id: str, new_content: str
    ) -> Optional[Message]:
        """Replace a message's content and refresh its timestamp.

        Returns the updated message, or None when the id is unknown.
        """
        existing = await self.db.messages.find_one({"_id": message_id})
        if existing is None:
            logger.debug(f"Update skipped, message {message_id} not found")
            return None

        timestamp = await self._next_timestamp(existing["conversationId"])
        doc = await self.db.messages.find_one_and_update(
            {"_id": message_id},
            {"$set": {"content": new_content, "timestamp": timestamp}},
        )
        return Message.from_doc(doc) if doc else None

    # ============================================================
    # Provider configuration
    # ============================================================

    def _encrypt(self, secret: Optional[str]) -> str:
        return encrypt_api_key(secret, self._encryption_key)

    def _decrypt(self, user_id: str, stored: Optional[str]) -> Optional[str]:
        if not stored:
            return None
        try:
            return decrypt_api_key(stored, self._encryption_key) or None
        except ValueError:
            logger.warning(
                f"Stored credential for user {user_id} cannot be decrypted; "
                "treating it as unset"
            )
            return None

    def _to_config(self, doc: Dict) -> ProviderConfig:
        return ProviderConfig(
            id=str(doc["_id"]),
            user_id=doc["userId"],
            provider=doc.get("provider"),
            api_key=self._decrypt(doc["userId"], doc.get("apiKey")),
            base_url=doc.get("baseUrl") or None,
            updated_at=doc["timestamp"],
            retained_providers=sorted((doc.get("retained") or {}).keys()),
        )

    async def get_provider_config(self, user_id: str) -> Optional[ProviderConfig]:
        doc = await self.db.provider_settings.find_one({"userId": user_id})
        return self._to_config(doc) if doc else None

    async def save_provider_config(
        self,
        user_id: str,
        provider: Optional[str],
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> ProviderConfig:
        """Create or update the user's single configuration record.

        The id of an existing record is preserved. The credentials are also
        kept under the provider's name so a later switch back restores them.
        """
        encrypted = self._encrypt(api_key)
        fields = {
            "provider": provider,
            "apiKey": encrypted,
            "baseUrl": base_url or "",
            "timestamp": _utcnow(),
        }
        if provider:
            fields[f"retained.{provider}"] = {
                "apiKey": encrypted,
                "baseUrl": base_url or "",
            }

        doc = await self.db.provider_settings.find_one_and_update(
            {"userId": user_id}, {"$set": fields}
        )
        if doc is None:
            new_doc = {
                "userId": user_id,
                "provider": provider,
                "apiKey": encrypted,
                "baseUrl": base_url or "",
                "timestamp": fields["timestamp"],
                "retained": {provider: fields[f"retained.{provider}"]} if provider else {},
            }
            result = await self.db.provider_settings.insert_one(new_doc)
            new_doc["_id"] = result.inserted_id
            doc = new_doc
            logger.info(f"Created provider settings for user {user_id}")

        return self._to_config(doc)

    async def select_provider(self, user_id: str, provider: Optional[str]) -> ProviderConfig:
        """Switch the selected provider.

        Credentials last saved for the target provider are restored; a
        provider never configured starts with no credential or endpoint.
        Re-selecting the current provider changes nothing.
        """
        doc = await self.db.provider_settings.find_one({"userId": user_id})
        if doc is not None and doc.get("provider") == provider:
            return self._to_config(doc)

        retained = ((doc or {}).get("retained") or {}).get(provider) if provider else None
        retained = retained or {}
        fields = {
            "provider": provider,
            "apiKey": retained.get("apiKey", ""),
            "baseUrl": retained.get("baseUrl", ""),
            "timestamp": _utcnow(),
        }

        if doc is None:
            new_doc = dict(fields, userId=user_id, retained={})
            result = await self.db.provider_settings.insert_one(new_doc)
            new_doc["_id"] = result.inserted_id
            return self._to_config(new_doc)

        updated = await self.db.provider_settings.find_one_and_update(
            {"userId": user_id}, {"$set": fields}
        )
        logger.info(f"User {user_id} switched provider to {provider}")
        return self._to_config(updated)

    async def clear_provider_credential(self, user_id: str) -> Optional[ProviderConfig]:
        """Zero the credential and endpoint, keeping id and provider.

        The current provider's retained credentials are forgotten too.
        Returns None when the user has no record.
        """
        doc = await self.db.provider_settings.find_one({"userId": user_id})
        if doc is None:
            return None

        update: Dict = {"$set": {"apiKey": "", "baseUrl": "", "timestamp": _utcnow()}}
        if doc.get("provider"):
            update["$unset"] = {f"retained.{doc['provider']}": ""}

        updated = await self.db.provider_settings.find_one_and_update(
            {"userId": user_id}, update
        )
        return self._to_config(updated) if updated else None
