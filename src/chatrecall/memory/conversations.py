"""
Conversation lifecycle on top of the message store.

Appends go through here so the retention cap is applied after every
message. The metadata cache is a shortcut only; the store stays the
source of truth.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from chatrecall.core.errors import InvalidArgument, NotFound
from chatrecall.memory.message_store import SQLiteMessageStore
from chatrecall.memory.models import (
    Conversation,
    ConversationSummary,
    Message,
    MessageStats,
    RetentionPolicy,
    Role,
    utc_now,
)


class ConversationService:
    def __init__(
        self,
        store: SQLiteMessageStore,
        retention: Optional[RetentionPolicy] = None,
        *,
        max_context_age_hours: int = 24,
    ):
        self._store = store
        self._retention = retention or RetentionPolicy()
        self._max_age_hours = int(max_context_age_hours)
        self._cache: Dict[str, Conversation] = {}

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    async def create_conversation(
        self,
        conversation_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        prompt = (system_prompt or "").strip() or None
        if conversation_id:
            existing = await self._store.get_conversation(conversation_id)
            if existing is not None:
                self._cache[existing.id] = existing
                return existing

        conversation = await self._store.create_conversation(
            conversation_id,
            user_id=user_id,
            system_prompt=prompt,
            metadata=metadata,
        )
        if prompt:
            await self._store.append_message(conversation.id, Role.SYSTEM, prompt, annotate=False)

        self._cache[conversation.id] = conversation
        logger.info(f"Created conversation {conversation.id} (user={user_id or '-'})")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached

        conversation = await self._store.get_conversation(conversation_id)
        if conversation is not None:
            self._cache[conversation.id] = conversation
        return conversation

    async def require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation not found: {conversation_id}")
        return conversation

    async def add_message(
        self,
        conversation_id: str,
        role: Union[Role, str],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Append a message and trim the conversation to the retention cap."""
        parsed = Role.parse(role)
        if content is None or not str(content).strip():
            raise InvalidArgument("Message content must not be empty")

        message = await self._store.append_message(conversation_id, parsed, str(content), metadata)
        await self._store.trim_retain(conversation_id, self._retention.max_messages)
        self._cache.pop(conversation_id, None)
        return message

    async def set_system_prompt(self, conversation_id: str, system_prompt: str) -> Conversation:
        prompt = (system_prompt or "").strip()
        if not prompt:
            raise InvalidArgument("System prompt must not be empty")

        conversation = await self._store.update_conversation(conversation_id, system_prompt=prompt)
        await self._store.append_message(conversation_id, Role.SYSTEM, prompt, annotate=False)
        self._cache[conversation.id] = conversation
        return conversation

    async def update_metadata(self, conversation_id: str, metadata: Dict[str, Any]) -> Conversation:
        conversation = await self._store.update_conversation(conversation_id, metadata=metadata)
        self._cache[conversation.id] = conversation
        return conversation

    async def delete_conversation(self, conversation_id: str) -> bool:
        self._cache.pop(conversation_id, None)
        deleted = await self._store.soft_delete_conversation(conversation_id)
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        return deleted

    async def list_conversations(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Conversation]:
        return await self._store.list_conversations_for_user(user_id, limit=limit, offset=offset)

    async def get_stats(self, conversation_id: str) -> MessageStats:
        await self.require_conversation(conversation_id)
        return await self._store.count_messages_by_role(conversation_id)

    async def get_summary(self, conversation_id: str) -> ConversationSummary:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation not found: {conversation_id}")

        stats = await self._store.count_messages_by_role(conversation_id)
        elapsed = conversation.updated_at - conversation.created_at
        return ConversationSummary(
            conversation_id=conversation.id,
            stats=stats,
            last_activity=conversation.updated_at,
            duration_minutes=int(elapsed.total_seconds() // 60),
        )

    async def cleanup_expired(self, max_age_hours: Optional[int] = None) -> int:
        """Soft-delete conversations idle for longer than max_age_hours."""
        hours = self._max_age_hours if max_age_hours is None else int(max_age_hours)
        if hours <= 0:
            raise InvalidArgument("max_age_hours must be positive")

        expired = await self._store.expire_conversations(utc_now() - timedelta(hours=hours))
        for conversation_id in expired:
            self._cache.pop(conversation_id, None)

        if expired:
            logger.info(f"Expired {len(expired)} idle conversations (older than {hours}h)")
        return len(expired)
