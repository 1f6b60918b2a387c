"""
ContextRetriever - picks the window of prior messages handed back to a model.

Fallback chain for keyword windows:
    store keyword filter -> density window
                         -> (no hits) similarity pivot -> (no pivot) recency
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Union

from loguru import logger

from chatrecall.core.errors import InvalidArgument, NotFound
from chatrecall.memory.message_store import MessageStore
from chatrecall.memory.models import Conversation, MatchMode, Message, RetentionPolicy, Role
from chatrecall.memory.text import normalize_keywords, similarity, tokenize
from chatrecall.memory.window import select_best_window, window_around

if TYPE_CHECKING:
    from chatrecall.config.manager import ConfigManager


@dataclass(frozen=True)
class RetrievalConfig:
    # Retention cap: max non-system messages kept (and considered) per conversation
    max_messages: int = 100

    # Default size for windows requested without a limit
    analysis_window_size: int = 10

    # Keyword filter fetches overfetch_factor * limit candidates
    overfetch_factor: int = 4

    # Minimum Jaccard score for a similarity pivot
    similarity_threshold: float = 0.3

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "RetrievalConfig":
        return cls(
            max_messages=int(config.get("context.max_messages", 100)),
            analysis_window_size=int(config.get("context.analysis_window_size", 10)),
            overfetch_factor=int(config.get("retrieval.overfetch_factor", 4)),
            similarity_threshold=float(config.get("retrieval.similarity_threshold", 0.3)),
        )

    @property
    def retention(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_messages=self.max_messages,
            analysis_window_size=self.analysis_window_size,
        )


class ContextRetriever:
    """
    Builds recency and keyword-relevance windows over a MessageStore.

    Results are ascending-chronological lists of non-system messages,
    optionally prefixed by one synthesized system message that does not
    count toward the requested size.
    """

    def __init__(self, store: MessageStore, config: Optional[RetrievalConfig] = None):
        self._store = store
        self._cfg = config or RetrievalConfig()

    @property
    def config(self) -> RetrievalConfig:
        return self._cfg

    # ==================== Helpers ====================

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return max(1, int(self._cfg.analysis_window_size))
        if isinstance(limit, bool) or int(limit) <= 0:
            raise InvalidArgument(f"limit must be a positive integer, got {limit!r}")
        return int(limit)

    def _cap(self) -> int:
        return max(1, int(self._cfg.max_messages))

    def _fetch_size(self, limit: int) -> int:
        return min(max(1, int(self._cfg.overfetch_factor)) * limit, self._cap())

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation not found: {conversation_id}")
        return conversation

    async def _system_prefix(self, conversation: Conversation) -> Optional[Message]:
        latest = await self._store.latest_system_message(conversation.id)
        if latest is not None:
            content, created_at = latest.content, latest.created_at
        elif conversation.system_prompt:
            content, created_at = conversation.system_prompt, conversation.created_at
        else:
            return None

        return Message(
            id=None,
            conversation_id=conversation.id,
            role=Role.SYSTEM,
            content=content,
            created_at=created_at,
            metadata={"synthesized": True},
        )

    async def _finish(
        self,
        conversation: Conversation,
        messages: List[Message],
        include_system: bool,
    ) -> List[Message]:
        if not include_system:
            return messages
        prefix = await self._system_prefix(conversation)
        return [prefix, *messages] if prefix is not None else messages

    async def _density_window(
        self,
        conversation: Conversation,
        matched: Iterable[Message],
        limit: int,
        include_system: bool,
    ) -> Optional[List[Message]]:
        """Slice the densest window for matches; None when no match can be positioned."""
        ordered = await self._store.recent_non_system(conversation.id, self._cap())
        positions = {m.id: i for i, m in enumerate(ordered)}
        indices = sorted({positions[m.id] for m in matched if m.id in positions})
        if not indices:
            return None

        window = select_best_window(indices, len(ordered), limit)
        logger.debug(
            f"Density window {window.start}:{window.end} over {len(ordered)} messages "
            f"({len(indices)} hits) in {conversation.id}"
        )
        return await self._finish(conversation, ordered[window.start:window.end], include_system)

    async def _similarity_window(
        self,
        conversation: Conversation,
        keywords: Sequence[str],
        limit: int,
        include_system: bool,
    ) -> List[Message]:
        ordered = await self._store.recent_non_system(conversation.id, self._cap())
        query = tokenize(" ".join(keywords))

        pivot = -1
        best = -1.0
        for i, msg in enumerate(ordered):
            score = similarity(query, tokenize(msg.content))
            if score >= self._cfg.similarity_threshold and score > best:
                pivot, best = i, score

        if pivot < 0:
            logger.debug(f"No similarity pivot in {conversation.id}; using recency window")
            return await self.recent_window(conversation.id, limit, include_system)

        window = window_around(pivot, len(ordered), limit)
        logger.debug(
            f"Similarity pivot {pivot} (score={best:.3f}) -> window {window.start}:{window.end} in {conversation.id}"
        )
        return await self._finish(conversation, ordered[window.start:window.end], include_system)

    # ==================== Windows ====================

    async def recent_window(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        include_system: bool = True,
    ) -> List[Message]:
        """Most recent `limit` non-system messages (analysis window size by default)."""
        n = self._resolve_limit(limit)
        conversation = await self._require_conversation(conversation_id)
        messages = await self._store.recent_non_system(conversation.id, n)
        return await self._finish(conversation, messages, include_system)

    async def analysis_window(self, conversation_id: str, include_system: bool = True) -> List[Message]:
        return await self.recent_window(conversation_id, None, include_system)

    async def keyword_window(
        self,
        conversation_id: str,
        keywords: Optional[Iterable[str]],
        include_system: bool = True,
        limit: Optional[int] = None,
        match_mode: Union[MatchMode, str] = MatchMode.ANY,
    ) -> List[Message]:
        """
        Window of one conversation that best concentrates keyword matches.

        Empty keywords or no annotated hits fall back to the recency window.
        """
        n = self._resolve_limit(limit)
        mode = MatchMode.parse(match_mode)
        terms = normalize_keywords(keywords)
        conversation = await self._require_conversation(conversation_id)

        if not terms:
            return await self.recent_window(conversation.id, n, include_system)

        matched = await self._store.keyword_filtered_non_system(conversation.id, terms, mode, self._fetch_size(n))
        if not matched:
            logger.debug(f"No keyword hits in {conversation.id} for {terms}; using recency window")
            return await self.recent_window(conversation.id, n, include_system)

        window = await self._density_window(conversation, matched, n, include_system)
        if window is None:
            return await self.recent_window(conversation.id, n, include_system)
        return window

    async def keyword_window_by_user(
        self,
        user_id: str,
        keywords: Optional[Iterable[str]],
        include_system: bool = False,
        limit: Optional[int] = None,
        match_mode: Union[MatchMode, str] = MatchMode.ANY,
    ) -> List[Message]:
        """
        Keyword window across all of a user's conversations.

        The conversation holding the most recent match becomes the pivot
        conversation. Without hits, the user's most recently updated
        conversation is searched lexically, then by recency. Returns [] when
        the user has no conversation.
        """
        n = self._resolve_limit(limit)
        mode = MatchMode.parse(match_mode)
        terms = normalize_keywords(keywords)

        if not terms:
            conversation = await self._store.most_recent_conversation_for_user(user_id)
            if conversation is None:
                return []
            return await self.recent_window(conversation.id, n, include_system)

        matched = await self._store.keyword_filtered_non_system_by_user(user_id, terms, mode, self._fetch_size(n))
        if not matched:
            conversation = await self._store.most_recent_conversation_for_user(user_id)
            if conversation is None:
                logger.debug(f"User {user_id} has no conversations")
                return []
            logger.debug(f"No keyword hits for user {user_id}; trying similarity in {conversation.id}")
            return await self._similarity_window(conversation, terms, n, include_system)

        pivot_id = matched[-1].conversation_id
        conversation = await self._store.get_conversation(pivot_id)
        if conversation is None:
            return []

        window = await self._density_window(
            conversation,
            (m for m in matched if m.conversation_id == pivot_id),
            n,
            include_system,
        )
        if window is None:
            return await self.recent_window(conversation.id, n, include_system)
        return window
