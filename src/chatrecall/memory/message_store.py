"""
MessageStore - persistent conversations and messages with keyword filtering.

Goals:
- Store conversations and their messages locally (SQLite)
- Soft-remove instead of delete (retention trim, conversation deletion)
- Filter non-system messages by keyword annotation (any/all), per
  conversation or across a user's conversations
- Annotate new messages with keywords in the background (best-effort)
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
)

from loguru import logger

from chatrecall.core.errors import InvalidArgument, NotFound, StoreUnavailable
from chatrecall.memory.models import (
    Conversation,
    MatchMode,
    Message,
    MessageKeywords,
    MessageStats,
    Role,
    parse_timestamp,
)

if TYPE_CHECKING:
    from chatrecall.config.manager import ConfigManager


class KeywordExtractor(Protocol):
    async def extract(self, text: str) -> MessageKeywords: ...


AnnotationErrorHook = Callable[[int, BaseException], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _flat_term(term: str) -> str:
    return term.replace("|", " ")


def _flatten_keywords(keywords: MessageKeywords) -> str:
    terms = sorted({_flat_term(t) for t in keywords.all_terms()})
    return "|" + "|".join(terms) + "|" if terms else ""


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Keyword clause builders. Both return (sql, params) matching the message
# alias "m"; messages without an annotation never match.

def _json_keyword_clause(keywords: Sequence[str], mode: MatchMode) -> Tuple[str, List[Any]]:
    def contains(terms: Sequence[str]) -> Tuple[str, List[Any]]:
        marks = ", ".join(["?"] * len(terms))
        sql = (
            "EXISTS ("
            f"SELECT 1 FROM json_each(m.keywords_json, '$.primary') WHERE value IN ({marks}) "
            "UNION ALL "
            f"SELECT 1 FROM json_each(m.keywords_json, '$.secondary') WHERE value IN ({marks})"
            ")"
        )
        return sql, [*terms, *terms]

    if mode is MatchMode.ALL:
        parts = [contains([k]) for k in keywords]
        sql = " AND ".join(p[0] for p in parts)
        params = [x for p in parts for x in p[1]]
    else:
        sql, params = contains(list(keywords))
    return f"(m.keywords_json IS NOT NULL AND ({sql}))", params


def _like_keyword_clause(keywords: Sequence[str], mode: MatchMode) -> Tuple[str, List[Any]]:
    joiner = " AND " if mode is MatchMode.ALL else " OR "
    sql = joiner.join(["m.keywords_flat LIKE ? ESCAPE '\\'"] * len(keywords))
    params = [f"%|{_like_escape(_flat_term(k))}|%" for k in keywords]
    return f"(m.keywords_flat IS NOT NULL AND ({sql}))", params


_KEYWORD_CLAUSES = {
    "json": _json_keyword_clause,
    "like": _like_keyword_clause,
}


class MessageStore(ABC):
    """
    Storage contract consumed by the retrieval engine.

    Message lists are always ascending-chronological and exclude
    soft-removed messages.
    """

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        annotate: bool = True,
    ) -> Message:
        ...

    @abstractmethod
    async def recent_non_system(self, conversation_id: str, limit: Optional[int]) -> List[Message]:
        ...

    @abstractmethod
    async def latest_system_message(self, conversation_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def keyword_filtered_non_system(
        self,
        conversation_id: str,
        keywords: Sequence[str],
        match_mode: MatchMode,
        limit: int,
    ) -> List[Message]:
        """The newest `limit` matching messages, returned oldest-first."""

    @abstractmethod
    async def keyword_filtered_non_system_by_user(
        self,
        user_id: str,
        keywords: Sequence[str],
        match_mode: MatchMode,
        limit: int,
    ) -> List[Message]:
        """Same as keyword_filtered_non_system across the user's live conversations."""

    @abstractmethod
    async def trim_retain(self, conversation_id: str, max_keep: int) -> int:
        ...

    @abstractmethod
    async def most_recent_conversation_for_user(self, user_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...


@dataclass(frozen=True)
class MessageStoreConfig:
    db_path: str = "data/chatrecall.db"

    # Keyword matching backend: "auto" (JSON1 when available), "json" or "like"
    keyword_matching: str = "auto"


class SQLiteMessageStore(MessageStore):
    def __init__(
        self,
        config: Optional[MessageStoreConfig] = None,
        *,
        extractor: Optional[KeywordExtractor] = None,
        on_annotation_error: Optional[AnnotationErrorHook] = None,
    ):
        self._cfg = config or MessageStoreConfig()

        self._db_path = self._cfg.db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._extractor = extractor
        self._on_annotation_error = on_annotation_error
        self._pending: Set[asyncio.Task] = set()
        self._keyword_matching = "like"

    @classmethod
    def from_config(
        cls,
        config: "ConfigManager",
        extractor: Optional[KeywordExtractor] = None,
    ) -> "SQLiteMessageStore":
        return cls(
            MessageStoreConfig(
                db_path=str(config.get("store.db_path", "data/chatrecall.db")),
                keyword_matching=str(config.get("store.keyword_matching", "auto")),
            ),
            extractor=extractor,
        )

    @property
    def keyword_matching(self) -> str:
        return self._keyword_matching

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open message store at {self._db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

        await self._create_tables()
        self._keyword_matching = self._select_keyword_matching()
        logger.info(f"Message store initialized at {self._db_path} (keyword matching: {self._keyword_matching})")

    async def shutdown(self) -> None:
        await self.wait_for_annotations()

        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _select_keyword_matching(self) -> str:
        wanted = str(self._cfg.keyword_matching or "auto").lower()
        if wanted not in ("auto", "json", "like"):
            raise InvalidArgument(f"Unknown keyword matching backend: {wanted}")
        if wanted == "like":
            return "like"

        json_ok = False
        try:
            cur = self._conn.cursor()
            cur.execute("SELECT COUNT(1) FROM json_each('[\"a\"]')")
            json_ok = True
        except sqlite3.Error as e:
            logger.debug(f"JSON1 unavailable for keyword matching: {e}")

        if wanted == "json" and not json_ok:
            raise StoreUnavailable("JSON keyword matching requested but SQLite JSON1 is unavailable")
        return "json" if json_ok else "like"

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[sqlite3.Cursor]:
        if self._conn is None:
            raise StoreUnavailable("Message store is not initialized")

        async with self._lock:
            conn = self._conn
            try:
                yield conn.cursor()
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(f"Message store query failed: {e}") from e

    async def _create_tables(self) -> None:
        async with self._cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    system_prompt TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata_json TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, updated_at)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    metadata_json TEXT,
                    keywords_json TEXT,
                    keywords_flat TEXT,
                    trimmed INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON conversation_messages(conversation_id, id)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation_role ON conversation_messages(conversation_id, role)"
            )

    # ==================== Row mapping ====================

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        metadata: Dict[str, Any] = {}
        if row["metadata_json"]:
            try:
                metadata = json.loads(row["metadata_json"]) or {}
            except ValueError:
                metadata = {}

        keywords: Optional[MessageKeywords] = None
        if row["keywords_json"]:
            try:
                keywords = MessageKeywords.from_dict(json.loads(row["keywords_json"]))
            except ValueError:
                keywords = None

        return Message(
            id=int(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=Role(str(row["role"])),
            content=str(row["content"]),
            created_at=parse_timestamp(row["created_at"]),
            metadata=metadata,
            keywords=keywords,
            trimmed=bool(row["trimmed"]),
        )

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        metadata: Dict[str, Any] = {}
        if row["metadata_json"]:
            try:
                metadata = json.loads(row["metadata_json"]) or {}
            except ValueError:
                metadata = {}

        return Conversation(
            id=str(row["conversation_id"]),
            user_id=row["user_id"],
            system_prompt=row["system_prompt"],
            active=bool(row["active"]),
            is_deleted=bool(row["is_deleted"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            metadata=metadata,
        )

    # ==================== Conversations ====================

    async def create_conversation(
        self,
        conversation_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        cid = (conversation_id or "").strip() or f"conv_{uuid.uuid4().hex[:12]}"
        now = _utc_now_iso()
        meta_json = json.dumps(metadata, ensure_ascii=False) if metadata else None

        async with self._cursor() as cur:
            cur.execute("SELECT * FROM conversations WHERE conversation_id = ?", (cid,))
            row = cur.fetchone()
            if row:
                if row["is_deleted"]:
                    raise InvalidArgument(f"Conversation id {cid} belongs to a deleted conversation")
                return self._row_to_conversation(row)

            cur.execute(
                """
                INSERT INTO conversations
                (conversation_id, user_id, system_prompt, active, is_deleted, created_at, updated_at, metadata_json)
                VALUES (?, ?, ?, 1, 0, ?, ?, ?)
                """,
                (cid, user_id, system_prompt, now, now, meta_json),
            )
            cur.execute("SELECT * FROM conversations WHERE conversation_id = ?", (cid,))
            return self._row_to_conversation(cur.fetchone())

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        cid = str(conversation_id or "").strip()
        if not cid:
            return None

        async with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM conversations WHERE conversation_id = ? AND active = 1 AND is_deleted = 0",
                (cid,),
            )
            row = cur.fetchone()
            return self._row_to_conversation(row) if row else None

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        system_prompt: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        """Set the stored system prompt and/or merge metadata."""
        async with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM conversations WHERE conversation_id = ? AND active = 1 AND is_deleted = 0",
                (conversation_id,),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound(f"Conversation not found: {conversation_id}")

            current = self._row_to_conversation(row)
            merged = {**current.metadata, **(metadata or {})}
            prompt = system_prompt if system_prompt is not None else current.system_prompt
            cur.execute(
                """
                UPDATE conversations SET system_prompt = ?, metadata_json = ?, updated_at = ?
                WHERE conversation_id = ?
                """,
                (prompt, json.dumps(merged, ensure_ascii=False) if merged else None, _utc_now_iso(), conversation_id),
            )
            cur.execute("SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,))
            return self._row_to_conversation(cur.fetchone())

    async def soft_delete_conversation(self, conversation_id: str) -> bool:
        """Flag a conversation deleted/inactive and soft-remove all its messages."""
        async with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversations SET is_deleted = 1, active = 0, updated_at = ?
                WHERE conversation_id = ? AND is_deleted = 0
                """,
                (_utc_now_iso(), conversation_id),
            )
            changed = cur.rowcount > 0
            cur.execute(
                "UPDATE conversation_messages SET trimmed = 1 WHERE conversation_id = ?",
                (conversation_id,),
            )
            return changed

    async def expire_conversations(self, cutoff: datetime) -> List[str]:
        """Soft-delete every live conversation last updated before cutoff."""
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        cutoff_iso = cutoff.astimezone(timezone.utc).isoformat(timespec="microseconds")

        async with self._cursor() as cur:
            cur.execute(
                "SELECT conversation_id FROM conversations WHERE is_deleted = 0 AND updated_at < ?",
                (cutoff_iso,),
            )
            ids = [str(r["conversation_id"]) for r in cur.fetchall()]
            if not ids:
                return []

            marks = ", ".join(["?"] * len(ids))
            now = _utc_now_iso()
            cur.execute(
                f"UPDATE conversations SET is_deleted = 1, active = 0, updated_at = ? WHERE conversation_id IN ({marks})",
                (now, *ids),
            )
            cur.execute(
                f"UPDATE conversation_messages SET trimmed = 1 WHERE conversation_id IN ({marks})",
                tuple(ids),
            )
            return ids

    async def list_conversations_for_user(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[Conversation]:
        async with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ? AND active = 1 AND is_deleted = 0
                ORDER BY updated_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, int(limit), int(offset)),
            )
            return [self._row_to_conversation(r) for r in cur.fetchall()]

    async def most_recent_conversation_for_user(self, user_id: str) -> Optional[Conversation]:
        rows = await self.list_conversations_for_user(user_id, limit=1)
        return rows[0] if rows else None

    # ==================== Messages ====================

    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        annotate: bool = True,
    ) -> Message:
        role = Role.parse(role)
        now = _utc_now_iso()
        meta_json = json.dumps(metadata, ensure_ascii=False) if metadata else None

        async with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM conversations WHERE conversation_id = ? AND active = 1 AND is_deleted = 0",
                (conversation_id,),
            )
            if cur.fetchone() is None:
                raise NotFound(f"Conversation not found: {conversation_id}")

            cur.execute(
                """
                INSERT INTO conversation_messages (conversation_id, role, content, created_at, metadata_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, role.value, str(content or ""), now, meta_json),
            )
            message_id = int(cur.lastrowid)
            cur.execute(
                "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
                (now, conversation_id),
            )

        message = Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=str(content or ""),
            created_at=parse_timestamp(now),
            metadata=dict(metadata or {}),
        )

        if annotate:
            self._schedule_annotation(message)
        return message

    async def recent_non_system(self, conversation_id: str, limit: Optional[int]) -> List[Message]:
        async with self._cursor() as cur:
            if limit is None:
                cur.execute(
                    """
                    SELECT * FROM conversation_messages
                    WHERE conversation_id = ? AND role != 'system' AND trimmed = 0
                    ORDER BY id ASC
                    """,
                    (conversation_id,),
                )
                return [self._row_to_message(r) for r in cur.fetchall()]

            if int(limit) <= 0:
                return []
            cur.execute(
                """
                SELECT * FROM conversation_messages
                WHERE conversation_id = ? AND role != 'system' AND trimmed = 0
                ORDER BY id DESC
                LIMIT ?
                """,
                (conversation_id, int(limit)),
            )
            out = [self._row_to_message(r) for r in cur.fetchall()]
            out.reverse()
            return out

    async def latest_system_message(self, conversation_id: str) -> Optional[Message]:
        async with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM conversation_messages
                WHERE conversation_id = ? AND role = 'system' AND trimmed = 0
                ORDER BY id DESC
                LIMIT 1
                """,
                (conversation_id,),
            )
            row = cur.fetchone()
            return self._row_to_message(row) if row else None

    async def keyword_filtered_non_system(
        self,
        conversation_id: str,
        keywords: Sequence[str],
        match_mode: MatchMode,
        limit: int,
    ) -> List[Message]:
        terms = [k for k in keywords if k]
        if not terms or int(limit) <= 0:
            return []

        clause, params = _KEYWORD_CLAUSES[self._keyword_matching](terms, MatchMode.parse(match_mode))
        async with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT m.* FROM conversation_messages m
                WHERE m.conversation_id = ? AND m.role != 'system' AND m.trimmed = 0
                  AND {clause}
                ORDER BY m.id DESC
                LIMIT ?
                """,
                (conversation_id, *params, int(limit)),
            )
            out = [self._row_to_message(r) for r in cur.fetchall()]
            out.reverse()
            return out

    async def keyword_filtered_non_system_by_user(
        self,
        user_id: str,
        keywords: Sequence[str],
        match_mode: MatchMode,
        limit: int,
    ) -> List[Message]:
        terms = [k for k in keywords if k]
        if not terms or int(limit) <= 0:
            return []

        clause, params = _KEYWORD_CLAUSES[self._keyword_matching](terms, MatchMode.parse(match_mode))
        async with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT m.* FROM conversation_messages m
                JOIN conversations c ON c.conversation_id = m.conversation_id
                WHERE c.user_id = ? AND c.active = 1 AND c.is_deleted = 0
                  AND m.role != 'system' AND m.trimmed = 0
                  AND {clause}
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ?
                """,
                (user_id, *params, int(limit)),
            )
            out = [self._row_to_message(r) for r in cur.fetchall()]
            out.reverse()
            return out

    async def trim_retain(self, conversation_id: str, max_keep: int) -> int:
        """Soft-remove all but the newest max_keep non-system messages. Idempotent."""
        keep = max(int(max_keep), 0)
        async with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversation_messages SET trimmed = 1
                WHERE conversation_id = ? AND role != 'system' AND trimmed = 0
                  AND id NOT IN (
                    SELECT id FROM conversation_messages
                    WHERE conversation_id = ? AND role != 'system' AND trimmed = 0
                    ORDER BY id DESC
                    LIMIT ?
                  )
                """,
                (conversation_id, conversation_id, keep),
            )
            trimmed = int(cur.rowcount or 0)

        if trimmed:
            logger.debug(f"Trimmed {trimmed} messages from {conversation_id} (keep={keep})")
        return trimmed

    async def set_message_keywords(self, message_id: int, keywords: MessageKeywords) -> bool:
        async with self._cursor() as cur:
            cur.execute(
                "UPDATE conversation_messages SET keywords_json = ?, keywords_flat = ? WHERE id = ?",
                (
                    json.dumps(keywords.to_dict(), ensure_ascii=False),
                    _flatten_keywords(keywords),
                    int(message_id),
                ),
            )
            return cur.rowcount > 0

    async def count_messages_by_role(self, conversation_id: str) -> MessageStats:
        async with self._cursor() as cur:
            cur.execute(
                """
                SELECT role, COUNT(1) AS n, COALESCE(SUM(LENGTH(content)), 0) AS chars
                FROM conversation_messages
                WHERE conversation_id = ? AND trimmed = 0
                GROUP BY role
                """,
                (conversation_id,),
            )
            rows = cur.fetchall()

        stats = MessageStats()
        for r in rows:
            n = int(r["n"])
            stats.total_messages += n
            stats.total_characters += int(r["chars"])
            if r["role"] == Role.USER.value:
                stats.user_messages = n
            elif r["role"] == Role.ASSISTANT.value:
                stats.assistant_messages = n
            elif r["role"] == Role.SYSTEM.value:
                stats.system_messages = n
        return stats

    # ==================== Keyword annotation ====================

    def _schedule_annotation(self, message: Message) -> None:
        if self._extractor is None or message.id is None:
            return
        if message.is_system or not message.content.strip():
            return

        task = asyncio.create_task(self._annotate(message.id, message.content))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _annotate(self, message_id: int, content: str) -> None:
        try:
            keywords = await self._extractor.extract(content)
            await self.set_message_keywords(message_id, keywords)
        except Exception as e:
            logger.warning(f"Keyword annotation failed for message {message_id}: {e}")
            if self._on_annotation_error is not None:
                try:
                    self._on_annotation_error(message_id, e)
                except Exception as hook_err:
                    logger.debug(f"Annotation error hook raised: {hook_err}")

    async def wait_for_annotations(self) -> None:
        """Wait for outstanding background annotations to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
