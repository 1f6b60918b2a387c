"""
Data model for conversations, messages and retrieval windows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Union

from chatrecall.core.errors import InvalidArgument
from chatrecall.memory.text import normalize_keywords


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse a stored ISO timestamp; naive values are treated as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Role(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise InvalidArgument(f"Unknown message role: {value!r}") from None


class MatchMode(str, Enum):
    """How a keyword set is matched against a message annotation."""
    ANY = "any"  # at least one keyword present
    ALL = "all"  # every keyword present

    @classmethod
    def parse(cls, value: Union[str, "MatchMode", None]) -> "MatchMode":
        if value is None:
            return cls.ANY
        if isinstance(value, MatchMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"match_mode must be 'any' or 'all', got {value!r}") from None


@dataclass(frozen=True)
class MessageKeywords:
    """
    Keyword annotation of a message.

    Two normalized term sets: one for the primary language and one for the
    secondary language. Matching looks at their union.
    """

    primary: FrozenSet[str] = frozenset()
    secondary: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, primary: Iterable[str] = (), secondary: Iterable[str] = ()) -> "MessageKeywords":
        """Build an annotation from raw terms (trimmed, lower-cased, empties dropped)."""
        return cls(
            primary=frozenset(normalize_keywords(primary)),
            secondary=frozenset(normalize_keywords(secondary)),
        )

    def all_terms(self) -> FrozenSet[str]:
        return self.primary | self.secondary

    def is_empty(self) -> bool:
        return not self.primary and not self.secondary

    def matches(self, keywords: Iterable[str], mode: MatchMode = MatchMode.ANY) -> bool:
        wanted = set(keywords)
        if not wanted:
            return False
        terms = self.all_terms()
        if mode is MatchMode.ALL:
            return wanted <= terms
        return bool(wanted & terms)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"primary": sorted(self.primary), "secondary": sorted(self.secondary)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MessageKeywords"]:
        if not isinstance(data, dict):
            return None
        primary = data.get("primary") or []
        secondary = data.get("secondary") or []
        return cls.of(
            (str(x) for x in primary if isinstance(x, str)),
            (str(x) for x in secondary if isinstance(x, str)),
        )


@dataclass
class Message:
    """A single stored (or synthesized) conversation message."""

    id: Optional[int]
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)
    keywords: Optional[MessageKeywords] = None
    trimmed: bool = False

    @property
    def is_system(self) -> bool:
        return self.role is Role.SYSTEM

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
            "keywords": self.keywords.to_dict() if self.keywords is not None else None,
        }


@dataclass
class Conversation:
    """A chat conversation owning an ordered message sequence."""

    id: str
    user_id: Optional[str] = None
    system_prompt: Optional[str] = None
    active: bool = True
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "system_prompt": self.system_prompt,
            "active": self.active,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
        }


class Window(NamedTuple):
    """Half-open [start, end) span over a conversation's non-system messages."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return max(0, self.end - self.start)


@dataclass(frozen=True)
class RetentionPolicy:
    """Per-conversation retention settings consumed by the engine."""

    max_messages: int = 100
    analysis_window_size: int = 10


@dataclass
class MessageStats:
    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    system_messages: int = 0
    total_characters: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_messages": self.total_messages,
            "user_messages": self.user_messages,
            "assistant_messages": self.assistant_messages,
            "system_messages": self.system_messages,
            "total_characters": self.total_characters,
        }


@dataclass
class ConversationSummary:
    conversation_id: str
    stats: MessageStats
    last_activity: datetime
    duration_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "stats": self.stats.to_dict(),
            "last_activity": self.last_activity.isoformat(),
            "duration_minutes": self.duration_minutes,
        }
