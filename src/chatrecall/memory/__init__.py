"""Memory module - conversation storage and context window retrieval."""

from chatrecall.memory.conversations import ConversationService
from chatrecall.memory.keywords import MessageKeywordExtractor, extractor_from_config
from chatrecall.memory.message_store import MessageStore, MessageStoreConfig, SQLiteMessageStore
from chatrecall.memory.models import (
    Conversation,
    MatchMode,
    Message,
    MessageKeywords,
    RetentionPolicy,
    Role,
    Window,
)
from chatrecall.memory.retrieval import ContextRetriever, RetrievalConfig

__all__ = [
    "ConversationService",
    "MessageKeywordExtractor",
    "extractor_from_config",
    "MessageStore",
    "MessageStoreConfig",
    "SQLiteMessageStore",
    "Conversation",
    "MatchMode",
    "Message",
    "MessageKeywords",
    "RetentionPolicy",
    "Role",
    "Window",
    "ContextRetriever",
    "RetrievalConfig",
]
