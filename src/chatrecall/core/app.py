"""
Application wiring for ChatRecall.

Builds the store, conversation service, retriever and tools from one
configuration file and manages their lifecycle.
"""

from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger

from chatrecall.config.manager import ConfigManager
from chatrecall.memory.conversations import ConversationService
from chatrecall.memory.keywords import MessageKeywordExtractor, extractor_from_config
from chatrecall.memory.message_store import SQLiteMessageStore
from chatrecall.memory.retrieval import ContextRetriever, RetrievalConfig
from chatrecall.tools.context_window import ContextWindowKeywordTool


class ChatRecallApp:
    """Owns the configured components; usable as an async context manager."""

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path
        self._running = False

        # Initialized in startup
        self.config: Optional[ConfigManager] = None
        self.extractor: Optional[MessageKeywordExtractor] = None
        self.store: Optional[SQLiteMessageStore] = None
        self.conversations: Optional[ConversationService] = None
        self.retriever: Optional[ContextRetriever] = None
        self.keyword_tool: Optional[ContextWindowKeywordTool] = None

    async def startup(self) -> None:
        """Initialize all components in dependency order."""
        logger.info("Starting ChatRecall...")

        self.config = ConfigManager(self._config_path)
        await self.config.load()

        self.extractor = extractor_from_config(self.config)
        if self.extractor is None:
            logger.info("Keyword extraction disabled; messages will not be annotated")

        self.store = SQLiteMessageStore.from_config(self.config, self.extractor)
        await self.store.initialize()

        retrieval_cfg = RetrievalConfig.from_config(self.config)
        self.conversations = ConversationService(
            self.store,
            retrieval_cfg.retention,
            max_context_age_hours=int(self.config.get("context.max_context_age_hours", 24)),
        )
        self.retriever = ContextRetriever(self.store, retrieval_cfg)
        self.keyword_tool = ContextWindowKeywordTool(self.retriever)

        self._running = True
        logger.success("ChatRecall started")

    async def shutdown(self) -> None:
        """Release components in reverse order."""
        self._running = False

        if self.store:
            await self.store.shutdown()

        self.keyword_tool = None
        self.retriever = None
        self.conversations = None
        self.store = None
        logger.info("ChatRecall shutdown complete")

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "ChatRecallApp":
        await self.startup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


@asynccontextmanager
async def create_app(config_path: Optional[str] = None):
    """Context manager for creating and running the app."""
    app = ChatRecallApp(config_path)
    try:
        await app.startup()
        yield app
    finally:
        await app.shutdown()
