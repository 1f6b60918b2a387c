"""
Keyword context-window tool.

Lets a model fetch a keyword-relevant slice of earlier conversation. The
model supplies keywords and a window size; the retrieval scope (session or
user) is injected by the host application.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from langchain_core.tools import StructuredTool
from loguru import logger
from pydantic import BaseModel, Field

from chatrecall.core.errors import InvalidArgument
from chatrecall.memory.models import MatchMode, Message
from chatrecall.memory.retrieval import ContextRetriever
from chatrecall.tools.base import BaseTool, ToolCategory, ToolDefinition, ToolResult


class ContextWindowKeywordArgs(BaseModel):
    keywords: List[str] = Field(..., min_length=1, description="Keywords for the current question's topic.")
    limit: int = Field(..., gt=0, description="Maximum number of messages in the window.")
    session_id: Optional[str] = Field(
        default=None,
        description="Conversation to search. Injected by the host; searches the user's conversations when absent.",
    )
    include_system: bool = Field(default=False, description="Prefix the conversation's system message.")
    match_mode: Literal["any", "all"] = Field(
        default="any",
        description="'any': at least one keyword matches; 'all': every keyword matches.",
    )


class ContextWindowKeywordTool(BaseTool):
    """Keyword sliding-window over conversation history (JSON-only result)."""

    NAME = "context_window_keyword"

    def __init__(self, retriever: ContextRetriever, user_id: Optional[str] = None):
        self._retriever = retriever
        self._user_id = user_id

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.NAME,
            description=(
                "Get a sliding window of earlier conversation messages that best match the given keywords. "
                "Returns a JSON array of messages. The search scope is controlled by the system; "
                "only provide keywords and the window size."
            ),
            category=ToolCategory.MEMORY,
            parameters={
                "type": "object",
                "properties": {
                    "session_id": {
                        "type": "string",
                        "description": "Conversation id (optional; injected by the system, not by the model).",
                    },
                    "keywords": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Keywords chosen from the current question's topic.",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Window size upper bound (required).",
                    },
                    "include_system": {
                        "type": "boolean",
                        "default": False,
                        "description": "Prefix the system message (default false).",
                    },
                    "match_mode": {
                        "type": "string",
                        "enum": ["any", "all"],
                        "default": "any",
                        "description": "'any' matches at least one keyword; 'all' requires every keyword.",
                    },
                },
                "required": ["keywords", "limit"],
            },
            returns="array of messages",
        )

    async def get_keyword_window(
        self,
        keywords: Any,
        limit: Any,
        *,
        session_id: Optional[str] = None,
        include_system: bool = False,
        match_mode: Any = MatchMode.ANY,
        user_id: Optional[str] = None,
    ) -> List[Message]:
        if not isinstance(keywords, (list, tuple)) or not keywords:
            raise InvalidArgument("keywords must be a non-empty list")
        if any(not isinstance(k, str) or not k.strip() for k in keywords):
            raise InvalidArgument("keywords must be non-empty strings")
        if isinstance(limit, bool) or not isinstance(limit, (int, float)) or limit <= 0:
            raise InvalidArgument("limit must be a positive number")

        mode = MatchMode.parse(match_mode)
        size = max(1, int(limit))

        if session_id:
            return await self._retriever.keyword_window(
                session_id, list(keywords), bool(include_system), size, mode
            )

        uid = user_id or self._user_id
        if not uid:
            raise InvalidArgument("user_id is required when session_id is not provided")

        return await self._retriever.keyword_window_by_user(
            uid, list(keywords), bool(include_system), size, mode
        )

    async def execute(self, **kwargs) -> ToolResult:
        session_id = kwargs.get("session_id")
        messages = await self.get_keyword_window(
            kwargs.get("keywords"),
            kwargs.get("limit"),
            session_id=session_id,
            include_system=bool(kwargs.get("include_system", False)),
            match_mode=kwargs.get("match_mode") or MatchMode.ANY,
            user_id=kwargs.get("user_id"),
        )
        logger.debug(f"{self.NAME}: {len(messages)} messages ({'session' if session_id else 'user'} scope)")
        return ToolResult(
            success=True,
            data=[m.to_dict() for m in messages],
            metadata={"scope": "session" if session_id else "user", "count": len(messages)},
        )

    def as_langchain_tool(self) -> StructuredTool:
        """Wrap the tool for LangChain agents; failures come back as unsuccessful results."""

        async def _run(**kwargs: Any) -> Dict[str, Any]:
            result = await self.safe_execute(**kwargs)
            return result.to_dict()

        return StructuredTool.from_function(
            coroutine=_run,
            name=self.definition.name,
            description=self.definition.description,
            args_schema=ContextWindowKeywordArgs,
        )


class ContextKeywordWindowTool(ContextWindowKeywordTool):
    """Older name of context_window_keyword, kept for compatibility."""

    NAME = "context_keyword_window"
