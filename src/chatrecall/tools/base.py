"""
Base Tool - Abstract base class for model-callable tools.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class ToolCategory(str, Enum):
    """Tool categories."""
    MEMORY = "memory"  # Conversation context retrieval
    CUSTOM = "custom"


@dataclass
class ToolResult:
    """Result from tool execution."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }


class ToolDefinition(BaseModel):
    """Tool definition exposed to models."""

    name: str
    description: str
    category: ToolCategory = ToolCategory.CUSTOM
    parameters: Dict[str, Any] = Field(default_factory=dict)  # JSON Schema
    returns: str = "any"
    examples: List[Dict[str, Any]] = Field(default_factory=list)

    def to_openai(self) -> Dict[str, Any]:
        """OpenAI Chat Completions function format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class BaseTool(ABC):
    """
    Abstract base class for ChatRecall tools.

    All tools must implement:
    - definition: Tool metadata
    - execute: Core execution logic
    """

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Get tool definition."""
        pass

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """
        Execute the tool.

        Args:
            **kwargs: Tool-specific parameters

        Returns:
            ToolResult with execution outcome
        """
        pass

    def validate_params(self, params: Dict[str, Any]) -> Optional[str]:
        """
        Check the arguments a model sent against the definition's required list.

        A required argument sent as null counts as missing. Returns the error
        message, or None when the call may proceed.
        """
        for name in self.definition.parameters.get("required", []):
            if params.get(name) is None:
                return f"Missing required parameter: {name}"
        return None

    async def safe_execute(self, **kwargs) -> ToolResult:
        """Run a model tool call; every failure becomes an unsuccessful ToolResult."""
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000

        error = self.validate_params(kwargs)
        if error:
            return ToolResult(success=False, error=error, execution_time_ms=elapsed_ms())

        try:
            result = await self.execute(**kwargs)
        except Exception as e:
            logger.debug(f"Tool {self.definition.name} failed: {type(e).__name__}: {e}")
            return ToolResult(
                success=False,
                error=str(e),
                execution_time_ms=elapsed_ms(),
                metadata={"error_type": type(e).__name__},
            )

        result.execution_time_ms = elapsed_ms()
        return result
