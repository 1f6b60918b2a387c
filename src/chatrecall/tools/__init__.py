"""Tools module - model-callable tools."""

from chatrecall.tools.base import BaseTool, ToolCategory, ToolDefinition, ToolResult
from chatrecall.tools.context_window import ContextKeywordWindowTool, ContextWindowKeywordTool

__all__ = [
    "BaseTool",
    "ToolCategory",
    "ToolDefinition",
    "ToolResult",
    "ContextWindowKeywordTool",
    "ContextKeywordWindowTool",
]
