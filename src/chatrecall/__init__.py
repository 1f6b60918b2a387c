"""
ChatRecall - chat-history window retrieval for AI conversations.

Stores conversations and keyword-annotated messages, and selects the window
of prior messages (recent or keyword-relevant) to feed back into a model.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"
__author__ = "ChatRecall Team"

if TYPE_CHECKING:
    from chatrecall.core.app import ChatRecallApp as ChatRecallApp

__all__ = ["ChatRecallApp", "__version__"]


def __getattr__(name: str):
    # Lazy import so `chatrecall.memory.*` can be used without the app wiring.
    if name == "ChatRecallApp":
        from chatrecall.core.app import ChatRecallApp  # local import

        return ChatRecallApp
    raise AttributeError(name)
