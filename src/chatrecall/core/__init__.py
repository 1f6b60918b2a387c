"""Core module - application wiring and error types."""

from chatrecall.core.errors import (
    ChatRecallError,
    ExtractionFailed,
    InvalidArgument,
    NotFound,
    StoreUnavailable,
)

__all__ = [
    "ChatRecallError",
    "ExtractionFailed",
    "InvalidArgument",
    "NotFound",
    "StoreUnavailable",
]
