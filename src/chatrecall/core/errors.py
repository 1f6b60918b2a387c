"""
Error types raised by the retrieval engine.

Selection helpers (tokenizer, window selector) never raise; these cover the
conditions that must reach a caller.
"""


class ChatRecallError(RuntimeError):
    """Base class for chatrecall errors."""


class NotFound(ChatRecallError):
    """Referenced conversation does not exist (or was deleted)."""


class InvalidArgument(ChatRecallError):
    """Caller supplied a malformed argument (non-positive limit, empty keywords, bad role...)."""


class StoreUnavailable(ChatRecallError):
    """The message store failed or was used before initialization."""


class ExtractionFailed(ChatRecallError):
    """Keyword extraction failed. Swallowed at the append boundary."""
