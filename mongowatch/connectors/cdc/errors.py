"""
Exceptions raised by the change stream consumer.

Invalidate events are not errors: the watch loop reports them through
``WatchStatus.INVALIDATED``.
"""

from typing import Any, Optional


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class ChangeFeedError(CDCError):
    """Opening or iterating the change stream failed."""
    pass


class SerializationError(CDCError):
    """Change document could not be decoded into a ChangeEvent."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading/deleting a checkpoint."""
    pass


class DispatchError(CDCError):
    """A dispatch stage failed while handling an event."""

    def __init__(self, message: str, event: Optional[Any] = None):
        super().__init__(message)
        self.event = event


class RetryExhaustedError(CDCError):
    """The backoff policy gave up restarting the watch."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
