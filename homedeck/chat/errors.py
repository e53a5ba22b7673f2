"""Exceptions raised by the chat client."""


class HomeDeckError(Exception):
    """Base class for client errors."""


class StreamError(HomeDeckError):
    """A chat turn failed: error event, transport failure, timeout or overflow."""
