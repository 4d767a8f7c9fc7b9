#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedUpdateError(Exception):
    """Base class for failures that end a single feed update cycle."""


class FeedFetchError(FeedUpdateError):
    """Raised when the feed could not be retrieved (network, timeout, redirects)."""


class UnexpectedHttpResponseError(FeedFetchError):
    """Raised when the server answers with anything other than 2xx or 304.

    Attributes:
        status: The HTTP status code returned by the server.
    """

    def __init__(self, status: int, reason: Optional[str] = None):
        message = f"Unexpected HTTP response: {status}"
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.status = status
        self.reason = reason


class FeedParseError(FeedUpdateError):
    """Raised when downloaded content cannot be parsed as a feed."""


def describe_error(error: Optional[BaseException]) -> str:
    """Return the human-readable message stored as a feed's last update error."""
    if error is None:
        return "Unknown error"
    message = str(error).strip()
    return message or error.__class__.__name__


__all__ = [
    "FeedUpdateError",
    "FeedFetchError",
    "UnexpectedHttpResponseError",
    "FeedParseError",
    "describe_error",
]
