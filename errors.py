#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedConfigError(Exception):
    """Raised when a feed descriptor is missing or invalid.

    This is the only failure that aborts a feed generation request.

    Attributes:
        feed: Name of the offending feed.
        field: Descriptor field that failed validation, if any.
    """

    def __init__(self, feed: str, message: str, field: Optional[str] = None):
        super().__init__(f'Feed "{feed}": {message}')
        self.feed = feed
        self.field = field


class ExtractionError(Exception):
    """Raised when readable content cannot be extracted from a page."""


class CacheError(Exception):
    """Raised when the cache store rejects an operation."""


__all__ = ["FeedConfigError", "ExtractionError", "CacheError"]
