"""Exceptions raised while fetching and decoding transit feeds."""

from typing import Optional


class FeedError(Exception):
    """Base class for static and real-time feed failures."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        message = super().__str__()
        if self.source:
            return f"{message} ({self.source})"
        return message


class FeedUnavailable(FeedError):
    """The feed could not be fetched (network error, bad status, timeout)."""


class FeedMalformed(FeedError):
    """The feed was fetched but a mandatory table or payload is unusable."""


class NoActiveService(FeedError):
    """No scheduled trip serves the stop on the requested date."""


class StaleDataServed(UserWarning):
    """A refresh failed and an expired cache entry was returned instead."""
