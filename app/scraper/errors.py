"""
Scraper exception hierarchy.

Transient and per-unit failures are recovered inside the worker boundary;
only BrowserInitError (town requeue) and CheckpointStoreError (session-fatal)
reach the orchestrator.
"""

from __future__ import annotations


class ScraperError(Exception):
    """Base exception for scraper failures."""


class ScrapeConfigError(ScraperError, ValueError):
    """Raised when a submitted scrape configuration is out of bounds."""


class RateLimitedOperationError(ScraperError):
    """Base for operations that failed permanently inside the rate limiter."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryExhaustedError(RateLimitedOperationError):
    """A retryable operation failed on every allowed attempt."""


class NonRetryableError(RateLimitedOperationError):
    """An operation failed with an error that must not be retried."""


class LookupTransientError(ScraperError):
    """Carrier lookup transport failure worth retrying (timeout, 429, 5xx)."""


class BrowserInitError(ScraperError):
    """The browser automation session could not be started."""

    def __init__(self, message: str, *, town: str | None = None) -> None:
        super().__init__(message)
        self.town = town


class CheckpointStoreError(ScraperError):
    """Checkpoint or retry queue persistence is unavailable."""


class RetryItemValidationError(ScraperError, ValueError):
    """A retry queue item has an unsupported kind or malformed payload."""


class WorkbookFormatError(ScraperError, ValueError):
    """An uploaded spreadsheet is unreadable or lacks the required columns."""


class InvalidSessionTransitionError(ScraperError):
    """A session state change is not allowed from the current status."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move session from '{current}' to '{target}'.")
        self.current = current
        self.target = target


class SessionNotFoundError(ScraperError, LookupError):
    """No session exists for the requested id."""


class ProviderCacheError(ScraperError):
    """The carrier cache could not be read or written."""
