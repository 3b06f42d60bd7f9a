from __future__ import annotations

from typing import Dict, Optional


class ScraperError(Exception):
    """Base class for every error raised by the package."""


class FetchError(ScraperError):
    """A fetch executor could not produce content.

    ``transient`` marks failures worth retrying with the same executor
    (timeouts, connection resets, 5xx)."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status_code = status_code
        self.transient = transient


class BlockedError(FetchError):
    """Anti-bot or access-control response. Never retried with the same executor."""

    def __init__(self, message: str, method: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message, method=method, status_code=status_code, transient=False)


class CaptchaError(BlockedError):
    pass


class ContentValidationError(FetchError):
    """Fetched body is empty, too small, or looks like a block page."""


class AllStrategiesFailedError(FetchError):
    def __init__(self, url: str, errors: Dict[str, str]) -> None:
        detail = "; ".join(f"{method}: {msg}" for method, msg in errors.items())
        super().__init__(f"All scraping strategies failed for {url}. {detail}")
        self.url = url
        self.errors = dict(errors)


class ServerBusyError(ScraperError):
    """Admission gate timed out; the caller may retry later."""


class InvalidUrlError(ScraperError, ValueError):
    pass


class AuthenticationError(ScraperError):
    pass


class SessionNotFoundError(ScraperError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "session not found"


class InvalidSessionStateError(ScraperError):
    pass


class ProfileImportError(ScraperError, ValueError):
    pass


class FetchCancelledError(ScraperError):
    """The owning crawl session was paused or stopped mid-fetch."""
