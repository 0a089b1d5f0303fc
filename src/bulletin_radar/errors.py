"""Exception hierarchy for the bulletin radar pipeline."""

from __future__ import annotations

from typing import Optional


class RadarError(Exception):
    """Base class for all expected pipeline failures."""


class ConfigurationError(RadarError):
    """Raised when environment or file configuration is invalid."""


class RegistryError(RadarError):
    """Raised when the source registry cannot be loaded or has no entry for a region."""


class FetchError(RadarError):
    """Network-level failure while retrieving a source."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError, TimeoutError):
    """The request did not complete before its deadline."""

    def __init__(self, url: str, timeout_seconds: float) -> None:
        super().__init__(f"Timed out after {timeout_seconds:.2f}s fetching {url}", url=url)
        self.timeout_seconds = timeout_seconds


class HttpError(FetchError):
    """The upstream answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int, reason: str = "") -> None:
        super().__init__(f"HTTP {status_code} {reason}".rstrip() + f" for {url}", url=url)
        self.status_code = status_code
        self.reason = reason


class ParseError(RadarError):
    """Content could not be parsed into items."""


class PersistenceError(RadarError):
    """A store write failed for a single record."""

    def __init__(self, message: str, *, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key
