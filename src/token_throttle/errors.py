from __future__ import annotations

from typing import Any


class ThrottleError(Exception):
    pass


class ConfigurationError(ThrottleError, ValueError):
    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.details = details


class TokenLookupError(ThrottleError):
    """The token table could not return the bucket for a key; no decision was made."""

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Unable to check token table for {key!r}: {cause}")
        self.key = key
        self.cause = cause


class PersistError(ThrottleError):
    """The bucket could not be saved. The admission decision is still valid."""

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(f"Error saving throttle information for {key!r}: {cause}")
        self.key = key
        self.cause = cause
