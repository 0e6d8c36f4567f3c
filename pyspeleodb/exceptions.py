"""Exceptions raised by the SpeleoDB client."""

from __future__ import annotations


class SpeleoDBError(Exception):
    """Base exception for all SpeleoDB client errors."""


class SpeleoDBConfigError(SpeleoDBError):
    """Configuration is missing or invalid."""


class SpeleoDBAPIError(SpeleoDBError):
    """A request to the SpeleoDB server failed.

    Args:
        message: Human readable error message
        status_code: HTTP status code of the response, if any
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_server_error(self) -> bool:
        """True if the server answered with a 5xx status."""
        return self.status_code is not None and 500 <= self.status_code < 600


class SpeleoDBAuthenticationError(SpeleoDBAPIError):
    """The server rejected the credentials or token."""


class SpeleoDBInvalidCredentialsError(SpeleoDBAuthenticationError):
    """Credentials are malformed; no request was sent."""


class SpeleoDBNotAuthenticatedError(SpeleoDBAuthenticationError):
    """An operation needs a session but the client is logged out."""


class SpeleoDBLockConflictError(SpeleoDBAPIError):
    """The project lock is held by someone else (or not by this client)."""


class SpeleoDBProjectNotFoundError(SpeleoDBAPIError):
    """The project, or its archive, does not exist on the server."""


class SpeleoDBValidationError(SpeleoDBAPIError):
    """The server rejected the request payload."""


class SpeleoDBServerError(SpeleoDBAPIError):
    """The server failed with a 5xx status."""


class SpeleoDBNetworkError(SpeleoDBAPIError):
    """The server could not be reached."""


class SpeleoDBTimeoutError(SpeleoDBNetworkError):
    """The request timed out."""


class SpeleoDBInvalidResponseError(SpeleoDBAPIError):
    """The server answered with something that is not the expected JSON."""


class SpeleoDBUploadError(SpeleoDBAPIError):
    """Uploading a project archive failed."""


class SpeleoDBDownloadError(SpeleoDBAPIError):
    """Downloading a project archive failed."""


class SpeleoDBChecksumMismatchError(SpeleoDBError):
    """Downloaded bytes do not match the expected SHA-256 checksum."""

    def __init__(self, expected: str, actual: str, path: str | None = None):
        location = f" for {path}" if path else ""
        super().__init__(
            f"Checksum mismatch{location}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
        self.path = path


class SpeleoDBFileNotFoundError(SpeleoDBError):
    """A local file needed for the operation does not exist."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class SpeleoDBOperationCancelledError(SpeleoDBError):
    """The caller cancelled the operation before it completed."""
