"""
Custom exception hierarchy for Torrent Bridge.
Provides specific exception types for configuration, backend and cache failures.
"""


class TorrentBridgeError(Exception):
    """Base exception for all Torrent Bridge errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(TorrentBridgeError):
    """Raised when constructor arguments or settings are invalid."""

    pass


class MissingCredentialsError(ConfigurationError):
    """Raised when required credentials are missing."""

    pass


# Backend errors
class BackendError(TorrentBridgeError):
    """Base exception for torrent daemon errors."""

    pass


class BackendTransportError(BackendError):
    """Raised when a request to the daemon does not yield usable data."""

    def __init__(
        self,
        message: str,
        details: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message, details)
        self.status = status


class BackendConnectionError(BackendTransportError):
    """Raised when the daemon cannot be reached or the request times out."""

    pass


class BackendResponseError(BackendTransportError):
    """Raised on non-2xx statuses, malformed bodies or RPC error payloads."""

    pass


class BackendAuthenticationError(BackendError):
    """Raised when the daemon rejects the configured credentials."""

    pass


class SessionExpiredError(BackendAuthenticationError):
    """Raised when the daemon no longer accepts the current session.

    ``token`` carries a replacement credential when the daemon hands one out
    with the rejection (Transmission's session id).
    """

    def __init__(self, message: str, details: str | None = None, token: str | None = None):
        super().__init__(message, details)
        self.token = token


class ReauthLimitExceededError(BackendAuthenticationError):
    """Raised when consecutive authentication failures exceed the bound."""

    def __init__(self, failures: int, details: str | None = None):
        super().__init__(
            f"Authentication failed {failures} consecutive times", details
        )
        self.failures = failures


# Cache errors
class CacheError(TorrentBridgeError):
    """Raised when a disk snapshot cannot be read, parsed or written."""

    def __init__(self, message: str, path: str | None = None, details: str | None = None):
        super().__init__(message, details)
        self.path = path


# Validation errors
class ValidationError(TorrentBridgeError):
    """Raised when input validation fails."""

    pass


class InvalidHashError(ValidationError):
    """Raised when a torrent hash is invalid."""

    def __init__(self, torrent_hash, message: str | None = None):
        super().__init__(message or f"Invalid torrent hash: {torrent_hash!r}")
        self.torrent_hash = torrent_hash


class ReconciliationError(ValidationError):
    """Raised when a rename request cannot be matched to the file listing."""

    def __init__(self, message: str, old_path: str = "", new_path: str = ""):
        super().__init__(message)
        self.old_path = old_path
        self.new_path = new_path
