"""
Session state for authenticated daemon connections.
Tracks the credential, its expiry, and consecutive authentication failures.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .exceptions import ReauthLimitExceededError

logger = logging.getLogger(__name__)

# Attempts per logical call: the first request plus one after re-login.
MAX_AUTH_ATTEMPTS = 2
# Consecutive failures tolerated per adapter before giving up for good.
MAX_AUTH_FAILURES = 2
# Used when the daemon does not say how long a session lives.
DEFAULT_SESSION_LIFETIME = 3600.0


@dataclass
class SessionState:
    """
    Credential lifecycle of one adapter instance.

    Transitions:
        establish()  - after a successful login
        invalidate() - when the daemon rejects the credential
        teardown()   - when the adapter is closed
    """
    token: Optional[str] = None
    cookie: Optional[str] = None
    expires_at: Optional[float] = None
    established: bool = False
    failure_count: int = 0
    max_failures: int = MAX_AUTH_FAILURES

    def is_valid(self, now: Optional[float] = None) -> bool:
        """Check whether the credential can be used without logging in again."""
        if not self.established:
            return False
        if self.expires_at is None:
            return True
        now = time.time() if now is None else now
        return now < self.expires_at

    def establish(
        self,
        token: Optional[str] = None,
        cookie: Optional[str] = None,
        expires_at: Optional[float] = None,
        lifetime: Optional[float] = None,
    ) -> None:
        """Store a fresh credential."""
        self.token = token
        self.cookie = cookie
        if expires_at is None and lifetime is not None:
            expires_at = time.time() + lifetime
        self.expires_at = expires_at
        self.established = True

    def invalidate(self) -> None:
        """Drop the credential; the next call logs in again."""
        self.token = None
        self.cookie = None
        self.expires_at = None
        self.established = False

    def teardown(self) -> None:
        """Forget everything, including the failure counter."""
        self.invalidate()
        self.failure_count = 0

    def record_failure(self, error: Optional[Exception] = None) -> None:
        """
        Count an authentication failure.

        Raises:
            ReauthLimitExceededError: once failures exceed max_failures
        """
        self.failure_count += 1
        if self.failure_count > self.max_failures:
            logger.error(
                f"Giving up after {self.failure_count} consecutive authentication failures"
            )
            raise ReauthLimitExceededError(
                self.failure_count, str(error) if error else None
            )

    def record_success(self) -> None:
        self.failure_count = 0
