"""Custom exceptions for squads-cli."""

from __future__ import annotations

from pathlib import Path


class SquadsError(Exception):
    """Base exception for all squads-cli errors."""

    pass


class ConfigurationError(SquadsError):
    """Raised when settings are missing or invalid."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class AuthError(SquadsError):
    """Base exception for token lifecycle errors."""

    pass


class NetworkError(AuthError):
    """Raised for transient failures talking to the identity provider.

    Timeouts, connection failures, 5xx and 429 responses all end up here.
    These are retried a bounded number of times before being surfaced.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderRejected(AuthError):
    """Raised when the identity provider rejects a request outright.

    Carries the OAuth ``error`` code so callers can tell a pending device
    authorization apart from a bad tenant or a revoked refresh token.
    """

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(message)


class CorruptStore(AuthError):
    """Raised when the token store file exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Token store {path} is corrupted: {reason}. "
            "Run 'squads auth logout' to reset it."
        )


class ReauthenticationRequired(AuthError):
    """Raised when no usable refresh token exists and login must run again."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message or "Not authenticated. Run 'squads auth login' first."
        )


class DeviceFlowDenied(AuthError):
    """Raised when the user declines the device authorization request."""

    pass


class DeviceFlowExpired(AuthError):
    """Raised when the device code expires before the user completes login."""

    pass


class LoginCancelled(AuthError):
    """Raised when a device login is interrupted before a token arrives."""

    pass


class APIError(SquadsError):
    """Raised when a backend API answers with an error status."""

    def __init__(self, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"API error {status_code}: {message}")


class AuthenticationError(APIError):
    """Raised when a backend keeps rejecting a freshly issued token (401)."""

    def __init__(self, message: str) -> None:
        super().__init__(401, message)


class NotFoundError(APIError):
    """Raised when a backend resource does not exist (404)."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(404, f"Not found: {url}")


class APIConnectionError(APIError):
    """Raised when a backend API cannot be reached or times out."""

    def __init__(self, message: str) -> None:
        super().__init__(None, message)
