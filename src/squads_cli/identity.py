"""Transport layer for the Microsoft identity platform.

Only the three OAuth endpoints the token lifecycle needs are wrapped here,
plus the authsvc call that turns a spaces token into a skype token. Every
response is classified into one of two failure kinds:

- ``NetworkError``: timeouts, connection failures, 5xx and 429. Retryable.
- ``ProviderRejected``: any other error status. Carries the OAuth ``error``
  code (``authorization_pending``, ``invalid_grant``, ...) so the device flow
  and the broker can decide what it means for them.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import certifi
import httpx
from loguru import logger
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from squads_cli.exceptions import NetworkError, ProviderRejected
from squads_cli.scopes import DEVICE_CODE_RESOURCE, TEAMS_CLIENT_ID, Scope

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
SKYPE_TOKEN_URL = "https://teams.microsoft.com/api/authsvc/v1.0/authz"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# Default lifetime when the provider omits expires_in
DEFAULT_EXPIRES_IN = 3600

# Ask for CP1-capable tokens, as the Teams web client does
_CP1_CLAIMS = '{"access_token":{"xms_cc":{"values":["CP1"]}}}'

_USER_AGENT = "squads-cli"


class IdentityTransport(ABC):
    """Abstract transport for identity provider operations."""

    @abstractmethod
    def request_device_code(self, tenant: str) -> dict[str, Any]:
        """Start a device authorization.

        Args:
            tenant: Tenant id, domain, or ``organizations``.

        Returns:
            The device code response (device_code, user_code, ...).
        """
        pass

    @abstractmethod
    def poll_device_code(self, tenant: str, device_code: str) -> dict[str, Any]:
        """Ask whether the user has completed a device authorization.

        Returns:
            The token response once the user has signed in. While the user
            has not, raises ``ProviderRejected`` with the pending error code.
        """
        pass

    @abstractmethod
    def redeem_refresh_token(
        self, tenant: str, refresh_token: str, scope: Scope
    ) -> dict[str, Any]:
        """Exchange a refresh token for an access token scoped to ``scope``."""
        pass

    @abstractmethod
    def issue_skype_token(self, access_token: str) -> dict[str, Any]:
        """Exchange a spaces access token for a skype token."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close transport and cleanup resources."""
        pass


class MicrosoftIdentityTransport(IdentityTransport):
    """Production transport against login.microsoftonline.com."""

    def __init__(
        self,
        client_id: str = TEAMS_CLIENT_ID,
        authority: str = DEFAULT_AUTHORITY,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            client_id: OAuth public client id.
            authority: Base URL of the identity provider.
            timeout: Seconds before any single request is abandoned.
            client: Pre-built HTTP client (tests pass one backed by
                ``httpx.MockTransport``).
        """
        self._client_id = client_id
        self._authority = authority.rstrip("/")
        self._client = client or httpx.Client(
            headers={"User-Agent": _USER_AGENT},
            verify=certifi.where(),
            timeout=timeout,
            follow_redirects=False,
        )

    def request_device_code(self, tenant: str) -> dict[str, Any]:
        """POST /{tenant}/oauth2/devicecode"""
        return self._post(
            f"{self._authority}/{tenant}/oauth2/devicecode",
            data={"client_id": self._client_id, "resource": DEVICE_CODE_RESOURCE},
            action="device code request",
        )

    def poll_device_code(self, tenant: str, device_code: str) -> dict[str, Any]:
        """POST /{tenant}/oauth2/token"""
        return self._post(
            f"{self._authority}/{tenant}/oauth2/token",
            data={
                "client_id": self._client_id,
                "code": device_code,
                "grant_type": DEVICE_CODE_GRANT,
            },
            headers={"Origin": "https://teams.microsoft.com"},
            action="device code poll",
        )

    def redeem_refresh_token(
        self, tenant: str, refresh_token: str, scope: Scope
    ) -> dict[str, Any]:
        """POST /{tenant}/oauth2/v2.0/token"""
        return self._post(
            f"{self._authority}/{tenant}/oauth2/v2.0/token",
            data={
                "client_id": self._client_id,
                "scope": f"{scope.audience} openid profile offline_access",
                "grant_type": "refresh_token",
                "client_info": "1",
                "refresh_token": refresh_token,
                "claims": _CP1_CLAIMS,
            },
            headers={"Origin": "https://teams.microsoft.com"},
            action=f"token renewal for {scope.value}",
        )

    def issue_skype_token(self, access_token: str) -> dict[str, Any]:
        """POST /api/authsvc/v1.0/authz"""
        return self._post(
            SKYPE_TOKEN_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            action="skype token request",
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def _post(
        self,
        url: str,
        *,
        action: str,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.post(url, data=data, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{action} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{action} failed to connect: {e}") from e
        return _check_response(response, action)


def _check_response(response: httpx.Response, action: str) -> dict[str, Any]:
    """Check HTTP response and raise appropriate exceptions.

    Raises:
        NetworkError: On 5xx/429 responses or an unreadable success body.
        ProviderRejected: On any other error response.
    """
    status = response.status_code
    if status >= 500 or status == 429:
        raise NetworkError(f"{action} failed: HTTP {status}", status_code=status)

    try:
        body = response.json()
    except ValueError:
        body = None

    if response.is_success:
        if not isinstance(body, dict):
            raise NetworkError(
                f"{action} returned an unreadable response", status_code=status
            )
        return body

    if isinstance(body, dict) and "error" in body:
        error = str(body["error"])
        description = str(body.get("error_description") or "").strip()
        # AAD descriptions carry a trace/correlation block after the first line
        summary = description.splitlines()[0] if description else error
        raise ProviderRejected(
            f"{action} rejected: {summary}",
            error=error,
            description=description or None,
            status_code=status,
        )

    raise ProviderRejected(
        f"{action} rejected: HTTP {status} {response.text[:200]}",
        status_code=status,
    )


@dataclass(frozen=True)
class TokenGrant:
    """Parsed successful token endpoint response."""

    access_token: str
    refresh_token: str | None
    expires_at: float

    @classmethod
    def from_response(cls, data: dict[str, Any], now: float | None = None) -> TokenGrant:
        """Build a grant from a token endpoint response.

        Raises:
            NetworkError: If the response has no access token.
        """
        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise NetworkError("Token response did not include an access_token")
        refresh_token = data.get("refresh_token")
        issued = time.time() if now is None else now
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_at=issued + as_seconds(data.get("expires_in"), DEFAULT_EXPIRES_IN),
        )


def as_seconds(value: Any, default: int) -> int:
    """Coerce a numeric field that v1 endpoints send as a string."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return default
    try:
        seconds = float(value)
    except (ValueError, OverflowError):
        return default
    if not math.isfinite(seconds):
        return default
    return int(seconds)


def network_retry(attempts: int, wait: wait_base | None = None) -> Retrying:
    """Retry policy for transient identity provider failures.

    Only ``NetworkError`` is retried; the last one is re-raised unchanged
    once ``attempts`` is exhausted.
    """
    if wait is None:
        wait = wait_exponential(multiplier=0.5, min=0.5, max=8)
    return Retrying(
        retry=retry_if_exception_type(NetworkError),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait,
        before_sleep=_log_retry,
        reraise=True,
    )


def _log_retry(retry_state: Any) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "Identity provider unavailable, retrying",
        extra={
            "attempt": retry_state.attempt_number,
            "error": str(error) if error else None,
        },
    )
