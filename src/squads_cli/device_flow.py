"""OAuth 2.0 device authorization grant.

The flow moves through ``IDLE -> AWAITING_USER_ACTION -> POLLING`` and ends in
``SUCCEEDED``, ``EXPIRED``, ``DENIED`` or ``CANCELLED``. Nothing is written to
disk here: the caller persists the returned record once polling succeeds, so
interrupting a login at any point leaves the token store untouched.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger
from tenacity.wait import wait_base

from squads_cli.exceptions import (
    DeviceFlowDenied,
    DeviceFlowExpired,
    LoginCancelled,
    NetworkError,
    ProviderRejected,
)
from squads_cli.identity import IdentityTransport, TokenGrant, as_seconds, network_retry
from squads_cli.scopes import Scope
from squads_cli.store import TokenRecord

DEFAULT_INTERVAL = 5
DEFAULT_SESSION_LIFETIME = 900
SLOW_DOWN_INCREMENT = 5

_PENDING = "authorization_pending"
_SLOW_DOWN = "slow_down"
_DENIED = frozenset({"authorization_declined", "access_denied"})
_EXPIRED = frozenset({"expired_token", "code_expired"})


class FlowState(Enum):
    IDLE = "idle"
    AWAITING_USER_ACTION = "awaiting_user_action"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    DENIED = "denied"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceSession:
    """An in-progress device authorization.

    Attributes:
        tenant: Tenant the device code was requested for.
        device_code: Secret code used when polling.
        user_code: Short code the user types on the verification page.
        verification_uri: Page where the user enters ``user_code``.
        interval: Seconds to wait between polls.
        expires_at: Unix timestamp after which the device code is dead.
        message: Provider-supplied instructions for the user.
    """

    tenant: str
    device_code: str
    user_code: str
    verification_uri: str
    interval: int
    expires_at: float
    message: str = ""

    def expires_in_seconds(self, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.expires_at - current))

    @classmethod
    def from_response(
        cls, data: dict[str, Any], tenant: str, now: float | None = None
    ) -> DeviceSession:
        """Build a session from the device code endpoint response.

        The v1 endpoint answers with ``verification_url`` and string-typed
        numbers; the v2 endpoint uses ``verification_uri`` and integers.

        Raises:
            ProviderRejected: If required fields are missing.
        """
        device_code = data.get("device_code")
        user_code = data.get("user_code")
        uri = data.get("verification_uri") or data.get("verification_url")
        if not device_code or not user_code or not uri:
            raise ProviderRejected("Device code response is missing required fields")
        issued = time.time() if now is None else now
        return cls(
            tenant=tenant,
            device_code=str(device_code),
            user_code=str(user_code),
            verification_uri=str(uri),
            interval=max(1, as_seconds(data.get("interval"), DEFAULT_INTERVAL)),
            expires_at=issued
            + as_seconds(data.get("expires_in"), DEFAULT_SESSION_LIFETIME),
            message=str(data.get("message") or ""),
        )


def _log_prompt(session: DeviceSession) -> None:
    logger.info(
        "Device login waiting for user",
        extra={"verification_uri": session.verification_uri},
    )


class DeviceFlow:
    """Drives one device login against an identity transport.

    Args:
        transport: Identity provider transport.
        retry_attempts: Attempts per request for transient network failures.
        retry_wait: tenacity wait strategy between those attempts.
        clock: Returns the current Unix time.
        sleep: Blocks for the given number of seconds. When omitted the flow
            waits on the cancel event (if one is passed to ``poll``) so a
            cancellation interrupts the wait immediately.
        display: Called once with the new session so the user can be shown
            the code and verification page.
    """

    def __init__(
        self,
        transport: IdentityTransport,
        *,
        retry_attempts: int = 3,
        retry_wait: wait_base | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] | None = None,
        display: Callable[[DeviceSession], None] | None = None,
    ) -> None:
        self._transport = transport
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._clock = clock
        self._sleep = sleep
        self._display = display or _log_prompt
        self._state = FlowState.IDLE
        self.polls = 0

    @property
    def state(self) -> FlowState:
        return self._state

    def initiate(self, tenant: str) -> DeviceSession:
        """Request a device code and present it to the user.

        Raises:
            NetworkError: If the provider stays unreachable.
            ProviderRejected: If the provider refuses (e.g. unknown tenant).
        """
        retrying = network_retry(self._retry_attempts, self._retry_wait)
        try:
            data = retrying(self._transport.request_device_code, tenant)
            session = DeviceSession.from_response(data, tenant, now=self._clock())
        except (NetworkError, ProviderRejected):
            self._state = FlowState.FAILED
            raise

        logger.info(
            "Device code issued",
            extra={
                "tenant": tenant,
                "interval": session.interval,
                "expires_in": session.expires_in_seconds(self._clock()),
            },
        )
        self._state = FlowState.AWAITING_USER_ACTION
        self._display(session)
        return session

    def poll(
        self,
        session: DeviceSession,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> TokenRecord:
        """Poll until the user finishes signing in.

        The first poll happens immediately; each pending answer is followed
        by a wait of the current interval. ``slow_down`` permanently adds
        five seconds to the interval.

        Args:
            session: Session returned by ``initiate``.
            cancel: Event checked before every poll and after every wait.
            timeout: Optional cap in seconds, tighter than the session expiry.

        Returns:
            The record for the device-code resource, carrying the refresh
            token that seeds every other scope.

        Raises:
            DeviceFlowDenied: The user declined.
            DeviceFlowExpired: The device code expired (or ``timeout`` elapsed).
            LoginCancelled: ``cancel`` was set or the user hit Ctrl-C.
        """
        self._state = FlowState.POLLING
        interval = session.interval
        deadline = session.expires_at
        if timeout is not None:
            deadline = min(deadline, self._clock() + timeout)
        self.polls = 0

        try:
            while True:
                self._check_cancel(cancel)
                if self._clock() >= deadline:
                    self._state = FlowState.EXPIRED
                    raise DeviceFlowExpired(
                        "Device code expired before sign-in completed. "
                        "Run 'squads auth login' again."
                    )

                self.polls += 1
                try:
                    data = network_retry(self._retry_attempts, self._retry_wait)(
                        self._transport.poll_device_code,
                        session.tenant,
                        session.device_code,
                    )
                except ProviderRejected as e:
                    interval = self._handle_rejection(e, interval)
                else:
                    return self._finish(data)

                self._wait(interval, cancel)
        except KeyboardInterrupt as e:
            self._state = FlowState.CANCELLED
            raise LoginCancelled("Login cancelled") from e
        except (NetworkError, ProviderRejected):
            self._state = FlowState.FAILED
            raise

    def _handle_rejection(self, error: ProviderRejected, interval: int) -> int:
        if error.error == _PENDING:
            logger.debug("Authorization pending", extra={"poll": self.polls})
            return interval
        if error.error == _SLOW_DOWN:
            logger.debug("Provider asked to slow down", extra={"interval": interval})
            return interval + SLOW_DOWN_INCREMENT
        if error.error in _DENIED:
            self._state = FlowState.DENIED
            raise DeviceFlowDenied(
                "Sign-in was declined. Run 'squads auth login' to try again."
            ) from error
        if error.error in _EXPIRED:
            self._state = FlowState.EXPIRED
            raise DeviceFlowExpired(
                "Device code expired before sign-in completed. "
                "Run 'squads auth login' again."
            ) from error
        raise error

    def _finish(self, data: dict[str, Any]) -> TokenRecord:
        grant = TokenGrant.from_response(data, now=self._clock())
        if not grant.refresh_token:
            self._state = FlowState.FAILED
            raise ProviderRejected("Device login completed without a refresh token")
        self._state = FlowState.SUCCEEDED
        logger.info("Device login succeeded", extra={"polls": self.polls})
        return TokenRecord(
            scope=Scope.SPACES,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )

    def _wait(self, seconds: float, cancel: threading.Event | None) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)
        self._check_cancel(cancel)

    def _check_cancel(self, cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            self._state = FlowState.CANCELLED
            raise LoginCancelled("Login cancelled")
