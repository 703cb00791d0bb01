"""Authentication lifecycle used by the ``auth`` subcommands.

``AuthService`` is built once per CLI invocation and passed to whichever
command needs tokens. Its collaborators are injectable so tests can swap in a
fake identity provider and a temporary store.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from loguru import logger
from tenacity.wait import wait_base

from squads_cli.broker import AccessToken, TokenBroker
from squads_cli.config import Settings
from squads_cli.device_flow import DeviceFlow, DeviceSession
from squads_cli.exceptions import AuthError, CorruptStore, ReauthenticationRequired
from squads_cli.identity import IdentityTransport, MicrosoftIdentityTransport
from squads_cli.scopes import Scope
from squads_cli.store import TokenStore, TokenStoreFile
from squads_cli.transport import ApiClient

FlowFactory = Callable[[Callable[[DeviceSession], None] | None], DeviceFlow]


@dataclass(frozen=True)
class ScopeStatus:
    expires_at: float
    expires_in: int
    valid: bool


@dataclass(frozen=True)
class AuthStatus:
    """Snapshot of the token store, computed without network calls."""

    authenticated: bool
    tenant: str | None
    store_path: str
    scopes: dict[Scope, ScopeStatus] = field(default_factory=dict)
    skype_expires_at: float | None = None


class AuthService:
    """Login, logout, status and token access for one CLI invocation.

    Args:
        settings: Loaded settings.
        store: Token store (defaults to the one in ``settings.cache_dir``).
        transport: Identity provider transport.
        broker: Token broker (defaults to one over ``store`` and ``transport``).
        flow_factory: Builds the device flow for a login from the prompt
            callback (defaults to ``DeviceFlow`` over ``transport``).
        clock: Returns the current Unix time.
        sleep: Sleep used between device-code polls.
        retry_wait: tenacity wait strategy for transient failures.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: TokenStore | None = None,
        transport: IdentityTransport | None = None,
        broker: TokenBroker | None = None,
        flow_factory: FlowFactory | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or TokenStore(settings.token_store_path)
        self._transport = transport or MicrosoftIdentityTransport(
            client_id=settings.auth.client_id,
            authority=settings.auth.authority,
            timeout=settings.api.timeout,
        )
        self._clock = clock
        self._sleep = sleep
        self._retry_wait = retry_wait
        self._flow_factory = flow_factory
        self.broker = broker or TokenBroker(
            self.store,
            self._transport,
            tenant=settings.auth.tenant,
            safety_margin=settings.auth.safety_margin,
            retry_attempts=settings.auth.max_retries,
            retry_wait=retry_wait,
            per_scope_refresh=settings.auth.per_scope_refresh,
            clock=clock,
        )

    def close(self) -> None:
        self._transport.close()

    def __enter__(self) -> AuthService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def device_flow(
        self, display: Callable[[DeviceSession], None] | None = None
    ) -> DeviceFlow:
        if self._flow_factory is not None:
            return self._flow_factory(display)
        return DeviceFlow(
            self._transport,
            retry_attempts=self.settings.auth.max_retries,
            retry_wait=self._retry_wait,
            clock=self._clock,
            sleep=self._sleep,
            display=display,
        )

    def login(
        self,
        tenant: str | None = None,
        *,
        display: Callable[[DeviceSession], None] | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> TokenStoreFile:
        """Run the device flow and persist the resulting credentials.

        The store is only written after the provider has issued a refresh
        token; an interrupted or failed login leaves the previous store as is.
        """
        tenant = tenant or self.settings.login_tenant
        flow = self.device_flow(display)
        session = flow.initiate(tenant)
        record = flow.poll(
            session, cancel=cancel, timeout=timeout or self.settings.auth.poll_timeout
        )

        store_file = TokenStoreFile(
            tenant=tenant,
            refresh_token=record.refresh_token,
            tokens={record.scope: record},
        )
        self.store.save(store_file)
        logger.info("Login complete", extra={"tenant": tenant})
        return store_file

    def logout(self) -> bool:
        """Remove every cached credential. Returns True if a store existed."""
        removed = self.store.clear()
        logger.info("Logged out", extra={"removed": removed})
        return removed

    def status(self) -> AuthStatus:
        """Summarize the store without touching the network."""
        store_file = self.store.load()
        now = self._clock()
        margin = self.settings.auth.safety_margin
        scopes = {
            scope: ScopeStatus(
                expires_at=record.expires_at,
                expires_in=record.expires_in_seconds(now),
                valid=record.is_valid(margin, now=now),
            )
            for scope, record in store_file.tokens.items()
        }
        expected = self.settings.auth.tenant
        tenant_ok = not expected or store_file.tenant == expected
        return AuthStatus(
            authenticated=store_file.authenticated and tenant_ok,
            tenant=store_file.tenant,
            store_path=str(self.store.path),
            scopes=scopes,
            skype_expires_at=(
                store_file.skype_token.expires_at if store_file.skype_token else None
            ),
        )

    def refresh(
        self, scopes: Iterable[Scope] | None = None
    ) -> dict[Scope, AccessToken | AuthError]:
        """Force renewal of ``scopes`` (default: every cached scope).

        Failures other than ``ReauthenticationRequired`` and ``CorruptStore``
        are collected per scope so one unreachable audience does not hide
        the others.
        """
        if scopes is None:
            cached = self.store.load().tokens
            targets = list(cached) or list(Scope)
        else:
            targets = list(scopes)

        results: dict[Scope, AccessToken | AuthError] = {}
        for scope in targets:
            try:
                results[scope] = self.broker.get_token(scope, force_refresh=True)
            except (ReauthenticationRequired, CorruptStore):
                raise
            except AuthError as e:
                results[scope] = e
        return results

    def get_token(self, scope: Scope) -> AccessToken:
        return self.broker.get_token(scope)

    def get_skype_token(self) -> AccessToken:
        return self.broker.get_skype_token()

    def api_client(self) -> ApiClient:
        return ApiClient(
            self.broker,
            region=self.settings.api.region,
            timeout=self.settings.api.timeout,
        )
