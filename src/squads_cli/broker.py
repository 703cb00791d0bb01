"""Per-scope access token broker.

The broker separates two questions:

1. Is there a refresh token at all? That is a property of the login, shared
   by every scope. If the provider rejects it, every scope needs a new login.
2. Is there a fresh access token for *this* scope? That is a property of the
   per-scope cache, renewed silently from the refresh token.

Each call reloads the store, so tokens written by a concurrent invocation are
picked up. Before writing, the store is reloaded again and only the renewed
scope's entry is replaced; two processes racing on the same scope may both
renew it, and whichever writes last wins.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from tenacity.wait import wait_base

from squads_cli.exceptions import ProviderRejected, ReauthenticationRequired
from squads_cli.identity import IdentityTransport, TokenGrant, as_seconds, network_retry
from squads_cli.scopes import Scope
from squads_cli.store import SkypeToken, TokenRecord, TokenStore, TokenStoreFile

DEFAULT_SAFETY_MARGIN = 60

# OAuth error codes meaning the refresh token itself is no longer usable
REAUTH_ERRORS = frozenset(
    {"invalid_grant", "interaction_required", "login_required", "consent_required"}
)


@dataclass(frozen=True)
class AccessToken:
    """A bearer credential handed to API callers."""

    value: str
    expires_at: float
    scope: Scope | None = None

    def expires_in_seconds(self, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.expires_at - current))

    def __str__(self) -> str:
        return self.value


class TokenBroker:
    """Returns valid access tokens for a scope, renewing them when needed.

    The broker never starts an interactive login. When it cannot mint a token
    without one it raises ``ReauthenticationRequired``.

    Args:
        store: Token store to read and update.
        transport: Identity provider transport used for renewal.
        tenant: Expected tenant. When set, a store issued for a different
            tenant is treated as unauthenticated. When None, the tenant
            recorded in the store is used.
        safety_margin: Seconds before expiry at which a token counts as
            expired.
        retry_attempts: Attempts per renewal for transient failures.
        retry_wait: tenacity wait strategy between attempts.
        per_scope_refresh: Prefer the refresh token recorded on a scope's own
            record over the shared one.
        clock: Returns the current Unix time.
    """

    def __init__(
        self,
        store: TokenStore,
        transport: IdentityTransport,
        *,
        tenant: str | None = None,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        retry_attempts: int = 3,
        retry_wait: wait_base | None = None,
        per_scope_refresh: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._transport = transport
        self._tenant = tenant
        self._safety_margin = safety_margin
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._per_scope_refresh = per_scope_refresh
        self._clock = clock

    @property
    def safety_margin(self) -> float:
        return self._safety_margin

    def get_token(self, scope: Scope, force_refresh: bool = False) -> AccessToken:
        """Return a valid access token for ``scope``.

        Args:
            scope: Audience the token will be presented to.
            force_refresh: Renew even if the cached token is still valid.

        Raises:
            ReauthenticationRequired: No refresh token, tenant mismatch, or the
                provider rejected the refresh token.
            NetworkError: The provider stayed unreachable through all retries.
            ProviderRejected: The provider refused for another reason.
            CorruptStore: The store file could not be read.
        """
        store_file = self._load()
        record = store_file.tokens.get(scope)
        if record is not None and not force_refresh and self._is_fresh(record):
            logger.debug(
                "Using cached token",
                extra={
                    "scope": scope.value,
                    "expires_in": record.expires_in_seconds(self._clock()),
                },
            )
            return self._to_access_token(record)

        record = self._renew(store_file, scope)
        return self._to_access_token(record)

    def get_skype_token(self, force_refresh: bool = False) -> AccessToken:
        """Return a valid skype token, deriving it from the spaces scope."""
        store_file = self._load()
        cached = store_file.skype_token
        if (
            cached is not None
            and not force_refresh
            and cached.is_valid(self._safety_margin, now=self._clock())
        ):
            return AccessToken(value=cached.value, expires_at=cached.expires_at)

        spaces = self.get_token(Scope.SPACES)
        try:
            data = self._issue_skype_token(spaces)
        except ProviderRejected as e:
            if e.status_code != 401:
                raise
            # spaces token went stale despite the margin; renew it once
            spaces = self.get_token(Scope.SPACES, force_refresh=True)
            data = self._issue_skype_token(spaces)

        tokens = data.get("tokens")
        value = tokens.get("skypeToken") if isinstance(tokens, dict) else None
        if not value:
            raise ProviderRejected("Skype token response did not include a token")
        expires_in = as_seconds(tokens.get("expiresIn"), 3600)
        skype = SkypeToken(value=str(value), expires_at=self._clock() + expires_in)

        latest = self._store.load()
        if latest.authenticated:
            latest.skype_token = skype
            self._store.save(latest)
        logger.info("Skype token issued", extra={"expires_in": expires_in})
        return AccessToken(value=skype.value, expires_at=skype.expires_at)

    def invalidate(self, scope: Scope) -> None:
        """Drop the cached access token for ``scope``.

        Used when a backend rejects a token the cache still considers valid.
        The shared refresh token and other scopes are left alone.
        """
        store_file = self._store.load()
        changed = store_file.tokens.pop(scope, None) is not None
        if scope is Scope.SPACES and store_file.skype_token is not None:
            # derived from the spaces token
            store_file.skype_token = None
            changed = True
        if changed:
            self._store.save(store_file)
            logger.info("Cached token invalidated", extra={"scope": scope.value})

    def _issue_skype_token(self, spaces: AccessToken) -> dict[str, Any]:
        retrying = network_retry(self._retry_attempts, self._retry_wait)
        return retrying(self._transport.issue_skype_token, spaces.value)

    def _load(self) -> TokenStoreFile:
        store_file = self._store.load()
        if not store_file.authenticated:
            raise ReauthenticationRequired()
        if self._tenant and store_file.tenant != self._tenant:
            raise ReauthenticationRequired(
                f"Cached credentials were issued for tenant '{store_file.tenant}', "
                f"but tenant '{self._tenant}' is configured. "
                "Run 'squads auth login' to sign in again."
            )
        return store_file

    def _is_fresh(self, record: TokenRecord) -> bool:
        return record.is_valid(self._safety_margin, now=self._clock())

    def _tenant_for(self, store_file: TokenStoreFile) -> str:
        return self._tenant or store_file.tenant or "organizations"

    def _refresh_token_for(self, store_file: TokenStoreFile, scope: Scope) -> str:
        record = store_file.tokens.get(scope)
        if self._per_scope_refresh and record is not None and record.refresh_token:
            return record.refresh_token
        assert store_file.refresh_token is not None  # checked by _load
        return store_file.refresh_token

    def _renew(self, store_file: TokenStoreFile, scope: Scope) -> TokenRecord:
        refresh_token = self._refresh_token_for(store_file, scope)
        tenant = self._tenant_for(store_file)
        logger.info("Renewing access token", extra={"scope": scope.value})

        retrying = network_retry(self._retry_attempts, self._retry_wait)
        try:
            data = retrying(
                self._transport.redeem_refresh_token, tenant, refresh_token, scope
            )
        except ProviderRejected as e:
            if e.error in REAUTH_ERRORS:
                self._forget_login(refresh_token, e)
                raise ReauthenticationRequired(
                    "Your session has expired or was revoked. "
                    "Run 'squads auth login' to sign in again."
                ) from e
            raise

        grant = TokenGrant.from_response(data, now=self._clock())
        record = TokenRecord(
            scope=scope,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or refresh_token,
            expires_at=grant.expires_at,
        )

        # Merge into the latest on-disk state so concurrent renewals of other
        # scopes are not lost.
        latest = self._store.load()
        if not latest.refresh_token or latest.refresh_token != store_file.refresh_token:
            # Logged out or signed in again while this renewal was in flight
            logger.info(
                "Login changed during renewal, not caching token",
                extra={"scope": scope.value},
            )
            return record
        latest.tokens[scope] = record
        if grant.refresh_token:
            latest.refresh_token = grant.refresh_token
        if latest.tenant is None:
            latest.tenant = tenant
        self._store.save(latest)

        logger.info(
            "Access token renewed",
            extra={
                "scope": scope.value,
                "expires_in": record.expires_in_seconds(self._clock()),
            },
        )
        return record

    def _forget_login(self, rejected: str, error: ProviderRejected) -> None:
        """Drop every credential derived from a rejected refresh token."""
        latest = self._store.load()
        if latest.refresh_token != rejected and not any(
            r.refresh_token == rejected for r in latest.tokens.values()
        ):
            # Another process already signed in again
            return
        logger.warning(
            "Refresh token rejected, clearing cached credentials",
            extra={"error": error.error},
        )
        self._store.save(TokenStoreFile(tenant=latest.tenant))

    def _to_access_token(self, record: TokenRecord) -> AccessToken:
        return AccessToken(
            value=record.access_token, expires_at=record.expires_at, scope=record.scope
        )
