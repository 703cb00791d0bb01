"""Shared fixtures for squads-cli tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from tenacity import wait_none

from squads_cli.broker import TokenBroker
from squads_cli.config import Settings
from squads_cli.scopes import Scope
from squads_cli.store import TokenRecord, TokenStore, TokenStoreFile
from tests.fakes import FakeClock, FakeIdentityTransport


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests away from the real config file and SQUADS_* variables."""
    for key in list(os.environ):
        if key.startswith("SQUADS_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("SQUADS_CONFIG_FILE", str(tmp_path / "no-config.toml"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport(clock: FakeClock) -> FakeIdentityTransport:
    return FakeIdentityTransport(clock)


@pytest.fixture
def store(tmp_path: Path) -> TokenStore:
    return TokenStore(tmp_path / "cache" / "tokens.json")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(cache_dir=tmp_path / "cache")


@pytest.fixture
def broker(store: TokenStore, transport: FakeIdentityTransport, clock: FakeClock) -> TokenBroker:
    return TokenBroker(store, transport, retry_wait=wait_none(), clock=clock)


@pytest.fixture
def logged_in(store: TokenStore, clock: FakeClock) -> TokenStoreFile:
    """A store holding only a refresh token and a fresh spaces record."""
    store_file = TokenStoreFile(
        tenant="organizations",
        refresh_token="rt-login",
        tokens={
            Scope.SPACES: TokenRecord(
                scope=Scope.SPACES,
                access_token="at-spaces-login",
                refresh_token="rt-login",
                expires_at=clock.now + 3600,
            )
        },
    )
    store.save(store_file)
    return store_file
