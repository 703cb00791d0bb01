"""Tests for the command line entry point."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from loguru import logger
from tenacity import wait_none

from squads_cli.__main__ import main
from squads_cli.auth import AuthService
from squads_cli.config import Settings
from squads_cli.scopes import Scope
from squads_cli.store import TokenStore, TokenStoreFile
from tests.fakes import FakeClock, FakeIdentityTransport, device_success, oauth_error


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    logger.remove()


@pytest.fixture
def factory(
    store: TokenStore, transport: FakeIdentityTransport, clock: FakeClock
) -> Callable[[Settings], AuthService]:
    def build(settings: Settings) -> AuthService:
        return AuthService(
            settings,
            store=store,
            transport=transport,
            clock=clock,
            sleep=clock.sleep,
            retry_wait=wait_none(),
        )

    return build


class TestAuthCommands:
    """Tests for the auth subcommands."""

    def test_login(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        store: TokenStore,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """login shows the code and saves credentials."""
        transport.poll_script.extend(["authorization_pending", device_success()])

        code = main(["auth", "login", "--no-browser"], service_factory=factory)

        out = capsys.readouterr().out
        assert code == 0
        assert "ABCD-EFGH" in out
        assert "https://microsoft.com/devicelogin" in out
        assert "Successfully authenticated" in out
        assert store.load().refresh_token == "rt-login"
        assert transport.closed is True

    def test_login_with_tenant(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
    ) -> None:
        """--tenant selects the tenant for the device flow."""
        transport.poll_script.append(device_success())

        code = main(
            ["auth", "login", "--no-browser", "-t", "contoso.com"],
            service_factory=factory,
        )

        assert code == 0
        assert transport.device_code_calls == ["contoso.com"]

    def test_login_declined(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """A declined login exits with the login failure code."""
        transport.poll_script.append("authorization_declined")

        code = main(["auth", "login", "--no-browser"], service_factory=factory)

        assert code == 5
        assert "declined" in capsys.readouterr().err

    def test_login_copy_code(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """--copy-code pipes the user code to the first clipboard tool found."""
        runs: list[tuple[list[str], bytes]] = []

        def fake_run(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            runs.append((command, kwargs["input"]))
            return subprocess.CompletedProcess(command, 0)

        monkeypatch.setattr(
            "squads_cli.__main__.shutil.which",
            lambda name: "/usr/bin/xclip" if name == "xclip" else None,
        )
        monkeypatch.setattr("squads_cli.__main__.subprocess.run", fake_run)
        transport.poll_script.append(device_success())

        code = main(["auth", "login", "--no-browser", "--copy-code"], service_factory=factory)

        out = capsys.readouterr().out
        assert code == 0
        assert runs == [(["xclip", "-selection", "clipboard"], b"ABCD-EFGH")]
        assert "Code copied to clipboard" in out
        assert "ABCD-EFGH" in out

    def test_login_copy_code_without_clipboard(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Without a clipboard tool the code is still printed and login proceeds."""
        monkeypatch.setattr("squads_cli.__main__.shutil.which", lambda name: None)
        transport.poll_script.append(device_success())

        code = main(["auth", "login", "--no-browser", "-c"], service_factory=factory)

        out = capsys.readouterr().out
        assert code == 0
        assert "Could not copy code to clipboard" in out
        assert "ABCD-EFGH" in out

    def test_status_not_logged_in(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """status without credentials exits with the reauth code."""
        code = main(["auth", "status"], service_factory=factory)

        assert code == 3
        assert "Not authenticated" in capsys.readouterr().out

    @pytest.mark.usefixtures("logged_in")
    def test_status(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """status lists every scope."""
        code = main(["auth", "status"], service_factory=factory)

        out = capsys.readouterr().out
        assert code == 0
        assert "Authenticated" in out
        assert "spaces" in out
        assert "not cached" in out

    @pytest.mark.usefixtures("logged_in")
    def test_status_json(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """status --json prints a machine-readable summary."""
        code = main(["auth", "status", "--json"], service_factory=factory)

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["authenticated"] is True
        assert data["tenant"] == "organizations"
        assert data["scopes"]["spaces"]["valid"] is True

    @pytest.mark.usefixtures("logged_in")
    def test_refresh(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
    ) -> None:
        """refresh renews the requested scopes."""
        code = main(
            ["auth", "refresh", "--scope", "graph", "--scope", "chatsvc"],
            service_factory=factory,
        )

        assert code == 0
        assert [call[2] for call in transport.refresh_calls] == [
            Scope.GRAPH,
            Scope.CHAT_SVC,
        ]

    @pytest.mark.usefixtures("logged_in")
    def test_refresh_partial_failure(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """A scope that fails to renew makes refresh exit non-zero."""
        transport.fail_refresh(Scope.GRAPH, oauth_error("invalid_scope"))

        code = main(["auth", "refresh", "--scope", "graph"], service_factory=factory)

        assert code == 1
        assert "failed" in capsys.readouterr().err

    @pytest.mark.usefixtures("logged_in")
    def test_logout(
        self,
        factory: Callable[[Settings], AuthService],
        store: TokenStore,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """logout clears the store."""
        code = main(["auth", "logout"], service_factory=factory)

        assert code == 0
        assert not store.exists()
        assert "Credentials cleared" in capsys.readouterr().out


class TestTokenCommand:
    """Tests for the token subcommand."""

    @pytest.mark.usefixtures("logged_in")
    def test_prints_scope_token(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """token prints only the access token."""
        code = main(["token", "graph"], service_factory=factory)

        assert code == 0
        assert capsys.readouterr().out == "at-graph-1\n"

    @pytest.mark.usefixtures("logged_in")
    def test_prints_skype_token(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """token skype prints the derived skype token."""
        code = main(["token", "skype"], service_factory=factory)

        assert code == 0
        assert capsys.readouterr().out == "skype-1\n"

    @pytest.mark.usefixtures("logged_in")
    def test_unknown_scope(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """An unknown scope name is a usage error."""
        code = main(["token", "mail"], service_factory=factory)

        assert code == 1
        assert "Unknown scope" in capsys.readouterr().err

    def test_not_logged_in(
        self,
        factory: Callable[[Settings], AuthService],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Without credentials the reauth exit code is used."""
        code = main(["token", "graph"], service_factory=factory)

        assert code == 3
        assert "squads auth login" in capsys.readouterr().err

    @pytest.mark.usefixtures("logged_in")
    def test_revoked_login(
        self,
        factory: Callable[[Settings], AuthService],
        transport: FakeIdentityTransport,
        store: TokenStore,
    ) -> None:
        """A revoked refresh token exits with the reauth code."""
        transport.fail_refresh(Scope.GRAPH, oauth_error("invalid_grant"))

        code = main(["token", "graph"], service_factory=factory)

        assert code == 3
        assert store.load() == TokenStoreFile(tenant="organizations")

    def test_corrupt_store(
        self,
        factory: Callable[[Settings], AuthService],
        store: TokenStore,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """A corrupt store exits with its own code and a recovery hint."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{broken")

        code = main(["token", "graph"], service_factory=factory)

        assert code == 4
        assert "squads auth logout" in capsys.readouterr().err


class TestConfiguration:
    """Tests for configuration handling in the CLI."""

    def test_invalid_configuration(
        self,
        factory: Callable[[Settings], AuthService],
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Invalid settings exit before any service is built."""
        monkeypatch.setenv("SQUADS_API__REGION", "mars")
        built: list[Settings] = []

        def tracking(settings: Settings) -> AuthService:
            built.append(settings)
            return factory(settings)

        code = main(["auth", "status"], service_factory=tracking)

        assert code == 2
        assert built == []
        assert "Configuration error" in capsys.readouterr().err

    def test_log_level_flag(
        self,
        factory: Callable[[Settings], AuthService],
    ) -> None:
        """--log-level overrides the configured level."""
        seen: list[str] = []

        def tracking(settings: Settings) -> AuthService:
            seen.append(settings.log_level)
            return factory(settings)

        main(["--log-level", "debug", "auth", "status"], service_factory=tracking)

        assert seen == ["DEBUG"]
