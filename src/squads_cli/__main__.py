"""CLI entry point for squads-cli.

Usage:
    squads auth login      # Sign in with a device code
    squads auth status     # Show cached credentials
    squads auth refresh    # Renew cached access tokens
    squads auth logout     # Clear cached credentials
    squads token SCOPE     # Print an access token for scripting
"""

from __future__ import annotations

import argparse
import json
import shutil
import subprocess
import sys
import webbrowser
from collections.abc import Callable
from datetime import datetime

from squads_cli.auth import AuthService, AuthStatus
from squads_cli.config import Settings, load_settings
from squads_cli.device_flow import DeviceSession
from squads_cli.exceptions import (
    APIError,
    AuthError,
    ConfigurationError,
    CorruptStore,
    DeviceFlowDenied,
    DeviceFlowExpired,
    LoginCancelled,
    ProviderRejected,
    ReauthenticationRequired,
)
from squads_cli.logging import configure_logging
from squads_cli.scopes import Scope

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_REAUTH = 3
EXIT_CORRUPT = 4
EXIT_LOGIN_FAILED = 5
EXIT_INTERRUPTED = 130

# Tried in order; the first one installed receives the text on stdin
CLIPBOARD_COMMANDS = (
    ["pbcopy"],
    ["wl-copy"],
    ["xclip", "-selection", "clipboard"],
    ["xsel", "--clipboard", "--input"],
    ["clip"],
)


def copy_to_clipboard(text: str) -> bool:
    """Copy text with the platform clipboard tool. Returns False if none worked."""
    for command in CLIPBOARD_COMMANDS:
        if shutil.which(command[0]) is None:
            continue
        try:
            result = subprocess.run(
                command, input=text.encode(), capture_output=True, timeout=5, check=False
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            return True
    return False


def _print_prompt(
    open_browser: bool, copy_code: bool = False
) -> Callable[[DeviceSession], None]:
    def display(session: DeviceSession) -> None:
        print("\n" + "=" * 60)
        print("SIGN IN REQUIRED")
        print("=" * 60)
        print(f"\nEnter this code when prompted:\n\n  {session.user_code}\n")
        if copy_code:
            if copy_to_clipboard(session.user_code):
                print("(Code copied to clipboard)\n")
            else:
                print("(Could not copy code to clipboard, enter it manually)\n")
        print(f"Sign in at:\n\n  {session.verification_uri}\n")
        if open_browser:
            try:
                if webbrowser.open(session.verification_uri):
                    print("(Browser opened automatically)")
            except webbrowser.Error:
                pass  # user opens the URL manually
        print("Waiting for authorization... (Ctrl-C to cancel)")
        print("-" * 60)

    return display


def _format_expiry(expires_at: float) -> str:
    return datetime.fromtimestamp(expires_at).strftime("%Y-%m-%d %H:%M:%S")


def cmd_login(args: argparse.Namespace, service: AuthService) -> int:
    """Sign in with the device authorization flow."""
    store_file = service.login(
        args.tenant,
        display=_print_prompt(
            open_browser=not args.no_browser, copy_code=args.copy_code
        ),
        timeout=args.timeout,
    )
    print("\nSuccessfully authenticated!")
    print(f"Tenant: {store_file.tenant}")
    print(f"Credentials saved to {service.store.path}")
    return EXIT_OK


def cmd_logout(_args: argparse.Namespace, service: AuthService) -> int:
    """Clear cached credentials."""
    if service.logout():
        print(f"Credentials cleared from {service.store.path}")
    else:
        print("No cached credentials found.")
    return EXIT_OK


def _status_dict(status: AuthStatus) -> dict[str, object]:
    return {
        "authenticated": status.authenticated,
        "tenant": status.tenant,
        "store": status.store_path,
        "scopes": {
            scope.value: {
                "expires_at": s.expires_at,
                "expires_in": s.expires_in,
                "valid": s.valid,
            }
            for scope, s in status.scopes.items()
        },
        "skype_expires_at": status.skype_expires_at,
    }


def cmd_status(args: argparse.Namespace, service: AuthService) -> int:
    """Show what is cached, optionally verifying it against Graph."""
    status = service.status()
    if args.json:
        print(json.dumps(_status_dict(status), indent=2))
        return EXIT_OK if status.authenticated else EXIT_REAUTH

    if not status.authenticated:
        print("Not authenticated")
        if status.tenant and service.settings.auth.tenant:
            print(
                f"  Cached tenant '{status.tenant}' does not match configured "
                f"tenant '{service.settings.auth.tenant}'"
            )
        print("Run 'squads auth login' to authenticate.")
        return EXIT_REAUTH

    print("Authenticated")
    print(f"  Tenant: {status.tenant}")
    print(f"  Store:  {status.store_path}")
    for scope in Scope:
        entry = status.scopes.get(scope)
        if entry is None:
            state = "not cached"
        elif entry.valid:
            state = f"valid until {_format_expiry(entry.expires_at)}"
        else:
            state = "expired (renewed on next use)"
        print(f"  {scope.value:<11} {state}")

    if args.check:
        with service.api_client() as api:
            profile = api.me()
        email = profile.get("mail") or profile.get("userPrincipalName")
        print(f"  User:  {profile.get('displayName') or '-'}")
        print(f"  Email: {email or '-'}")
    return EXIT_OK


def cmd_refresh(args: argparse.Namespace, service: AuthService) -> int:
    """Force renewal of cached access tokens."""
    scopes = [Scope.parse(s) for s in args.scope] if args.scope else None
    print("Refreshing tokens...")
    results = service.refresh(scopes)
    failed = 0
    for scope, result in results.items():
        if isinstance(result, AuthError):
            failed += 1
            print(f"  {scope.value:<11} failed: {result}", file=sys.stderr)
        else:
            print(f"  {scope.value:<11} valid until {_format_expiry(result.expires_at)}")
    return EXIT_FAILURE if failed else EXIT_OK


def cmd_token(args: argparse.Namespace, service: AuthService) -> int:
    """Print a valid access token."""
    if args.scope == "skype":
        token = service.get_skype_token()
    else:
        token = service.get_token(Scope.parse(args.scope))
    print(token.value)
    return EXIT_OK


def _exit_code(error: Exception) -> int:
    if isinstance(error, ConfigurationError | ProviderRejected):
        return EXIT_CONFIG
    if isinstance(error, ReauthenticationRequired):
        return EXIT_REAUTH
    if isinstance(error, CorruptStore):
        return EXIT_CORRUPT
    if isinstance(error, DeviceFlowDenied | DeviceFlowExpired | LoginCancelled):
        return EXIT_LOGIN_FAILED
    return EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="squads",
        description="Microsoft Teams from the command line",
    )
    parser.add_argument(
        "--log-level",
        help="Diagnostic log level (or set SQUADS_LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Write diagnostic logs as JSON lines",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    auth_parser = subparsers.add_parser("auth", help="Manage authentication")
    auth_sub = auth_parser.add_subparsers(dest="auth_command", required=True)

    login_parser = auth_sub.add_parser("login", help="Login using device code flow")
    login_parser.add_argument(
        "--tenant",
        "-t",
        help="Tenant id or domain (default: organizations)",
    )
    login_parser.add_argument(
        "--copy-code",
        "-c",
        action="store_true",
        help="Copy the sign-in code to the clipboard",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't automatically open the browser",
    )
    login_parser.add_argument(
        "--timeout",
        type=float,
        help="Give up waiting for sign-in after this many seconds",
    )
    login_parser.set_defaults(func=cmd_login)

    status_parser = auth_sub.add_parser("status", help="Check authentication status")
    status_parser.add_argument(
        "--check",
        action="store_true",
        help="Verify the credentials by fetching your profile",
    )
    status_parser.add_argument("--json", action="store_true", help="Output JSON")
    status_parser.set_defaults(func=cmd_status)

    refresh_parser = auth_sub.add_parser("refresh", help="Refresh authentication tokens")
    refresh_parser.add_argument(
        "--scope",
        action="append",
        help="Scope to refresh (repeatable; default: every cached scope)",
    )
    refresh_parser.set_defaults(func=cmd_refresh)

    logout_parser = auth_sub.add_parser("logout", help="Logout and clear tokens")
    logout_parser.set_defaults(func=cmd_logout)

    token_parser = subparsers.add_parser("token", help="Print an access token")
    token_parser.add_argument(
        "scope",
        help=f"One of: {', '.join(s.value for s in Scope)}, skype",
    )
    token_parser.set_defaults(func=cmd_token)

    return parser


def main(
    argv: list[str] | None = None,
    service_factory: Callable[[Settings], AuthService] = AuthService,
) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        overrides = {"log_level": args.log_level} if args.log_level else {}
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level, json_output=args.log_json or settings.log_json)

    service = service_factory(settings)
    try:
        return int(args.func(args, service))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except (AuthError, ConfigurationError, APIError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return _exit_code(e)
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
