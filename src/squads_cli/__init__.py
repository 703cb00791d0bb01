"""squads-cli - Microsoft Teams from the command line.

Signs in once with the OAuth 2.0 device authorization grant, then derives and
caches a separate access token for each backend audience (chat service, chat
aggregation, Microsoft Graph, real-time messaging). Tokens are cached in
~/.cache/squads-cli/tokens.json with owner-only permissions and renewed
silently from the shared refresh token when they expire.

Example:
    from squads_cli import AuthService, Scope, load_settings

    service = AuthService(load_settings())
    with service.api_client() as api:
        profile = api.me()

    token = service.get_token(Scope.GRAPH)
"""

from squads_cli.auth import AuthService, AuthStatus
from squads_cli.broker import AccessToken, TokenBroker
from squads_cli.config import Settings, get_settings, load_settings
from squads_cli.device_flow import DeviceFlow, DeviceSession
from squads_cli.scopes import Scope
from squads_cli.store import TokenRecord, TokenStore, TokenStoreFile
from squads_cli.transport import ApiClient

__version__ = "0.1.0"
__all__ = [
    "AccessToken",
    "ApiClient",
    "AuthService",
    "AuthStatus",
    "DeviceFlow",
    "DeviceSession",
    "Scope",
    "Settings",
    "TokenBroker",
    "TokenRecord",
    "TokenStore",
    "TokenStoreFile",
    "get_settings",
    "load_settings",
]
