"""Backend audiences the CLI authenticates to independently."""

from __future__ import annotations

from enum import Enum

# Public client id of the first-party Teams web client.
TEAMS_CLIENT_ID = "1fec8e78-bce4-4aaf-ab1b-5451cc387264"

# Resource requested by the device-code endpoint. The token issued at the end
# of the device flow is valid for this audience.
DEVICE_CODE_RESOURCE = "https://api.spaces.skype.com"


class Scope(Enum):
    """One of the four disjoint audiences used by the CLI.

    The enum value is the stable key used in the token store file; the
    ``audience`` is what gets sent to the identity provider.
    """

    CHAT_SVC = "chatsvc"
    CHAT_AGGREGATOR = "chatsvcagg"
    GRAPH = "graph"
    SPACES = "spaces"

    @property
    def audience(self) -> str:
        """OAuth scope string requested from the provider."""
        return _AUDIENCES[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def parse(cls, name: str) -> Scope:
        """Look up a scope by store key, enum name or audience URL."""
        key = name.strip()
        for scope in cls:
            if key in (scope.value, scope.name, scope.name.lower(), scope.audience):
                return scope
        valid = ", ".join(s.value for s in cls)
        raise ValueError(f"Unknown scope '{name}'. Expected one of: {valid}")


_AUDIENCES = {
    Scope.CHAT_SVC: "https://ic3.teams.office.com/.default",
    Scope.CHAT_AGGREGATOR: "https://chatsvcagg.teams.microsoft.com/.default",
    Scope.GRAPH: "https://graph.microsoft.com/.default",
    Scope.SPACES: "https://api.spaces.skype.com/Authorization.ReadWrite",
}

_DESCRIPTIONS = {
    Scope.CHAT_SVC: "chat service",
    Scope.CHAT_AGGREGATOR: "chat aggregation service",
    Scope.GRAPH: "Microsoft Graph",
    Scope.SPACES: "real-time messaging",
}
