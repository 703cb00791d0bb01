"""Transport layer for Teams and Graph API requests.

Every request resolves the scope its URL belongs to before asking the broker
for a token, so a token is only ever presented to the audience it was issued
for. A 401 invalidates the cached token and retries once with a fresh one.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import certifi
import httpx
from loguru import logger

from squads_cli.broker import TokenBroker
from squads_cli.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    NotFoundError,
)
from squads_cli.scopes import Scope

TEAMS_HOST = "teams.microsoft.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REGIONS = ("emea", "amer", "apac")

_TEAMS_PATH_SCOPES = (
    ("/api/csa/", Scope.CHAT_AGGREGATOR),
    ("/api/chatsvc/", Scope.CHAT_SVC),
    ("/api/mt/", Scope.SPACES),
)


def resolve_scope(url: str) -> Scope:
    """Return the scope whose token the given URL accepts.

    Raises:
        ValueError: If the URL does not belong to a known backend.
    """
    parts = urlsplit(url)
    if parts.scheme != "https":
        raise ValueError(f"Refusing to send credentials over {parts.scheme!r}: {url}")
    host = (parts.hostname or "").lower()

    if host == "graph.microsoft.com":
        return Scope.GRAPH
    if host == "api.spaces.skype.com":
        return Scope.SPACES
    if host == "ic3.teams.office.com" or host.endswith(".ic3.teams.office.com"):
        return Scope.CHAT_SVC
    if host == TEAMS_HOST:
        for prefix, scope in _TEAMS_PATH_SCOPES:
            if parts.path.startswith(prefix):
                return scope
    raise ValueError(f"No known scope for URL: {url}")


class Endpoints:
    """URL builders for the backends, for one region."""

    def __init__(self, region: str = "emea") -> None:
        if region not in REGIONS:
            raise ValueError(f"Unknown region '{region}'. Expected one of: {REGIONS}")
        self.region = region

    def graph(self, path: str) -> str:
        return f"{GRAPH_BASE_URL}/{path.lstrip('/')}"

    def chat_service(self, path: str) -> str:
        return f"https://{TEAMS_HOST}/api/chatsvc/{self.region}/{path.lstrip('/')}"

    def chat_aggregator(self, path: str) -> str:
        return f"https://{TEAMS_HOST}/api/csa/{self.region}/{path.lstrip('/')}"


class ApiClient:
    """Authenticated HTTP client for every external command.

    Args:
        broker: Source of per-scope access tokens.
        region: Region for Teams chat endpoints.
        timeout: Seconds before any single request is abandoned.
        client: Pre-built HTTP client (tests pass one backed by
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        broker: TokenBroker,
        *,
        region: str = "emea",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._broker = broker
        self.endpoints = Endpoints(region)
        self._client = client or httpx.Client(
            verify=certifi.where(),
            timeout=timeout,
            follow_redirects=False,
        )

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request and check the response.

        Raises:
            ValueError: If the URL does not belong to a known backend.
            AuthenticationError: If the backend rejects a freshly renewed token.
            NotFoundError: On 404 responses.
            APIError: On other error responses.
            APIConnectionError: If the backend is unreachable or times out.
        """
        scope = resolve_scope(url)
        token = self._broker.get_token(scope)
        response = self._send(method, url, token.value, **kwargs)

        if response.status_code == 401:
            logger.info(
                "Backend rejected cached token, renewing",
                extra={"scope": scope.value},
            )
            self._broker.invalidate(scope)
            token = self._broker.get_token(scope)
            response = self._send(method, url, token.value, **kwargs)
            if response.status_code == 401:
                raise AuthenticationError(
                    f"Authentication failed for {scope.description}. "
                    "Run 'squads auth login' to sign in again."
                )

        self._check_response(response, url)
        return response

    def get_json(self, url: str, **kwargs: Any) -> Any:
        return self.request("GET", url, **kwargs).json()

    def post_json(self, url: str, body: Any, **kwargs: Any) -> Any:
        response = self.request("POST", url, json=body, **kwargs)
        if not response.content:
            return None
        return response.json()

    def me(self) -> dict[str, Any]:
        """GET /v1.0/me"""
        return self.get_json(self.endpoints.graph("me"))  # type: ignore[no-any-return]

    def _send(
        self, method: str, url: str, access_token: str, **kwargs: Any
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        try:
            return self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise APIConnectionError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise APIConnectionError(f"{method} {url} failed to connect: {e}") from e

    def _check_response(self, response: httpx.Response, url: str) -> None:
        if response.is_success:
            return

        if response.status_code == 404:
            raise NotFoundError(url)

        # Try to extract error message from response
        try:
            error_data = response.json()
            error = error_data.get("error", {})
            message = (
                error.get("message", response.text)
                if isinstance(error, dict)
                else str(error)
            )
        except Exception:
            message = response.text

        raise APIError(response.status_code, message)
