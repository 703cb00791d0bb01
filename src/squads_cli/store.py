"""On-disk token store.

A single JSON file holds the shared refresh token, one access token record per
scope, the derived skype token and the tenant the tokens were issued against.
Every CLI invocation reloads it from disk; writes go to a temporary file in the
same directory which is then atomically renamed over the old one, so a reader
never sees a half-written file. Concurrent writers are last-writer-wins.
"""

from __future__ import annotations

import json
import math
import os
import stat
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from squads_cli.exceptions import CorruptStore
from squads_cli.scopes import Scope

FORMAT_VERSION = 1


def _now(now: float | None) -> float:
    return time.time() if now is None else now


@dataclass
class TokenRecord:
    """Cached access token for one scope.

    Attributes:
        scope: Audience the access token was issued for.
        access_token: Bearer credential for that audience.
        refresh_token: Refresh token returned alongside the access token.
        expires_at: Unix timestamp when the access token expires.
    """

    scope: Scope
    access_token: str
    refresh_token: str
    expires_at: float

    def is_valid(self, buffer_seconds: float = 60, now: float | None = None) -> bool:
        """Check if token is still valid with a safety buffer."""
        return _now(now) < self.expires_at - buffer_seconds

    def expires_in_seconds(self, now: float | None = None) -> int:
        """Return seconds until token expires."""
        return max(0, int(self.expires_at - _now(now)))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "scope": self.scope.value,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenRecord:
        """Create TokenRecord from dictionary."""
        return cls(
            scope=Scope(_field(data, "scope", str)),
            access_token=_field(data, "access_token", str, required=True),
            refresh_token=_field(data, "refresh_token", str) or "",
            expires_at=_timestamp(data, "expires_at"),
        )


@dataclass
class SkypeToken:
    """Real-time messaging token derived from a spaces access token."""

    value: str
    expires_at: float

    def is_valid(self, buffer_seconds: float = 60, now: float | None = None) -> bool:
        return _now(now) < self.expires_at - buffer_seconds

    def expires_in_seconds(self, now: float | None = None) -> int:
        return max(0, int(self.expires_at - _now(now)))

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkypeToken:
        return cls(
            value=_field(data, "value", str, required=True),
            expires_at=_timestamp(data, "expires_at"),
        )


@dataclass
class TokenStoreFile:
    """In-memory view of the token store file.

    Attributes:
        tenant: Tenant the refresh token was issued against.
        refresh_token: Shared refresh token obtained by the device flow.
        tokens: Per-scope access token records.
        skype_token: Cached real-time messaging token, if any.
    """

    tenant: str | None = None
    refresh_token: str | None = None
    tokens: dict[Scope, TokenRecord] = field(default_factory=dict)
    skype_token: SkypeToken | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "version": FORMAT_VERSION,
            "tenant": self.tenant,
            "refresh_token": self.refresh_token,
            "tokens": {
                scope.value: record.to_dict()
                for scope, record in sorted(
                    self.tokens.items(), key=lambda item: item[0].value
                )
            },
            "skype_token": self.skype_token.to_dict() if self.skype_token else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TokenStoreFile:
        """Create TokenStoreFile from a parsed JSON document.

        Raises:
            ValueError: If the document does not describe a valid store.
        """
        if not isinstance(data, dict):
            raise ValueError("top-level value is not an object")
        version = data.get("version")
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported format version {version!r}")

        raw_tokens = data.get("tokens")
        if raw_tokens is None:
            raw_tokens = {}
        if not isinstance(raw_tokens, dict):
            raise ValueError("'tokens' is not an object")

        tokens: dict[Scope, TokenRecord] = {}
        for key, raw in raw_tokens.items():
            scope = Scope(key)
            if not isinstance(raw, dict):
                raise ValueError(f"record for '{key}' is not an object")
            record = TokenRecord.from_dict({"scope": key, **raw})
            if record.scope is not scope:
                raise ValueError(
                    f"record stored under '{key}' is for '{record.scope.value}'"
                )
            tokens[scope] = record

        raw_skype = data.get("skype_token")
        if raw_skype is not None and not isinstance(raw_skype, dict):
            raise ValueError("'skype_token' is not an object")

        return cls(
            tenant=_field(data, "tenant", str),
            refresh_token=_field(data, "refresh_token", str),
            tokens=tokens,
            skype_token=SkypeToken.from_dict(raw_skype) if raw_skype else None,
        )


def _field(
    data: dict[str, Any], key: str, kind: type, required: bool = False
) -> Any:
    value = data.get(key)
    if value is None:
        if required:
            raise ValueError(f"missing '{key}'")
        return None
    if not isinstance(value, kind):
        raise ValueError(f"'{key}' has type {type(value).__name__}")
    if required and not value:
        raise ValueError(f"empty '{key}'")
    return value


def _timestamp(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' is not a timestamp")
    if not math.isfinite(value):
        raise ValueError(f"'{key}' is not finite")
    return float(value)


class TokenStore:
    """Owns the token store file.

    Args:
        path: Location of the JSON file. Its parent directory is created
            on first save with owner-only permissions.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> TokenStoreFile:
        """Read the store from disk.

        Returns an empty store when the file does not exist.

        Raises:
            CorruptStore: If the file exists but is not a valid store.
        """
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return TokenStoreFile()

        self._check_permissions()
        try:
            return TokenStoreFile.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError, TypeError, OverflowError) as e:
            # UnicodeDecodeError, JSONDecodeError and unknown Scope values are ValueErrors
            raise CorruptStore(self._path, str(e)) from e

    def save(self, store_file: TokenStoreFile) -> None:
        """Atomically replace the store file with ``store_file``."""
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        try:
            directory.chmod(stat.S_IRWXU)  # 0700
        except OSError as e:
            logger.warning(
                "Could not restrict token directory permissions",
                extra={"path": str(directory), "error": str(e)},
            )

        # Unique temp name so concurrent writers never share a temp file
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=directory
        )
        temp_path = Path(temp_name)
        try:
            try:
                os.fchmod(fd, stat.S_IRUSR | stat.S_IWUSR)  # 0600
            except (OSError, AttributeError) as e:
                logger.warning(
                    "Could not restrict token store permissions",
                    extra={"path": str(self._path), "error": str(e)},
                )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(store_file.to_dict(), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(temp_path, self._path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        logger.debug("Token store saved", extra={"path": str(self._path)})

    def clear(self) -> bool:
        """Delete the store file. Returns True if a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Token store removed", extra={"path": str(self._path)})
        return True

    def _check_permissions(self) -> None:
        if os.name != "posix":
            return
        try:
            mode = self._path.stat().st_mode
        except OSError:
            return
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            logger.warning(
                "Token store is readable by other users; tightened on next save",
                extra={"path": str(self._path), "mode": f"{stat.S_IMODE(mode):o}"},
            )
