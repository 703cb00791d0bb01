"""Configuration using pydantic-settings.

Settings come from, highest precedence first: keyword arguments, environment
variables prefixed with ``SQUADS_`` (nested with ``__``, e.g.
``SQUADS_AUTH__TENANT``), then ``~/.config/squads-cli/config.toml``
(or the file named by ``SQUADS_CONFIG_FILE``)::

    [auth]
    tenant = "contoso.onmicrosoft.com"

    [api]
    region = "amer"
    timeout = 30
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from squads_cli.exceptions import ConfigurationError
from squads_cli.identity import DEFAULT_AUTHORITY
from squads_cli.scopes import TEAMS_CLIENT_ID
from squads_cli.transport import REGIONS

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "squads-cli" / "config.toml"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "squads-cli"
DEFAULT_TENANT = "organizations"


def config_path() -> Path:
    """Return the TOML config file location."""
    override = os.environ.get("SQUADS_CONFIG_FILE")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


class AuthSettings(BaseModel):
    # None accepts whatever tenant the cached tokens were issued for
    tenant: str | None = None
    client_id: str = TEAMS_CLIENT_ID
    authority: str = DEFAULT_AUTHORITY
    safety_margin: int = Field(default=60, ge=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    poll_timeout: float | None = Field(default=None, gt=0)
    per_scope_refresh: bool = False

    @field_validator("tenant")
    @classmethod
    def validate_tenant(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v or "/" in v:
            raise ValueError("tenant must be a tenant id, domain or 'organizations'")
        return v


class ApiSettings(BaseModel):
    region: str = "emea"
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        v = v.lower()
        if v not in REGIONS:
            raise ValueError(f"region must be one of: {', '.join(REGIONS)}")
        return v


class Settings(BaseSettings):
    """CLI settings."""

    model_config = SettingsConfigDict(
        env_prefix="SQUADS_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    auth: AuthSettings = AuthSettings()
    api: ApiSettings = ApiSettings()
    log_level: str = "WARNING"
    log_json: bool = False
    cache_dir: Path = DEFAULT_CACHE_DIR

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_path()),
        )

    @property
    def token_store_path(self) -> Path:
        return self.cache_dir / "tokens.json"

    @property
    def login_tenant(self) -> str:
        return self.auth.tenant or DEFAULT_TENANT

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known value."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @field_validator("cache_dir")
    @classmethod
    def expand_cache_dir(cls, v: Path) -> Path:
        return v.expanduser()


def load_settings(**overrides: Any) -> Settings:
    """Build settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigurationError(
            "Configuration errors:\n  - " + "\n  - ".join(errors), errors
        ) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid config file {config_path()}: {e}") from e


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once per process.
    """
    return load_settings()
