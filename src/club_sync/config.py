"""
Club Sync Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with CLUB_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from club_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        directory={"base_url": "https://club.example", "username": "sync"},
        tracking_db="tracking.sqlite",
    )
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from club_sync.errors import ConfigurationError


REDACTED = "***REDACTED***"


class DirectoryConfig(BaseModel):
    """Directory/CRM target (WordPress REST API)."""

    base_url: str = Field(
        default="",
        description="Site URL, e.g. https://club.example",
    )
    username: str = Field(
        default="",
        description="User owning the application password",
    )
    app_password: SecretStr = Field(
        default=SecretStr(""),
        description="WordPress application password",
    )
    per_page: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Page size for remote listings",
    )
    relationship_types: dict[str, int] = Field(
        default_factory=lambda: {"parent": 8, "child": 9, "sibling": 10},
        description="Relationship kind to directory term id (drop sibling to skip sibling links)",
    )
    api_namespace: str = Field(
        default="rondo/v1",
        description="REST namespace of the custom people endpoints (photo upload)",
    )


class MailingListConfig(BaseModel):
    """Mailing-list target (Laposta-style API)."""

    base_url: str = Field(default="https://api.laposta.nl/v2")
    api_key: SecretStr = Field(default=SecretStr(""))
    list_id: str = Field(default="", description="List receiving member subscriptions")


class HelpdeskConfig(BaseModel):
    """Helpdesk target (FreeScout-style API)."""

    base_url: str = Field(default="")
    api_key: SecretStr = Field(default=SecretStr(""))


class PortalConfig(BaseModel):
    """Source administration portal used by reverse sync."""

    base_url: str = Field(default="")
    username: str = Field(default="")
    password: SecretStr = Field(default=SecretStr(""))
    auth_marker: str = Field(
        default="/auth/realms/",
        description="URL fragment identifying the login surface",
    )


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    force: bool = Field(
        default=False,
        description="Sync every tracked row even when hashes match",
    )
    entity_types: list[str] = Field(
        default_factory=list,
        description="Entity types to sync (empty = all)",
    )
    allow_empty_snapshot: bool = Field(
        default=False,
        description="Delete every tracked row when the snapshot has none of a type",
    )
    delete_untracked: bool = Field(
        default=True,
        description="Delete remote objects unknown to the tracking store",
    )
    photos_dir: Path = Field(
        default=Path("photos"),
        description="Downloaded member photos, named <member_id>.<ext>",
    )


class RetryConfig(BaseModel):
    """Bounded retry with exponential backoff and jitter."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before the second attempt, doubled per attempt",
    )
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: float = Field(
        default=1.0,
        ge=0.0,
        description="Upper bound of the random delay added to each backoff",
    )


class RateLimitConfig(BaseModel):
    """Random pause inserted between entities."""

    min_delay: float = Field(default=0.0, ge=0.0)
    max_delay: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "RateLimitConfig":
        if self.max_delay < self.min_delay:
            raise ValueError("rate_limit.max_delay must be >= min_delay")
        return self


class TimeoutConfig(BaseModel):
    """Timeouts for remote calls, in seconds."""

    request: float = Field(default=30.0, gt=0)
    connect: float = Field(default=10.0, gt=0)
    optional_capture: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for captures that degrade to no data",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=3, ge=1, le=10)


class Settings(BaseSettings):
    """
    Main settings class for Club Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (CLUB_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        export CLUB_SYNC_DIRECTORY__BASE_URL="https://club.example"
        export CLUB_SYNC_DIRECTORY__APP_PASSWORD="xxxx xxxx"
        settings = Settings()
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUB_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    tracking_db: Path = Field(
        default=Path("club-sync.sqlite"),
        description="Path to the local tracking store",
    )

    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
    mailing_list: MailingListConfig = Field(default_factory=MailingListConfig)
    helpdesk: HelpdeskConfig = Field(default_factory=HelpdeskConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(min_delay=0.1, max_delay=0.5)
    )
    reverse_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(min_delay=1.0, max_delay=2.0)
    )
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file with secrets masked."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        data["directory"]["app_password"] = REDACTED
        data["mailing_list"]["api_key"] = REDACTED
        data["helpdesk"]["api_key"] = REDACTED
        data["portal"]["password"] = REDACTED

        if path.suffix in (".toml", ".tml"):
            lines = []
            for key, value in data.items():
                if not isinstance(value, dict):
                    lines.append(f"{key} = {json.dumps(value)}")
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        if isinstance(v, dict):
                            inline = ", ".join(f"{ik} = {json.dumps(iv)}" for ik, iv in v.items())
                            lines.append(f"{k} = {{ {inline} }}")
                        else:
                            lines.append(f"{k} = {json.dumps(v)}")
            path.write_text("\n".join(lines) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_credentials(self, targets: list[str] | None = None) -> list[str]:
        """
        Validate that credentials for the given targets are present.

        Args:
            targets: Any of "directory", "mailing_list", "helpdesk", "portal".
                Defaults to the directory only.

        Returns:
            List of error messages (empty when everything is configured)
        """
        targets = targets or ["directory"]
        errors: list[str] = []

        if "directory" in targets:
            if not self.directory.base_url:
                errors.append("directory.base_url is required")
            if not self.directory.username:
                errors.append("directory.username is required")
            if not self.directory.app_password.get_secret_value():
                errors.append("directory.app_password is required")

        if "mailing_list" in targets:
            if not self.mailing_list.api_key.get_secret_value():
                errors.append("mailing_list.api_key is required")
            if not self.mailing_list.list_id:
                errors.append("mailing_list.list_id is required")

        if "helpdesk" in targets:
            if not self.helpdesk.base_url:
                errors.append("helpdesk.base_url is required")
            if not self.helpdesk.api_key.get_secret_value():
                errors.append("helpdesk.api_key is required")

        if "portal" in targets:
            if not self.portal.base_url:
                errors.append("portal.base_url is required")
            if not self.portal.username or not self.portal.password.get_secret_value():
                errors.append("portal.username and portal.password are required")

        return errors

    def require_credentials(self, targets: list[str] | None = None) -> None:
        """Raise ConfigurationError if any credential for ``targets`` is missing."""
        errors = self.validate_credentials(targets)
        if errors:
            raise ConfigurationError("; ".join(errors), details=errors)


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Top-level settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
    else:
        settings = Settings()

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        data = settings.model_dump()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key].update(value)
            else:
                data[key] = value
        settings = Settings.model_validate(data)

    return settings
