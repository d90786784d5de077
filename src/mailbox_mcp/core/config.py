"""Application configuration models and loader utilities."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded or validated."""


class ImapAuth(BaseModel):
    """Credentials used to authenticate against an IMAP server."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    user: str = Field(min_length=1, description="The username for authentication")
    password: SecretStr = Field(
        alias="pass", description="The password for authentication"
    )

    @field_validator("password")
    @classmethod
    def _password_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("password must not be empty")
        return value


class ImapCredentials(BaseModel):
    """Settings controlling IMAP connectivity for one account."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1, description="The IMAP server hostname")
    port: int = Field(gt=0, le=65_535, description="The IMAP server port")
    secure: bool = Field(default=True, description="Whether to use implicit TLS")
    auth: ImapAuth


class Account(BaseModel):
    """A named mailbox identity with its remote credentials."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, description="The name of the account")
    description: str = Field(
        min_length=1, description="A description of the account"
    )
    imap: ImapCredentials = Field(
        description="IMAP settings and credentials for the account"
    )

    @property
    def username(self) -> str:
        """Return the IMAP login name for this account."""
        return self.imap.auth.user


class ServerSettings(BaseModel):
    """HTTP listener settings."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=3333, ge=1, le=65_535, description="Port to bind")
    session_idle_timeout_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Close client conversations idle for longer than this",
    )
    session_reap_interval_seconds: float = Field(
        default=60.0, gt=0, description="How often idle conversations are scanned"
    )


class PoolSettings(BaseModel):
    """Connection pool lifetime policy."""

    model_config = ConfigDict(extra="forbid")

    idle_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Evict sessions idle for longer than this"
    )
    reap_interval_seconds: float = Field(
        default=60.0, gt=0, description="How often idle sessions are scanned"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle brace-style structured logging"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    model_config = ConfigDict(extra="forbid")

    accounts: list[Account] = Field(min_length=1)
    server: ServerSettings = Field(default_factory=ServerSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def _unique_account_names(self) -> AppSettings:
        seen: set[str] = set()
        for account in self.accounts:
            name = account.name.strip()
            if name in seen:
                raise ValueError(f'Duplicate account name: "{name}"')
            seen.add(name)
        return self


ENV_PREFIX = "MAILBOX_MCP_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Load override values from environment variables and optional file."""
    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    collected: dict[str, Any] = {}
    for key, value in {**file_values, **env_values}.items():
        path = _normalize_key(key)
        if not path or value is None or value == "":
            continue
        normalized_value: Any = value
        lowercase_value = value.lower()
        if lowercase_value == "true":
            normalized_value = True
        elif lowercase_value == "false":
            normalized_value = False
        _merge_into_tree(collected, path, normalized_value)
    return collected


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _format_validation_error(error: ValidationError) -> str:
    issues = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "root"
        issues.append(f"{location}: {issue['msg']}")
    return ", ".join(issues)


def read_config_file(config_path: Path | str) -> dict[str, Any]:
    """Read and decode the JSON configuration document at ``config_path``."""
    absolute_path = Path(config_path).expanduser().resolve()
    try:
        contents = absolute_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Unable to read config file at {absolute_path}: {exc.strerror or exc}"
        ) from exc

    try:
        raw = json.loads(contents)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"Invalid JSON in config file at {absolute_path}: {exc.msg}"
        ) from exc

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Config validation failed for {absolute_path}: root: expected an object"
        )
    return raw


def load_app_settings(
    config_path: Path | str,
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load settings from a JSON file, applying env files and overrides."""
    raw = read_config_file(config_path)
    collected = _deep_merge(raw, _collect_env_values(env_file, include_environment))
    if overrides:
        collected = _deep_merge(collected, overrides)

    try:
        return AppSettings.model_validate(collected)
    except ValidationError as exc:
        absolute_path = Path(config_path).expanduser().resolve()
        raise ConfigError(
            f"Config validation failed for {absolute_path}: "
            f"{_format_validation_error(exc)}"
        ) from exc


__all__ = [
    "Account",
    "AppSettings",
    "ConfigError",
    "ImapAuth",
    "ImapCredentials",
    "LoggingSettings",
    "PoolSettings",
    "ServerSettings",
    "load_app_settings",
    "read_config_file",
]
