"""Configuration management for the authentication redirector."""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from auth_redirector.utils.http import (
    is_cookie_name,
    is_cookie_value,
    normalize_public_base_url,
    parse_trusted_peers,
)

_config_logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"

# Field names a backend record may carry.
PROFILE_FIELDS = frozenset(
    {
        "id",
        "email",
        "email_verified",
        "name",
        "given_name",
        "family_name",
        "picture",
        "hd",
    }
)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    trusted_peers: tuple[str, ...] = Field(
        default=("127.0.0.1", "::1"),
        description="Peer addresses or CIDR ranges allowed to call the redirector.",
    )

    @field_validator("trusted_peers")
    @classmethod
    def _validate_trusted_peers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("trusted_peers must not be empty")
        parse_trusted_peers(value)
        return value


class UrlSettings(BaseModel):
    """Public URL bases."""

    connect_url: str
    static_url: str | None = None
    default_after: str | None = None

    @field_validator("connect_url", "static_url")
    @classmethod
    def _normalize(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_public_base_url(value)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "UrlSettings":
        if self.static_url is None:
            self.static_url = self.connect_url
        if not self.default_after:
            self.default_after = self.connect_url
        return self


class OAuthSettings(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1, repr=False)
    authorize_endpoint: str = Field(default=GOOGLE_AUTHORIZE_ENDPOINT)
    token_endpoint: str = Field(default=GOOGLE_TOKEN_ENDPOINT)
    userinfo_endpoint: str = Field(default=GOOGLE_USERINFO_ENDPOINT)
    scopes: tuple[str, ...] = Field(default=("email",))
    timeout_seconds: float = Field(default=15.0, gt=0)
    client_registry_max_entries: int = Field(default=1000, ge=1)


class CookieSettings(BaseModel):
    name: str = Field(default="ID", min_length=1)
    domain: str | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not is_cookie_name(value):
            raise ValueError(f"cookie name must be an HTTP token: {value!r}")
        return value

    @field_validator("domain")
    @classmethod
    def _validate_domain(cls, value: str | None) -> str | None:
        if not value:
            return None
        if not is_cookie_value(value):
            raise ValueError(f"cookie domain contains invalid characters: {value!r}")
        return value


class PolicySettings(BaseModel):
    email_pattern: str = Field(default=".*")
    # None disables hashing; "" hashes without salt.
    salt: str | None = Field(default=None, repr=False)

    @field_validator("email_pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"email_pattern is not a valid regular expression: {exc}") from exc
        return value


class BackendSettings(BaseModel):
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    fields: tuple[str, ...] = Field(default=("id",))

    @field_validator("fields")
    @classmethod
    def _validate_fields(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = sorted(set(value) - PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown backend fields: {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _host_and_port_together(self) -> "BackendSettings":
        if (self.host is None) != (self.port is None):
            raise ValueError("backend host and port must be set together")
        return self

    @property
    def enabled(self) -> bool:
        return self.host is not None and self.port is not None


class LoginPageSettings(BaseModel):
    template_path: str | None = None


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    urls: UrlSettings
    oauth: OAuthSettings
    cookie: CookieSettings = Field(default_factory=CookieSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    login_page: LoginPageSettings = Field(default_factory=LoginPageSettings)


# (group, field) -> environment variable
ENV_KEYS: dict[tuple[str, str], str] = {
    ("server", "host"): "REDIRECTOR_HOST",
    ("server", "port"): "REDIRECTOR_PORT",
    ("server", "trusted_peers"): "REDIRECTOR_TRUSTED_PEERS",
    ("logging", "level"): "LOG_LEVEL",
    ("logging", "file"): "LOG_FILE",
    ("urls", "connect_url"): "CONNECT_URL",
    ("urls", "static_url"): "STATIC_URL",
    ("urls", "default_after"): "DEFAULT_AFTER_URL",
    ("oauth", "client_id"): "OAUTH_CLIENT_ID",
    ("oauth", "client_secret"): "OAUTH_CLIENT_SECRET",
    ("oauth", "authorize_endpoint"): "OAUTH_AUTHORIZE_ENDPOINT",
    ("oauth", "token_endpoint"): "OAUTH_TOKEN_ENDPOINT",
    ("oauth", "userinfo_endpoint"): "OAUTH_USERINFO_ENDPOINT",
    ("oauth", "scopes"): "OAUTH_SCOPES",
    ("oauth", "timeout_seconds"): "OAUTH_TIMEOUT_SECONDS",
    ("oauth", "client_registry_max_entries"): "OAUTH_CLIENT_REGISTRY_MAX_ENTRIES",
    ("cookie", "name"): "COOKIE_NAME",
    ("cookie", "domain"): "COOKIE_DOMAIN",
    ("policy", "email_pattern"): "EMAIL_PATTERN",
    ("policy", "salt"): "ID_SALT",
    ("backend", "host"): "BACKEND_HOST",
    ("backend", "port"): "BACKEND_PORT",
    ("backend", "fields"): "BACKEND_FIELDS",
    ("login_page", "template_path"): "LOGIN_TEMPLATE_PATH",
}

_CSV_FIELDS = frozenset(
    {("server", "trusted_peers"), ("oauth", "scopes"), ("backend", "fields")}
)
# Fields where an empty string is meaningful and must not collapse to "unset".
_EMPTY_IS_VALUE = frozenset({("policy", "salt")})

CONFIG_PATH_ENV = "REDIRECTOR_CONFIG_PATH"


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} and $VAR patterns with environment variables."""

    def replace(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replace, value)


def _process_env_vars(obj: Any) -> Any:
    """Recursively substitute environment variables in strings."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _process_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_process_env_vars(item) for item in obj]
    return obj


def load_config_file(config_path: str | Path) -> dict[str, Any]:
    """Load a YAML settings file, substituting environment references."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw_data = yaml.safe_load(f)

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return _process_env_vars(raw_data)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay environment variables onto file-provided settings."""
    merged: dict[str, Any] = {
        group: dict(values) if isinstance(values, dict) else values
        for group, values in data.items()
    }
    for (group, field), env_key in ENV_KEYS.items():
        value = os.environ.get(env_key)
        if value is None:
            continue
        if (group, field) not in _EMPTY_IS_VALUE and value.strip() == "":
            continue
        section = merged.setdefault(group, {})
        if (group, field) in _CSV_FIELDS:
            section[field] = tuple(_split_csv_preserve_case(value))
        elif (group, field) in _EMPTY_IS_VALUE:
            section[field] = value
        else:
            section[field] = value.strip()
    return merged


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")

    file_data: dict[str, Any] = {}
    config_path = os.getenv(CONFIG_PATH_ENV)
    if config_path:
        _config_logger.info("Loading settings file: %s", config_path)
        file_data = load_config_file(config_path)

    settings_data = _apply_env_overrides(file_data)

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if not settings.backend.enabled:
        _config_logger.info("No backend configured; cookies carry the derived id directly")

    return settings
