"""Configuration system for loopauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.loopauth] section (project-level)
3. ./loopauth.toml (project-level, explicit)
4. ~/.config/loopauth/config.toml (user-level, overrides project)
5. File named by LOOPAUTH_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use LOOPAUTH_ prefix with nested delimiter __.
Example: LOOPAUTH_OAUTH__CLIENT_ID, LOOPAUTH_LISTENER__TIMEOUT_SECONDS
"""

from __future__ import annotations

import json
import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("loopauth.config")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105


def _user_config_path() -> Path:
    """Per-user config file location for this platform."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", "~"))
    else:
        base = Path("~/.config")
    return (base / "loopauth" / "config.toml").expanduser()


def _find_config_files() -> list[Path]:
    """Existing config files, lowest precedence first."""
    candidates = [
        Path("pyproject.toml"),  # [tool.loopauth] table only
        Path("loopauth.toml"),
        _user_config_path(),
    ]
    explicit = os.environ.get("LOOPAUTH_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit))
    return [path for path in candidates if path.is_file()]


def _read_toml(path: Path) -> dict[str, Any]:
    """Parse one config file; unreadable files count as empty."""
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if path.name == "pyproject.toml":
        return data.get("tool", {}).get("loopauth", {})
    return data


def _load_toml_config() -> dict[str, Any]:
    """Merge every config file found, later files winning."""
    merged: dict[str, Any] = {}
    for path in _find_config_files():
        merged = _deep_merge(merged, _read_toml(path))
    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``override`` on a copy of ``base``."""
    result = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = _deep_merge(current, value)
        result[key] = value
    return result


# Never written out by the export helpers.
_SENSITIVE_FIELDS: frozenset[str] = frozenset({"client_secret"})

_REDACTED = "********"


class OAuthSettings(BaseSettings):
    """OAuth2 provider configuration.

    Environment prefix: LOOPAUTH_OAUTH__
    Example: LOOPAUTH_OAUTH__CLIENT_ID=your-client-id

    TOML section: [oauth]
    """

    model_config = SettingsConfigDict(
        env_prefix="LOOPAUTH_OAUTH__",
        extra="ignore",
    )

    client_id: str = Field(
        default="",
        description="OAuth2 client ID of the installed application",
    )
    client_secret: str = Field(
        default="",
        description="Client secret, for providers that issue one to installed apps",
    )
    redirect_scheme: str = Field(
        default="",
        description=(
            "Scheme used to report the captured redirect back to the caller, "
            "usually the reversed client ID (e.g. com.googleusercontent.apps.123)"
        ),
    )
    authorize_url: str = Field(
        default=GOOGLE_AUTHORIZE_URL,
        description="Authorization endpoint URL",
    )
    token_url: str = Field(
        default=GOOGLE_TOKEN_URL,
        description="Token exchange endpoint URL",
    )
    scopes: str = Field(
        default="openid email profile",
        description="Space-separated OAuth2 scopes to request",
    )
    prompt: str = Field(
        default="select_account",
        description="Value of the 'prompt' authorization parameter (empty to omit)",
    )
    exchange_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the token exchange request",
    )

    @property
    def scope_list(self) -> list[str]:
        """Scopes as a list."""
        return self.scopes.split()

    def extra_authorize_params(self) -> dict[str, str]:
        """Additional query parameters for the authorization URL."""
        return {"prompt": self.prompt} if self.prompt else {}


class ListenerSettings(BaseSettings):
    """Loopback callback listener settings.

    Environment prefix: LOOPAUTH_LISTENER__
    Example: LOOPAUTH_LISTENER__TIMEOUT_SECONDS=120

    TOML section: [listener]
    """

    model_config = SettingsConfigDict(
        env_prefix="LOOPAUTH_LISTENER__",
        extra="ignore",
    )

    host: Literal["127.0.0.1"] = Field(
        default="127.0.0.1",
        description="Bind address (loopback only)",
    )
    callback_path: str = Field(
        default="/callback",
        description="Path the provider redirects to",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Maximum seconds to wait for the browser redirect",
    )
    max_request_bytes: int = Field(
        default=8192,
        ge=256,
        description="Largest request head accepted before the request line ends",
    )
    read_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Maximum seconds to wait for the request line once connected",
    )

    @field_validator("callback_path")
    @classmethod
    def _validate_callback_path(cls, v: str) -> str:
        """Require an absolute path without a query string."""
        if not v.startswith("/") or "?" in v:
            msg = f"callback_path must be an absolute path without a query, got {v!r}"
            raise ValueError(msg)
        return v


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: LOOPAUTH_LOG__
    Example: LOOPAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="LOOPAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class LoopAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: LOOPAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.loopauth] section
    3. ./loopauth.toml (project-level)
    4. ~/.config/loopauth/config.toml (user-level, overrides project)
    5. LOOPAUTH_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="LOOPAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()

        # Keys set through LOOPAUTH_<SECTION>__* must not be shadowed by TOML,
        # since section values reach the section models as init kwargs.
        for name, (section_cls, _title) in _SECTIONS.items():
            section = toml_config.get(name)
            if isinstance(section, dict):
                prefix = section_cls.model_config.get("env_prefix", "")
                toml_config[name] = {
                    key: value
                    for key, value in section.items()
                    if f"{prefix}{key}".upper() not in os.environ
                }

        merged = _deep_merge(toml_config, data)
        for name, (section_cls, _title) in _SECTIONS.items():
            if isinstance(merged.get(name), dict):
                merged[name] = section_cls(**merged[name])

        super().__init__(**merged)

    def _redacted_items(self, section: str) -> list[tuple[str, Any]]:
        """Field/value pairs of one section with secrets replaced."""
        values = getattr(self, section).model_dump()
        return [
            (key, _REDACTED if key in _SENSITIVE_FIELDS else value) for key, value in values.items()
        ]

    def to_toml(self) -> str:
        """Export settings as TOML, secrets redacted."""
        lines = ["# loopauth Configuration", "# Generated by: loopauth config --toml"]
        for section in _SECTIONS:
            lines += ["", f"[{section}]"]
            lines += [f"{key} = {_toml_value(value)}" for key, value in self._redacted_items(section)]
        return "\n".join(lines) + "\n"

    def to_env(self) -> str:
        """Export settings as shell ``export`` lines, secrets redacted."""
        lines = ["# loopauth Environment Variables", "# Generated by: loopauth config --env", ""]
        for section in _SECTIONS:
            prefix = f"LOOPAUTH_{section.upper()}__"
            lines += [
                f'export {prefix}{key.upper()}="{_env_value(value)}"'
                for key, value in self._redacted_items(section)
            ]
        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["loopauth Configuration", "=" * 60]
        for section, (_cls, title) in _SECTIONS.items():
            lines += ["", title, "-" * 40]
            for key, value in self._redacted_items(section):
                text = str(value)
                if len(text) > 50:
                    text = text[:47] + "..."
                lines.append(f"  {key:24} = {text}")
        return "\n".join(lines)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return json.dumps(value)
    return str(value)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# name -> (model, display title)
_SECTIONS: dict[str, tuple[type[BaseSettings], str]] = {
    "oauth": (OAuthSettings, "OAuth2 Provider"),
    "listener": (ListenerSettings, "Loopback Listener"),
    "log": (LogSettings, "Logging"),
}


@lru_cache(maxsize=1)
def get_settings() -> LoopAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return LoopAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> LoopAuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
