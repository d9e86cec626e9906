"""Configuration management for the tunnel sync controller.

Settings are loaded from (highest priority wins):
1. Environment variables (``CF_*``, ``SYNC_*``, ``DOCKER_*``, ``LOG_*``)
2. A token file (``CF_API_TOKEN_FILE``), only for the API token
3. Defaults
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from cf_tunnel_sync.ownership import DEFAULT_MANAGED_BY

DEFAULT_API_BASE_URL = "https://api.cloudflare.com/client/v4"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_duration(value: str) -> float:
    """Parse ``"30"``, ``"30s"``, ``"5m"`` or ``"1h30m"`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


class ControllerSettings(BaseSettings):
    """All configurable knobs for the controller.

    Environment variable names are given per field as ``validation_alias``;
    the field names themselves are accepted as keyword arguments.
    """

    # Cloudflare connection -----------------------------------------------------
    api_token: str = Field(
        default="",
        validation_alias="CF_API_TOKEN",
        description="Cloudflare API token. If empty, read from api_token_file.",
    )
    api_token_file: str = Field(
        default="",
        validation_alias="CF_API_TOKEN_FILE",
        description="Path to a file containing the Cloudflare API token (Docker/K8s secret mount).",
    )
    account_id: str = Field(..., validation_alias="CF_ACCOUNT_ID", description="Cloudflare account ID.")
    tunnel_id: str = Field(..., validation_alias="CF_TUNNEL_ID", description="ID of the tunnel to manage.")
    api_base_url: str = Field(
        default=DEFAULT_API_BASE_URL,
        validation_alias="CF_API_BASE_URL",
        description="Cloudflare API v4 base URL.",
    )
    api_timeout: float = Field(
        default=30.0,
        gt=0,
        validation_alias="CF_API_TIMEOUT",
        description="HTTP timeout in seconds for Cloudflare API calls.",
    )

    # Docker --------------------------------------------------------------------
    docker_host: str = Field(
        default="",
        validation_alias="DOCKER_HOST",
        description="Docker Engine URL. Empty uses the SDK defaults.",
    )
    docker_api_version: str = Field(
        default="",
        validation_alias="DOCKER_API_VERSION",
        description="Docker Engine API version. Empty negotiates with the daemon.",
    )

    # Reconciliation ------------------------------------------------------------
    poll_interval: float = Field(
        default=30.0,
        gt=0,
        validation_alias="SYNC_POLL_INTERVAL",
        description="Seconds between passes; accepts plain seconds or durations like '30s', '5m'.",
    )
    run_once: bool = Field(default=False, validation_alias="SYNC_RUN_ONCE", description="Exit after one pass.")
    dry_run: bool = Field(
        default=False,
        validation_alias="SYNC_DRY_RUN",
        description="Log intended writes without issuing them.",
    )
    manage_tunnel: bool = Field(
        default=False,
        validation_alias="SYNC_MANAGED_TUNNEL",
        description="Allow writing the tunnel ingress configuration.",
    )
    manage_dns: bool = Field(
        default=False,
        validation_alias="SYNC_MANAGED_DNS",
        description="Allow creating and updating tunnel CNAME records.",
    )
    delete_dns: bool = Field(
        default=False,
        validation_alias="SYNC_DELETE_DNS",
        description="Allow deleting owned CNAME records that are no longer desired.",
    )
    manage_access: bool = Field(
        default=False,
        validation_alias="SYNC_MANAGED_ACCESS",
        description="Allow creating, updating and deleting Access apps and policies.",
    )
    managed_by: str = Field(
        default=DEFAULT_MANAGED_BY,
        validation_alias="SYNC_MANAGED_BY",
        description="Ownership value written as 'managed-by=<value>' on DNS comments and Access tags.",
    )

    # Logging -------------------------------------------------------------------
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARN/WARNING, ERROR).",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        validation_alias="LOG_FORMAT",
        description="Log format: 'json' (structured) or 'console' (human-readable).",
    )

    # ---- Validators -----------------------------------------------------------

    @field_validator("poll_interval", mode="before")
    @classmethod
    def _parse_poll_interval(cls, v: str | float) -> float:
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("account_id", "tunnel_id", "api_token", "api_token_file", "docker_host", mode="before")
    @classmethod
    def _strip(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/") or DEFAULT_API_BASE_URL

    @field_validator("managed_by")
    @classmethod
    def _default_managed_by(cls, v: str) -> str:
        return v.strip() or DEFAULT_MANAGED_BY

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in _LOG_LEVELS:
            raise ValueError(f"unsupported log level {v!r}")
        return level

    @field_validator("log_format", mode="before")
    @classmethod
    def _lower_log_format(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def _resolve_api_token(self) -> ControllerSettings:
        """Fall back to the token file, then insist on having a token."""
        if not self.api_token and self.api_token_file:
            path = Path(self.api_token_file)
            if path.is_file():
                self.api_token = path.read_text().strip()
        if not self.api_token:
            raise ValueError("CF_API_TOKEN (or CF_API_TOKEN_FILE) is required")
        if not self.account_id:
            raise ValueError("CF_ACCOUNT_ID is required")
        if not self.tunnel_id:
            raise ValueError("CF_TUNNEL_ID is required")
        return self

    # ---- Pydantic-settings config ---------------------------------------------

    model_config = {
        "case_sensitive": False,
        "populate_by_name": True,
    }


def load_settings() -> ControllerSettings:
    """Load and validate controller settings from the environment.

    Raises
    ------
    pydantic.ValidationError
        If required settings are missing or invalid.
    """
    return ControllerSettings()  # type: ignore[call-arg]
