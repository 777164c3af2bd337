"""Environment-driven settings for sandbox acquisition and startup."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from near_sandbox.errors import SettingsError

DEFAULT_RPC_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_PAYLOAD_SIZE = 1024 * 1024 * 1024
DEFAULT_MAX_OPEN_FILES = 3000


class SandboxSettings(BaseSettings):
    """Sandbox knobs resolved from the environment (all optional)."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
        populate_by_name=True,
        env_ignore_empty=True,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # --- Binary acquisition ---
    bin_path: Path | None = Field(
        default=None,
        alias="NEAR_SANDBOX_BIN_PATH",
        description="Prebuilt binary to use verbatim; disables downloads.",
    )
    artifact_url: str | None = Field(default=None, alias="SANDBOX_ARTIFACT_URL")
    cache_dir: Path | None = Field(default=None, alias="NEAR_SANDBOX_CACHE_DIR")
    lock_timeout_seconds: float = Field(
        default=DEFAULT_LOCK_TIMEOUT_SECONDS,
        alias="NEAR_SANDBOX_LOCK_TIMEOUT_SECS",
        ge=0.0,
    )

    # --- Startup ---
    rpc_timeout_seconds: float = Field(
        default=DEFAULT_RPC_TIMEOUT_SECONDS,
        alias="NEAR_RPC_TIMEOUT_SECS",
        gt=0.0,
    )

    # --- Node logging ---
    enable_node_log: bool = Field(default=False, alias="NEAR_ENABLE_SANDBOX_LOG")
    node_log_filter: str | None = Field(default=None, alias="NEAR_SANDBOX_LOG")
    node_log_style: str | None = Field(default=None, alias="NEAR_SANDBOX_LOG_STYLE")

    # --- Node config defaults ---
    max_payload_size: int = Field(
        default=DEFAULT_MAX_PAYLOAD_SIZE,
        alias="NEAR_SANDBOX_MAX_PAYLOAD_SIZE",
        ge=0,
    )
    max_open_files: int = Field(default=DEFAULT_MAX_OPEN_FILES, alias="NEAR_SANDBOX_MAX_FILES", ge=0)

    @field_validator("enable_node_log", mode="before")
    @classmethod
    def parse_enable_node_log(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() not in {"", "0"}
        return value

    @property
    def cache_root(self) -> Path:
        if self.cache_dir is not None:
            return self.cache_dir.expanduser()
        return Path.home() / ".near"


def load_settings() -> SandboxSettings:
    """Read settings from the environment, surfacing bad values as config errors."""

    try:
        instance = SandboxSettings()
    except ValidationError as exc:
        raise SettingsError(f"invalid sandbox environment variables: {exc}") from exc
    logging.getLogger("near_sandbox.settings").debug("sandbox settings loaded: %r", instance)
    return instance


__all__ = [
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_MAX_OPEN_FILES",
    "DEFAULT_MAX_PAYLOAD_SIZE",
    "DEFAULT_RPC_TIMEOUT_SECONDS",
    "SandboxSettings",
    "load_settings",
]
