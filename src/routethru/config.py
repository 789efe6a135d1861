"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (ROUTETHRU__SERVER__PORT=8080)
  2. routethru.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_CACHE_DIR = platformdirs.user_cache_dir("routethru")
_DEFAULT_DISK_DIR = str(Path(_DEFAULT_CACHE_DIR) / "responses")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def _find_config_file() -> str | None:
    """Return the path of the first routethru.yaml found, or None."""
    candidates = [
        Path("routethru.yaml"),
        Path(platformdirs.user_config_dir("routethru")) / "routethru.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    # None serves the landing page bundled with the package
    static_dir: str | None = None


class FetcherSettings(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    # Connect-level retries only; requests that reached the upstream are never replayed
    max_retries: int = Field(default=0, ge=0, le=5)
    max_connections: int = 100
    max_keepalive_connections: int = 20
    verify_tls: bool = True
    default_user_agent: str = DEFAULT_USER_AGENT
    default_accept_language: str = "en-US,en;q=0.9"


class CacheSettings(BaseModel):
    memory_enabled: bool = True
    memory_capacity: int = Field(default=50, ge=1)
    memory_ttl_seconds: float = Field(default=300.0, gt=0)
    disk_enabled: bool = True
    disk_dir: str = _DEFAULT_DISK_DIR
    disk_ttl_hours: float = Field(default=24.0, gt=0)
    disk_max_bytes: int = Field(default=1024**3, ge=0)
    disk_max_entry_bytes: int = Field(default=100 * 1024**2, ge=0)
    sweep_interval_minutes: float = Field(default=60.0, gt=0)


class RewriterSettings(BaseModel):
    strip_security_policies: bool = True
    rewrite_scripts: bool = True


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: ROUTETHRU__CACHE__MEMORY_CAPACITY=200
        env_prefix="ROUTETHRU__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    fetcher: FetcherSettings = FetcherSettings()
    cache: CacheSettings = CacheSettings()
    rewriter: RewriterSettings = RewriterSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
