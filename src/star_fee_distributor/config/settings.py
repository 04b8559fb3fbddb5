"""Configuration management for the quote-fee distributor."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.constants import USDC_MINT

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "DISTRIBUTOR_MODE"
DEFAULT_PROFILE = "dry_run"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", DEFAULT_PROFILE))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or DEFAULT_PROFILE).lower()

    if requested_mode in data and requested_mode != "default":
        merged = _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
        mode_section = merged.get("mode")
        if isinstance(mode_section, dict):
            merged["mode"] = {**mode_section, "active": requested_mode}
        else:
            merged["mode"] = {"active": requested_mode}
        return merged
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    merged = dict(_select_profile(payload))
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


class ModeConfig(BaseModel):
    """Which profile of the config file is active, and where it came from."""

    active: str = Field(default=DEFAULT_PROFILE)
    config_file: Optional[Path] = None


class DistributionConfig(BaseModel):
    """Program addresses and page sizing for the crank."""

    program_id: Optional[str] = None
    quote_mint: str = Field(default=USDC_MINT)
    page_size: int = Field(default=25, ge=1)
    max_page_size: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _page_size_within_max(self) -> "DistributionConfig":
        if self.page_size > self.max_page_size:
            raise ValueError(
                f"page_size ({self.page_size}) cannot exceed max_page_size ({self.max_page_size})"
            )
        return self


class PolicyDefaultsConfig(BaseModel):
    """Policy parameters used when a vault is initialized from the CLI."""

    investor_fee_share_bps: int = Field(default=5_000, ge=0, le=10_000)
    daily_cap: int = Field(default=1_000_000_000, gt=0)
    min_payout_lamports: int = Field(default=1_000, gt=0)
    y0: int = Field(default=1_000_000_000_000, gt=0)


class VestingConfig(BaseModel):
    """Locked-balance snapshot settings."""

    snapshot_cache_ttl_seconds: int = Field(default=300, ge=0)
    snapshot_cache_size: int = Field(default=10_000, ge=1)
    streams_file: Optional[Path] = None


class KeeperConfig(BaseModel):
    """Crank keeper retry behaviour."""

    max_retry_attempts: int = Field(default=3, ge=1, le=20)
    retry_backoff_seconds: float = Field(default=2.0, ge=0.0)

    @field_validator("retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_backoff(cls, value: Any) -> Any:
        if isinstance(value, str):
            return float(value)
        return value


class WalletConfig(BaseModel):
    """Crank caller key material."""

    private_key: Optional[str] = None
    keypair_path: Optional[Path] = None
    public_key: Optional[str] = None
    allow_test_keypair: bool = False


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./distributor.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging and alerting configuration."""

    log_level: str = Field(default="INFO")
    slack_webhook_url: Optional[AnyHttpUrl] = None
    sentry_dsn: Optional[AnyHttpUrl] = None
    sentry_environment: Optional[str] = None
    webhook_urls: List[AnyHttpUrl] = Field(default_factory=list)
    alert_throttle_seconds: int = Field(default=60, ge=0)


class EventBusConfig(BaseModel):
    """Event bus tuning."""

    enabled: bool = True
    history_size: int = Field(default=500, ge=1)
    persist_events: bool = True


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    distribution: DistributionConfig = Field(default_factory=DistributionConfig)
    policy: PolicyDefaultsConfig = Field(default_factory=PolicyDefaultsConfig)
    vesting: VestingConfig = Field(default_factory=VestingConfig)
    keeper: KeeperConfig = Field(default_factory=KeeperConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over the config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "DistributionConfig",
    "EventBusConfig",
    "KeeperConfig",
    "ModeConfig",
    "MonitoringConfig",
    "PolicyDefaultsConfig",
    "StorageConfig",
    "VestingConfig",
    "WalletConfig",
    "get_app_config",
]
