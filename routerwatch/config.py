"""Pydantic settings for RouterWatch configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from routerwatch.core.models import PollCategory


def _load_yaml_config() -> dict[str, Any]:
    """Load config from ~/.routerwatch/config.yaml, falling back to project config.yaml."""
    user_cfg = Path.home() / ".routerwatch" / "config.yaml"
    if user_cfg.exists():
        with open(user_cfg) as f:
            return yaml.safe_load(f) or {}
    project_cfg = Path(__file__).parent.parent / "config.yaml"
    if project_cfg.exists():
        with open(project_cfg) as f:
            return yaml.safe_load(f) or {}
    return {}


class Settings(BaseSettings):
    """RouterWatch application settings.

    Priority (highest → lowest): environment variables → config.yaml → defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROUTERWATCH_",
        env_nested_delimiter="__",
    )

    # Router
    router_url: str = "http://192.168.1.1"
    username: str = "admin"
    password: SecretStr = SecretStr("")
    request_timeout: float = Field(5.0, gt=0)
    session_expiry: float = Field(600.0, gt=0)
    user_agent: str = "asusrouter-Android-DUTUtil-1.0.0.3.58-163"

    # Poll intervals (seconds)
    online_devices_interval: float = Field(60.0, gt=0)
    wan_status_interval: float = Field(60.0, gt=0)
    traffic_interval: float = Field(60.0, gt=0)
    cpu_interval: float = Field(300.0, gt=0)
    memory_interval: float = Field(300.0, gt=0)
    uptime_interval: float = Field(300.0, gt=0)
    firmware_interval: float = Field(3600.0, gt=0)

    # Polling behaviour
    backoff_factor: float = Field(5.0, ge=1)
    traffic_sample_delay: float = Field(2.0, ge=0)
    capability_settle_delay: float = Field(5.0, ge=0)

    # Triggers
    webhook_url: str | None = None

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8556

    # Logging
    log_level: str = "INFO"

    # Database
    db_path: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        yaml_values = _load_yaml_config()
        # YAML values serve as defaults; explicit env/init values take priority
        merged = {**yaml_values, **{k: v for k, v in values.items() if v is not None}}
        return merged

    def intervals(self) -> dict[PollCategory, float]:
        """Poll interval per category."""
        return {
            PollCategory.ONLINE_DEVICES: self.online_devices_interval,
            PollCategory.WAN_STATUS: self.wan_status_interval,
            PollCategory.TRAFFIC: self.traffic_interval,
            PollCategory.CPU_USAGE: self.cpu_interval,
            PollCategory.MEMORY_USAGE: self.memory_interval,
            PollCategory.UPTIME: self.uptime_interval,
            PollCategory.FIRMWARE: self.firmware_interval,
        }

    @property
    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path.home() / ".routerwatch" / "routerwatch.db"


def get_settings(**overrides: Any) -> Settings:
    """Create a Settings instance, optionally with overrides."""
    return Settings(**overrides)
