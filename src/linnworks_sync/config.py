"""
Configuration loading.

Priority (highest last):
1. Defaults on SyncSettings
2. Config file (~/.linnworks-sync/config.json)
3. LINNWORKS_* environment variables
"""

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, SecretStr, field_validator

from linnworks_sync.importer import DEFAULT_TRACKED_FIELDS
from linnworks_sync.models import ApiCredentials

logger = structlog.get_logger(__name__)

ENV_PREFIX = "LINNWORKS_"


def get_config_path() -> Path:
    return Path.home() / ".linnworks-sync" / "config.json"


class SyncSettings(BaseModel):
    """Validated pipeline settings."""

    base_url: str = "https://api.linnworks.net/api/"
    account_id: str = "default"
    application_id: str | None = None
    application_secret: SecretStr | None = None
    installation_token: SecretStr | None = None

    database_url: str = "sqlite:///~/.linnworks-sync/sync.db"
    state_file: str = "~/.linnworks-sync/state.json"

    batch_size: int = Field(50, gt=0)
    page_size: int = Field(200, gt=0)
    backoff_schedule: list[float] = Field(default_factory=lambda: [1.0, 3.0, 10.0])
    retry_after_cap: float = 60.0
    recovery_max_attempts: int = Field(3, ge=1)
    recovery_backoff_hours: list[float] = Field(default_factory=lambda: [1.0, 6.0, 24.0])
    default_lookback_days: int = Field(30, gt=0)
    max_open_orders: int = Field(1000, gt=0)
    max_processed_orders: int = Field(5000, gt=0)

    rate_limit_max_requests: int = Field(150, gt=0)
    rate_limit_window_seconds: int = Field(60, gt=0)
    max_rate_limit_wait: float = 120.0

    session_ttl_minutes: int = 55
    token_refresh_buffer_minutes: int = 5
    timeout: float = 30.0
    import_workers: int = Field(1, ge=1)

    warming_periods: list[int] = Field(default_factory=lambda: [7, 30, 90])
    warming_channels: list[str] = Field(default_factory=lambda: ["all"])
    warming_statuses: list[str] = Field(default_factory=lambda: ["all", "open", "processed"])
    warming_debounce_seconds: float = 30.0
    warming_workers: int = Field(4, ge=1)

    schedule_interval_minutes: int = Field(15, gt=0)
    tracked_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_TRACKED_FIELDS))

    @field_validator(
        "backoff_schedule", "recovery_backoff_hours", "warming_periods",
        "warming_channels", "warming_statuses", "tracked_fields",
        mode="before",
    )
    @classmethod
    def _split_lists(cls, value: Any) -> Any:
        # Environment values arrive as "1,3,10" or a JSON list
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                return json.loads(text)
            return [part.strip() for part in text.split(",") if part.strip()]
        return value

    @property
    def has_credentials(self) -> bool:
        return bool(self.application_id and self.application_secret and self.installation_token)

    def credentials(self) -> ApiCredentials | None:
        if not self.has_credentials:
            return None
        return ApiCredentials(
            application_id=self.application_id,
            application_secret=self.application_secret,
            installation_token=self.installation_token,
        )

    def to_file_dict(self) -> dict[str, Any]:
        """Plain dict for config.json, secrets included."""
        data = self.model_dump(mode="json")
        for key in ("application_secret", "installation_token"):
            secret = getattr(self, key)
            data[key] = secret.get_secret_value() if secret else None
        return data


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in SyncSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> SyncSettings:
    """
    Load settings from the config file, with environment overrides.

    Raises:
        pydantic.ValidationError: a value fails validation
    """
    config_path = Path(path).expanduser() if path else get_config_path()
    data: dict[str, Any] = {}

    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        logger.debug("Loaded config file", path=str(config_path))

    data.update(_env_overrides(dict(os.environ) if environ is None else environ))
    return SyncSettings.model_validate(data)


def save_config(settings: SyncSettings, path: str | Path | None = None) -> Path:
    """Write settings to disk, readable by the owner only (it holds secrets)."""
    config_path = Path(path).expanduser() if path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(settings.to_file_dict(), f, indent=2)

    os.chmod(config_path, 0o600)
    return config_path
