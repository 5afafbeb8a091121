"""
Settings - YAML configuration for the scan engine.

Every section is optional; omitted keys keep the component defaults.
Environment variables override the file:

    VULNSWEEP_NVD_API_KEY   nvd.api_key
    VULNSWEEP_STATE_FILE    store.state_file
    VULNSWEEP_LOG_LEVEL     logging.level

Example config.yaml:

    nvd:
      api_key: ${NVD_API_KEY}
      timeout: 30
    rate_limit:
      max_requests: 10
      window_seconds: 60
    store:
      state_file: ~/.vulnsweep/state.json
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..sources.nvd_source import NVD_CPE_API_URL, NVD_CVE_API_URL
from ..sources.retrying_client import RetryPolicy
from .notifier import NotificationConfig
from .orchestrator import OrchestratorConfig
from .rate_limiter import RateLimitConfig
from .sweeper import SweeperConfig
from .task_store import DEFAULT_HISTORY_CAPACITY


DEFAULT_STATE_FILE = "~/.vulnsweep/state.json"

ENV_OVERRIDES = {
    "VULNSWEEP_NVD_API_KEY": ("nvd", "api_key"),
    "VULNSWEEP_STATE_FILE": ("store", "state_file"),
    "VULNSWEEP_LOG_LEVEL": ("logging", "level"),
}


class SettingsError(Exception):
    """Configuration file could not be read or is invalid"""
    pass


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NvdSettings(_Section):
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)
    cve_api_url: str = NVD_CVE_API_URL
    cpe_api_url: str = NVD_CPE_API_URL


class RateLimitSettings(_Section):
    max_requests: int = Field(default=10, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class RetrySettings(_Section):
    max_attempts: int = Field(default=3, ge=1)
    default_retry_after: float = Field(default=30.0, ge=0)
    error_backoff_seconds: float = Field(default=5.0, ge=0)
    cache_ttl_seconds: float = Field(default=86400.0, gt=0)


class ScanSettings(_Section):
    request_delay: float = Field(default=12.0, ge=0)
    seconds_per_package: float = Field(default=17.0, gt=0)
    expiry_hours: float = Field(default=24.0, gt=0)
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0)


class StoreSettings(_Section):
    state_file: str = DEFAULT_STATE_FILE
    history_capacity: int = Field(default=DEFAULT_HISTORY_CAPACITY, ge=1)


class NotificationSettings(_Section):
    enabled: bool = True
    scan_completed: bool = True
    scan_failed: bool = True
    high_severity_found: bool = True


class LoggingSettings(_Section):
    level: str = "INFO"
    json_output: bool = False


class Settings(_Section):
    """Root configuration document"""
    nvd: NvdSettings = Field(default_factory=NvdSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """
        Load settings from an optional YAML file plus environment overrides.

        Args:
            path: YAML file (defaults only if None)
            environ: Environment mapping (os.environ if None)

        Raises:
            SettingsError: If the file is missing, unparsable, or invalid
        """
        data: Dict[str, Any] = {}
        if path is not None:
            data = _read_yaml(Path(path))

        _apply_env_overrides(data, os.environ if environ is None else environ)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SettingsError(f"Invalid configuration: {e}") from e

    @property
    def state_path(self) -> Path:
        return Path(self.store.state_file).expanduser()

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.rate_limit.max_requests,
            window_seconds=self.rate_limit.window_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.retry.model_dump())

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            request_delay=self.scan.request_delay,
            seconds_per_package=self.scan.seconds_per_package,
        )

    def sweeper_config(self) -> SweeperConfig:
        return SweeperConfig(
            expiry_hours=self.scan.expiry_hours,
            interval_seconds=self.scan.cleanup_interval_seconds,
        )

    def notification_config(self) -> NotificationConfig:
        return NotificationConfig(**self.notifications.model_dump())


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SettingsError(f"Configuration file not found: {path}")

    try:
        with path.open("r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(f"Configuration root must be a mapping: {path}")

    return _expand_env_vars(data)


def _expand_env_vars(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return os.path.expandvars(obj)
    else:
        return obj


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> None:
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            section_data = data.setdefault(section, {})
            if not isinstance(section_data, dict):
                raise SettingsError(f"Configuration section '{section}' must be a mapping")
            section_data[key] = value
