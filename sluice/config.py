import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sluice.defaults import NOTIFICATION_DEFAULT_CHANNELS, TRANSITION_PROCESSING_INTERVAL_MINUTES
from sluice.model import RetryPolicy

_BOOL_KEYS = {
    "auto_process_transitions",
    "enable_prometheus",
    "enable_otel",
    "create_tables",
    "load_default_templates",
}
_INT_KEYS = {
    "processing_interval_seconds",
    "lease_ttl_seconds",
    "max_workers",
    "notification_max_retries",
}
_FLOAT_KEYS = {
    "notification_backoff_factor",
    "notification_backoff_min_seconds",
    "notification_backoff_max_seconds",
}
_LIST_KEYS = {"default_channels", "template_files"}


@dataclass
class EngineConfig:
    database_url: str | None = None
    processing_interval_seconds: int = TRANSITION_PROCESSING_INTERVAL_MINUTES * 60
    # Overrides processing_interval_seconds when set.
    processing_cron: str | None = None
    auto_process_transitions: bool = True
    lease_ttl_seconds: int = 60
    max_workers: int = 8
    notification_max_retries: int = 3
    notification_backoff_factor: float = 2.0
    notification_backoff_min_seconds: float = 1.0
    notification_backoff_max_seconds: float = 60.0
    default_channels: list[str] = field(
        default_factory=lambda: list(NOTIFICATION_DEFAULT_CHANNELS)
    )
    template_files: list[str] = field(default_factory=list)
    load_default_templates: bool = True
    enable_prometheus: bool = False
    enable_otel: bool = False
    create_tables: bool = True

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build a config from a ``[sluice]`` table, ignoring unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def processing_interval(self) -> timedelta:
        return timedelta(seconds=self.processing_interval_seconds)

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_ttl_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.notification_max_retries,
            backoff_factor=self.notification_backoff_factor,
            backoff_min=timedelta(seconds=self.notification_backoff_min_seconds),
            backoff_max=timedelta(seconds=self.notification_backoff_max_seconds),
        )


def load_sluice_toml(path: str | None = None) -> dict[str, Any]:
    """Load a ``sluice.toml`` configuration file.

    Searches (in order):
    1. The explicit ``path`` argument.
    2. ``$SLUICE_CONFIG`` environment variable.
    3. ``sluice.toml`` in the current working directory.

    Returns an empty dict (plus any environment overrides) if no file is found.

    .. code-block:: toml

        [sluice]
        database_url = "postgresql+asyncpg://..."
        processing_interval_seconds = 300
        lease_ttl_seconds = 60
        max_workers = 8
        notification_max_retries = 3
        default_channels = ["email", "in_app"]
        template_files = ["templates/graduate.toml"]

    Environment variables prefixed with ``SLUICE_`` override TOML values (e.g.
    ``SLUICE_MAX_WORKERS=16``); list values are comma separated.
    """
    candidates = [
        path,
        os.getenv("SLUICE_CONFIG"),
        "sluice.toml",
    ]
    for candidate in candidates:
        if candidate and os.path.exists(candidate):
            with open(candidate, "rb") as fh:
                data = tomllib.load(fh)
            result: dict[str, Any] = data.get("sluice", {})
            _apply_env_overrides(result)
            return result

    result = {}
    _apply_env_overrides(result)
    return result


def load_engine_config(path: str | None = None) -> EngineConfig:
    return EngineConfig.from_mapping(load_sluice_toml(path))


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Apply ``SLUICE_*`` environment variables on top of cfg dict (in-place)."""
    for env_key, env_val in os.environ.items():
        if not env_key.startswith("SLUICE_") or env_key == "SLUICE_CONFIG":
            continue
        cfg_key = env_key[len("SLUICE_"):].lower()
        if cfg_key in _BOOL_KEYS:
            cfg[cfg_key] = env_val.lower() in ("1", "true", "yes")
        elif cfg_key in _INT_KEYS:
            try:
                cfg[cfg_key] = int(env_val)
            except ValueError:
                pass
        elif cfg_key in _FLOAT_KEYS:
            try:
                cfg[cfg_key] = float(env_val)
            except ValueError:
                pass
        elif cfg_key in _LIST_KEYS:
            cfg[cfg_key] = [v.strip() for v in env_val.split(",") if v.strip()]
        else:
            cfg[cfg_key] = env_val
