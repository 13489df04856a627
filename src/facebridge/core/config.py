"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads ``config.yaml`` (plus an optional
``secrets.yaml``) from the config directory, applies ``FACEBRIDGE_``
environment overrides, validates the result and hands out module-friendly
``ModuleConfig`` instances so the entrypoint can wire modules without
hand-written dictionaries.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .contracts import BaseModule, ModuleConfig


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
SECTIONS = ("endpoint", "publisher", "detection", "metrics", "status_api", "runtime", "logging")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class EndpointSettings(BaseModel):
    """Downstream consumer address."""

    model_config = ConfigDict(extra="ignore")

    scheme: Literal["ws", "wss"] = Field(default="ws")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    path: str = Field(default="")
    url: str | None = Field(default=None, description="Full URL; overrides scheme/host/port/path.")

    @property
    def resolved_url(self) -> str:
        if self.url:
            return self.url
        path = self.path if not self.path or self.path.startswith("/") else f"/{self.path}"
        return f"{self.scheme}://{self.host}:{self.port}{path}"


class PublisherSettings(BaseModel):
    """Tick cadence, reconnection policy and bus topics of the publisher."""

    model_config = ConfigDict(extra="ignore")

    tick_interval_seconds: float = Field(default=0.1, gt=0)
    retry_delay_seconds: float = Field(default=3.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    include_timestamp_in_change_key: bool = Field(default=False)
    publish_outcomes: bool = Field(default=True)
    state_topic: str = Field(default="status.connection")
    outcome_topic: str = Field(default="publish.face.outcome")


class SimulatorSettings(BaseModel):
    """Synthetic face source knobs."""

    model_config = ConfigDict(extra="ignore")

    face_count: int = Field(default=1, ge=0)
    frame_width: int = Field(default=720, gt=0)
    frame_height: int = Field(default=560, gt=0)
    hold_probability: float = Field(default=0.6, ge=0.0, le=1.0)
    latency_seconds: float = Field(default=0.02, ge=0.0)
    startup_delay_seconds: float = Field(default=0.0, ge=0.0)
    seed: int | None = Field(default=None)


class DetectionSettings(BaseModel):
    """Which detection source feeds the publisher and how confident faces must be."""

    model_config = ConfigDict(extra="ignore")

    source: Literal["simulator", "replay"] = Field(default="simulator")
    score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    replay_path: Path | None = Field(default=None)
    replay_loop: bool = Field(default=True)
    simulator: SimulatorSettings = Field(default_factory=SimulatorSettings)

    @field_validator("replay_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path | None:
        if value in (None, ""):
            return None
        return Path(value)


class MetricsSettings(BaseModel):
    """Prometheus exporter configuration."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, ge=1, le=65535)


class StatusApiSettings(BaseModel):
    """Read-only HTTP status surface."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8090, ge=1, le=65535)
    serve_api: bool = Field(default=True)


class RuntimeSettings(BaseModel):
    """Event bus and health reporting."""

    model_config = ConfigDict(extra="ignore")

    bus_queue_size: int = Field(default=256, ge=8)
    telemetry_interval_seconds: float = Field(default=5.0, gt=0)
    health_interval_seconds: float = Field(default=10.0, gt=0)


class LoggingSettings(BaseModel):
    """Root logger level and rotating file output."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    directory: Path = Field(default_factory=lambda: _REPO_ROOT / "logs")
    file_name: str = Field(default="facebridge.log")
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("directory", mode="before")
    @classmethod
    def _coerce_directory(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value
        return Path(value)

    @property
    def log_file(self) -> Path:
        return self.directory / self.file_name


class ConfigSnapshot(BaseModel):
    """
    Validated, strongly typed view of the merged configuration.

    Provides helpers to derive per-module configuration dictionaries.
    """

    model_config = ConfigDict(extra="ignore")

    endpoint: EndpointSettings = Field(default_factory=EndpointSettings)
    publisher: PublisherSettings = Field(default_factory=PublisherSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    status_api: StatusApiSettings = Field(default_factory=StatusApiSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def module_config(self, module_name: str) -> ModuleConfig:
        """Produce a ModuleConfig tailored for the requested module."""

        def _publisher_config() -> ModuleConfig:
            publisher = self.publisher
            return ModuleConfig(
                options={
                    "endpoint": self.endpoint.resolved_url,
                    "tick_interval_seconds": publisher.tick_interval_seconds,
                    "retry_delay_seconds": publisher.retry_delay_seconds,
                    "connect_timeout_seconds": publisher.connect_timeout_seconds,
                    "include_timestamp_in_change_key": publisher.include_timestamp_in_change_key,
                    "publish_outcomes": publisher.publish_outcomes,
                    "state_topic": publisher.state_topic,
                    "outcome_topic": publisher.outcome_topic,
                }
            )

        def _metrics_config() -> ModuleConfig:
            return ModuleConfig(
                enabled=self.metrics.enabled,
                options={
                    "addr": self.metrics.addr,
                    "port": self.metrics.port,
                    "state_topic": self.publisher.state_topic,
                    "outcome_topic": self.publisher.outcome_topic,
                },
            )

        def _status_api_config() -> ModuleConfig:
            return ModuleConfig(
                enabled=self.status_api.enabled,
                options={
                    "host": self.status_api.host,
                    "port": self.status_api.port,
                    "serve_api": self.status_api.serve_api,
                    "state_topic": self.publisher.state_topic,
                    "outcome_topic": self.publisher.outcome_topic,
                },
            )

        builders: dict[str, Callable[[], ModuleConfig]] = {
            "modules.publish.face_publisher": _publisher_config,
            "modules.status.prometheus_exporter": _metrics_config,
            "modules.dashboard.status_api": _status_api_config,
        }
        try:
            builder = builders[module_name]
        except KeyError as exc:
            raise KeyError(f"No module configuration defined for {module_name}") from exc
        return builder()


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="FACEBRIDGE",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
        )
        self._overrides: dict[str, Any] = {}
        self._snapshot = self._build_snapshot()

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration.

        Changes live in memory only; they are never written back to disk.
        """
        overrides = _deep_merge(self._overrides, changes)
        snapshot = self._build_snapshot(overrides)
        self._overrides = overrides
        self._snapshot = snapshot
        return self._snapshot

    def module_config_for(self, module: str | type[BaseModule] | BaseModule) -> ModuleConfig:
        """Accept module names, classes or instances."""
        if isinstance(module, BaseModule):
            module_name = module.name
        elif isinstance(module, str):
            module_name = module
        else:
            module_name = getattr(module, "name", module.__name__)
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self, overrides: dict[str, Any] | None = None) -> ConfigSnapshot:
        raw = self._settings.as_dict()
        data = {key: _section(raw, key) for key in SECTIONS}
        data = _deep_merge(data, overrides if overrides is not None else self._overrides)
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc


__all__ = [
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DetectionSettings",
    "EndpointSettings",
    "LoggingSettings",
    "MetricsSettings",
    "PublisherSettings",
    "RuntimeSettings",
    "SimulatorSettings",
    "StatusApiSettings",
]
