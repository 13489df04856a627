from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from facebridge.core.config import ConfigService


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    logs_dir = tmp_path / "logs"
    config_yaml = f"""
    endpoint:
      host: "10.0.0.5"
      port: 9001
      path: "faces"

    publisher:
      tick_interval_seconds: 0.05
      retry_delay_seconds: 0.5
      connect_timeout_seconds: 2

    detection:
      source: "simulator"
      score_threshold: 0.6
      simulator:
        face_count: 2
        frame_width: 64
        frame_height: 48
        seed: 7

    metrics:
      enabled: false
      port: 9999

    status_api:
      host: "127.0.0.1"
      port: 8123
      serve_api: false

    runtime:
      bus_queue_size: 32
      health_interval_seconds: 1.5

    logging:
      level: "DEBUG"
      directory: "{logs_dir.as_posix()}"
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)
