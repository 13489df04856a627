"""
CLI entrypoint that boots the publisher and its status surfaces.

The entrypoint loads the Dynaconf configuration, builds the detection source,
registers the publisher, the Prometheus exporter and the status API with the
orchestrator, and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path

from .core.bus import EventBus
from .core.config import ConfigError, ConfigService, ConfigSnapshot, LoggingSettings
from .core.orchestrator import Orchestrator
from .modules import (
    DetectionSource,
    FacePublisher,
    PrometheusExporter,
    ReplayDetectionSource,
    SimulatedFaceSource,
    StatusApi,
)

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str, settings: LoggingSettings | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)
    if settings is not None:
        _ensure_rotating_file_handler(
            settings.log_file, max_mb=settings.max_mb, backup_count=settings.backup_count
        )


async def build_source(snapshot: ConfigSnapshot) -> DetectionSource:
    """Instantiate the detection source selected in ``detection.source``."""

    detection = snapshot.detection
    if detection.source == "replay":
        if detection.replay_path is None:
            raise ConfigError("detection.replay_path is required for the replay source.")
        source = ReplayDetectionSource(
            detection.replay_path,
            loop=detection.replay_loop,
            score_threshold=detection.score_threshold,
        )
        await source.load()
        return source
    simulator = detection.simulator
    return SimulatedFaceSource(
        face_count=simulator.face_count,
        frame_width=simulator.frame_width,
        frame_height=simulator.frame_height,
        score_threshold=detection.score_threshold,
        hold_probability=simulator.hold_probability,
        latency_seconds=simulator.latency_seconds,
        startup_delay_seconds=simulator.startup_delay_seconds,
        seed=simulator.seed,
    )


async def build_orchestrator(
    config_service: ConfigService,
    *,
    source: DetectionSource | None = None,
) -> Orchestrator:
    """Create the orchestrator and register every enabled module."""

    snapshot = config_service.snapshot
    runtime = snapshot.runtime
    orchestrator = Orchestrator(
        bus=EventBus(
            queue_size=runtime.bus_queue_size,
            telemetry_interval=runtime.telemetry_interval_seconds,
        ),
        health_interval=runtime.health_interval_seconds,
    )
    publisher = FacePublisher(source=source or await build_source(snapshot))
    await orchestrator.add_module(publisher, config_service.module_config_for(publisher))
    for module_cls in (PrometheusExporter, StatusApi):
        module_config = config_service.module_config_for(module_cls)
        if not module_config.enabled:
            LOGGER.info("Config disabled for %s; skipping", module_cls.name)
            continue
        await orchestrator.add_module(module_cls(), module_config)
    return orchestrator


async def run_bridge(config_service: ConfigService) -> None:
    """Run the bridge until interrupted."""

    orchestrator = await build_orchestrator(config_service)
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await orchestrator.start()
    LOGGER.info(
        "facebridge streaming to %s. Press Ctrl+C to stop.",
        config_service.snapshot.endpoint.resolved_url,
    )
    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def cli_overrides(args: argparse.Namespace) -> dict[str, object]:
    """Translate CLI flags into configuration changes."""

    changes: dict[str, dict[str, object]] = {}
    if args.endpoint:
        changes.setdefault("endpoint", {})["url"] = args.endpoint
    if args.source:
        changes.setdefault("detection", {})["source"] = args.source
    if args.replay_file:
        changes.setdefault("detection", {})["replay_path"] = str(args.replay_file)
    if args.score_threshold is not None:
        changes.setdefault("detection", {})["score_threshold"] = args.score_threshold
    if args.no_status_api:
        changes.setdefault("status_api", {})["enabled"] = False
    if args.no_metrics:
        changes.setdefault("metrics", {})["enabled"] = False
    return changes


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream face detections to a WebSocket consumer."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--endpoint",
        default=None,
        help="WebSocket URL of the consumer, e.g. ws://127.0.0.1:8080.",
    )
    parser.add_argument(
        "--source",
        choices=("simulator", "replay"),
        default=None,
        help="Detection source to use (default: from config).",
    )
    parser.add_argument(
        "--replay-file",
        type=Path,
        default=None,
        help="JSON-lines recording for the replay source.",
    )
    parser.add_argument(
        "--score-threshold",
        type=float,
        default=None,
        help="Minimum detector confidence for a face to be published.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: from config, INFO).",
    )
    parser.add_argument(
        "--no-status-api",
        action="store_true",
        help="Do not start the HTTP status API.",
    )
    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Do not start the Prometheus exporter.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        config_service = ConfigService(config_dir=args.config_dir)
        changes = cli_overrides(args)
        if changes:
            config_service.apply_changes(changes)
        snapshot = config_service.snapshot
        configure_logging(args.log_level or snapshot.logging.level, snapshot.logging)
        asyncio.run(run_bridge(config_service))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("facebridge crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_orchestrator", "build_source", "cli_overrides", "main", "run_bridge"]
