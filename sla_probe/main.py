"""Main entry point for the SLA probe."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from sla_probe.config import ConfigError, ConfigHolder, load_config, resolve_config_path
from sla_probe.logging_setup import configure_logging
from sla_probe.metrics import MetricsBindError
from sla_probe.service import ProbeService
from sla_probe.store import StoreError


logger = structlog.get_logger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sla-probe",
        description="Submit synthetic transactions, verify them, and export availability metrics.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Config file path (default: $SLA_PROBE_CONFIG or config/sla-probe.yaml)",
    )
    parser.add_argument("--check-config", action="store_true", help="Validate the config file and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    path = resolve_config_path(args.config)

    try:
        config = load_config(str(path))
    except ConfigError as exc:
        configure_logging()
        logger.error("Invalid configuration", path=str(path), error=str(exc))
        raise SystemExit(f"sla-probe: invalid configuration {path}: {exc}") from exc

    configure_logging(config.log_level, config.log_format)
    logger.info(
        "Loaded config",
        path=str(path),
        targets=[t.name for t in config.targets],
        sender_interval=config.sender_interval,
        validator_interval=config.validator_interval,
        validator_timeout=config.validator_timeout,
        storage_path=config.storage_path,
        metrics_port=config.metrics_port,
    )
    if args.check_config:
        return 0

    holder = ConfigHolder(config, path if path.exists() else None)
    try:
        asyncio.run(ProbeService(holder).run())
    except StoreError as exc:
        logger.error("Cannot open store", path=config.storage_path, error=str(exc))
        raise SystemExit(f"sla-probe: cannot open store at {config.storage_path}: {exc}") from exc
    except MetricsBindError as exc:
        logger.error("Cannot bind metrics port", host=config.metrics_host, port=config.metrics_port, error=str(exc))
        raise SystemExit(
            f"sla-probe: cannot bind metrics port {config.metrics_host}:{config.metrics_port}: {exc}"
        ) from exc
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
