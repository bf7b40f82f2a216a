"""Sidecar entry point: runs the remap command server for a host process.

The host reads ZMQ_PORT, ZMQ_PING_PORT and ZMQ_TOKEN from stdout. A mapping
can be preloaded with ``--config`` so the first frame does not wait for a
``configure`` round trip.
"""

import argparse
import logging
import os
import platform
import sys
from pathlib import Path

import sentry_sdk

from _version import __version__
from config.schema import ConfigurationError, deserialize
from diagnostics import APP_DIR, init_diagnostics
from engine.resample import BUILDERS, SAMPLING, Resampler
from security import strip_pii
from zmq_server import ZMQServer

logger = logging.getLogger(__name__)

# A 4K RGBA32F mapping is ~130 MB; the rest is frames and decoders
DEFAULT_MEMORY_LIMIT_GB = 4


def init_telemetry(consent_path: str | None = None) -> bool:
    """Start Sentry. Events are only sent after the user opted in.

    Returns True when a DSN is active.
    """
    consent = Path(os.path.expanduser(consent_path or f"{APP_DIR}/telemetry_consent"))
    dsn = ""
    if consent.is_file() and consent.read_text().strip() == "yes":
        dsn = os.environ.get("SENTRY_DSN", "")

    sentry_sdk.init(
        dsn=dsn,
        release=f"tileremap@{__version__}",
        environment=os.environ.get("SENTRY_ENV", "development"),
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )
    return bool(dsn)


def _apply_memory_limit(limit_gb: float):
    """Cap the address space. Not available on Windows."""
    if platform.system() == "Windows" or limit_gb <= 0:
        return
    try:
        import resource

        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (int(limit_gb * 1024**3), hard))
    except (ImportError, ValueError, OSError):
        logger.warning("Could not set memory limit to %s GB", limit_gb)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tile-remap-sidecar",
        description="ZMQ remap server for a host application",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", type=str, help="Preload this JSON mapping config")
    parser.add_argument("--direction", choices=sorted(BUILDERS), default="decode")
    parser.add_argument("--sampling", choices=SAMPLING, default="nearest")
    parser.add_argument(
        "--memory-limit-gb",
        type=float,
        default=DEFAULT_MEMORY_LIMIT_GB,
        help="Address space cap, 0 to disable",
    )
    return parser.parse_args(argv)


def build_resampler(args: argparse.Namespace) -> Resampler:
    """Resampler for the server, with the ``--config`` mapping already swapped in."""
    resampler = Resampler(direction=args.direction, sampling=args.sampling)
    if args.config:
        try:
            text = Path(args.config).read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read config {args.config}: {e}") from e
        config = deserialize(text)
        surface = resampler.reconfigure(config)
        logger.info(
            "Preloaded %s mapping %dx%d, %d cells paired",
            args.direction,
            surface.width,
            surface.height,
            surface.paired_count,
        )
    return resampler


def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)
    init_telemetry()
    init_diagnostics()
    _apply_memory_limit(args.memory_limit_gb)

    try:
        resampler = build_resampler(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    server = ZMQServer(resampler)
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
