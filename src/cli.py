"""Offline tile remap tool: decode or scramble stills and videos from the shell.

Examples:
    tile-remap info --seed 0 --width 1920 --height 1080
    tile-remap decode-image shot.png restored.png --config stream.json
    tile-remap scramble-image frame.png scrambled.png --seed abc --progress 0.5
    tile-remap decode-video scrambled.mp4 restored.mp4 --regions "[0,0,1920,1080]"
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from _version import __version__
from config.schema import (
    DEFAULT_CELL_SIZE,
    DEFAULT_RESOLUTION,
    DEFAULT_SEED,
    ConfigurationError,
    RemapConfig,
)
from diagnostics import setup_console_logging
from engine.export import ExportManager, ExportStatus
from engine.resample import SAMPLING, Resampler
from video.still import load_rgba, save_image

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL_S = 2.0


def _add_config_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group("mapping")
    group.add_argument("--config", type=str, help="JSON config file (flags override it)")
    group.add_argument("--seed", type=str, help=f"Seed token (default {DEFAULT_SEED!r})")
    group.add_argument("--width", type=int, help="Frame width")
    group.add_argument("--height", type=int, help="Frame height")
    group.add_argument("--cell-size-x", type=int, help="Nominal cell width")
    group.add_argument("--cell-size-y", type=int, help="Nominal cell height")
    group.add_argument(
        "--regions",
        type=str,
        help='Encoded regions, e.g. "[0,0,1920,100],[0,800,1920,1080]"',
    )
    group.add_argument(
        "--sampling", choices=SAMPLING, default="nearest", help="Frame sampling"
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tile-remap",
        description="Reverse (or apply) seeded tile scrambling on frames",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command", required=True)

    info = sub.add_parser("info", help="Print mapping statistics as JSON")
    _add_config_arguments(info)

    for name, help_text in (
        ("decode-image", "Unscramble a still image"),
        ("scramble-image", "Scramble a still image"),
        ("decode-video", "Unscramble a whole video"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("input", type=str, help="Input file")
        cmd.add_argument("output", type=str, help="Output file")
        _add_config_arguments(cmd)
        if name == "scramble-image":
            cmd.add_argument(
                "--progress",
                type=float,
                help="0 = original layout, 1 = fully scrambled",
            )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RemapConfig:
    """Merge defaults, an optional config file and explicit flags."""
    data = {
        "seed": DEFAULT_SEED,
        "width": DEFAULT_RESOLUTION[0],
        "height": DEFAULT_RESOLUTION[1],
        "cell_size_x": DEFAULT_CELL_SIZE,
        "cell_size_y": DEFAULT_CELL_SIZE,
    }
    if args.config:
        try:
            loaded = json.loads(Path(args.config).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config {args.config}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigurationError("config file must hold a JSON object")
        data.update(loaded)

    overrides = {
        "seed": args.seed,
        "width": args.width,
        "height": args.height,
        "cell_size_x": args.cell_size_x,
        "cell_size_y": args.cell_size_y,
        "regions": args.regions,
        "progress": getattr(args, "progress", None),
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return RemapConfig.from_dict(data)


def _run_image(args: argparse.Namespace, config: RemapConfig, direction: str) -> int:
    resampler = Resampler(config, direction=direction, sampling=args.sampling)
    output = resampler.render(load_rgba(args.input))
    save_image(output, args.output)
    logger.info("Wrote %s (%dx%d)", args.output, output.shape[1], output.shape[0])
    return 0


def _run_video(args: argparse.Namespace, config: RemapConfig) -> int:
    manager = ExportManager()
    job = manager.start(args.input, args.output, config)
    last_log = time.monotonic()
    try:
        while job.status == ExportStatus.RUNNING:
            job.join(timeout=0.5)
            if time.monotonic() - last_log >= PROGRESS_LOG_INTERVAL_S:
                status = manager.get_status()
                logger.info(
                    "Frame %d/%d (%.0f%%)",
                    status["current_frame"],
                    status["total_frames"],
                    status["progress"] * 100,
                )
                last_log = time.monotonic()
    except KeyboardInterrupt:
        manager.cancel()
        job.join()

    status = manager.get_status()
    if status["status"] != ExportStatus.COMPLETE.value:
        print(
            f"Export {status['status']}: {status.get('error') or 'interrupted'}",
            file=sys.stderr,
        )
        return 1
    logger.info("Wrote %s (%d frames)", args.output, status["current_frame"])
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)
    setup_console_logging(args.verbose)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == "info":
            surface = Resampler(config).surface
            print(json.dumps(surface.info(), indent=2))
            return 0
        if args.command == "decode-image":
            return _run_image(args, config, "decode")
        if args.command == "scramble-image":
            return _run_image(args, config, "scramble")
        return _run_video(args, config)
    except (OSError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
