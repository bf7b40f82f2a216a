"""Diagnostics — JSON log files, crash dumps and the active-mapping context.

The sidecar installs all layers through ``init_diagnostics``; the CLI only
wants ``setup_console_logging``. Whenever a Resampler swaps in a surface it
calls ``set_remap_context``; log records and crash dumps then carry the
mapping's geometry and cell counts so a report can be tied to the stream
layout that produced it.
"""

import datetime
import faulthandler
import json
import logging
import logging.handlers
import os
import sys
import threading
import traceback
from pathlib import Path

from _version import __version__
from security import strip_pii

logger = logging.getLogger(__name__)

APP_DIR = "~/.tileremap"
LOG_NAME = "tileremap.log"
FAULT_LOG_NAME = "tileremap_fault.log"

MAX_CRASH_REPORTS = 5
MAX_LOG_AGE_DAYS = 7

_context_lock = threading.Lock()
_remap_context: dict = {}


def set_remap_context(direction: str, info: dict):
    """Record the mapping now in use (``MappingSurface.info()`` plus direction)."""
    with _context_lock:
        _remap_context.clear()
        _remap_context.update(info, direction=direction)


def clear_remap_context():
    with _context_lock:
        _remap_context.clear()


def get_remap_context() -> dict:
    with _context_lock:
        return dict(_remap_context)


def _log_context() -> dict | None:
    # Log lines get geometry and counts only, never the seed
    ctx = get_remap_context()
    if not ctx:
        return None
    return {
        "direction": ctx.get("direction"),
        "resolution": [ctx.get("width"), ctx.get("height")],
        "paired_cells": ctx.get("paired_cells"),
        "region_cells": ctx.get("region_cells"),
    }


def _validate_log_dir(env_dir: str) -> str:
    """Return ``env_dir`` if it lies under APP_DIR, else the default log dir."""
    default = os.path.expanduser(f"{APP_DIR}/logs")
    if not env_dir:
        return default
    resolved = os.path.realpath(env_dir)
    allowed = os.path.realpath(os.path.expanduser(APP_DIR))
    if resolved != allowed and not resolved.startswith(allowed + os.sep):
        logger.warning("APP_LOG_DIR outside allowed prefix, using default")
        return default
    return resolved


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the active mapping if any."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        mapping = _log_context()
        if mapping is not None:
            entry["mapping"] = mapping
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry)


def _prune(
    directory: str,
    pattern: str,
    *,
    keep: int | None = None,
    max_age_days: int | None = None,
):
    """Delete files matching ``pattern`` past the newest ``keep`` or older than ``max_age_days``."""
    try:
        files = sorted(
            Path(directory).glob(pattern), key=lambda f: f.stat().st_mtime, reverse=True
        )
        doomed = files[keep:] if keep is not None else []
        if max_age_days is not None:
            cutoff = (
                datetime.datetime.now() - datetime.timedelta(days=max_age_days)
            ).timestamp()
            doomed += [f for f in files if f.stat().st_mtime < cutoff]
        for f in doomed:
            f.unlink(missing_ok=True)
    except OSError:
        logger.debug("Pruning %s/%s failed", directory, pattern, exc_info=True)


def _cleanup_old_crash_reports(crash_dir: str):
    _prune(crash_dir, "crash_*.json", keep=MAX_CRASH_REPORTS)


def setup_structured_logging(log_dir: str | None = None) -> str:
    """Attach a rotating JSON file handler to the root logger.

    Honors APP_LOG_DIR (must stay under APP_DIR) and APP_LOG_LEVEL.
    Returns the directory written to.
    """
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        os.path.join(resolved_dir, LOG_NAME), maxBytes=10_000_000, backupCount=7
    )
    handler.setFormatter(JSONFormatter())

    level = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.addHandler(handler)

    _prune(resolved_dir, f"{LOG_NAME}*", max_age_days=MAX_LOG_AGE_DAYS)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    """Send C-level crash tracebacks to their own file.

    Not the rotating log: rotation would leave faulthandler holding a stale fd.
    """
    fault_path = os.path.join(log_dir, FAULT_LOG_NAME)
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        print(f"WARNING: Could not enable faulthandler: {e}", file=sys.stderr)


def _write_crash_dump(crash_dir: str, exc_type, exc_value, exc_tb) -> str:
    """Write a scrubbed JSON crash report and return its path."""
    os.makedirs(crash_dir, mode=0o700, exist_ok=True)
    timestamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime(
        "%Y%m%dT%H%M%SZ"
    )
    crash_path = os.path.join(crash_dir, f"crash_{timestamp}.json")

    report = {
        "timestamp": timestamp,
        "version": __version__,
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc_value),
        "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        "python_version": sys.version,
        "platform": sys.platform,
        "mapping": get_remap_context() or None,
    }
    # strip_pii works on Sentry events; the report rides as "extra"
    report = strip_pii({"extra": report}, {})["extra"]

    old_umask = os.umask(0o077)
    try:
        with open(crash_path, "w") as f:
            json.dump(report, f, indent=2)
    finally:
        os.umask(old_umask)

    _cleanup_old_crash_reports(crash_dir)
    return crash_path


def setup_excepthook():
    """Write a crash dump for unhandled exceptions, then defer to the default hook."""
    crash_dir = os.path.expanduser(f"{APP_DIR}/crash_reports")

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            _write_crash_dump(crash_dir, exc_type, exc_value, exc_tb)
        except Exception:
            # Never recurse from inside the hook
            pass
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def setup_console_logging(verbose: bool = False):
    """Human-readable stderr logging for interactive use."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(handler)


def init_diagnostics() -> str:
    """Install file logging, faulthandler and the crash hook for the sidecar."""
    log_dir = setup_structured_logging()
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info("Diagnostics initialized: logging=%s, faulthandler=enabled", log_dir)
    return log_dir
