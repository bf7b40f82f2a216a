"""Path validation gates and PII/secret scrubbing for the remap sidecar."""

import json
import os
import re
from pathlib import Path

MAX_UPLOAD_SIZE = 2 * 1024 * 1024 * 1024  # 2 GB
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".ts"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".webp"}
ALLOWED_EXTENSIONS = VIDEO_EXTENSIONS | IMAGE_EXTENSIONS

# ~4.6 hours at 30fps
MAX_FRAME_COUNT = 500_000


def _unsafe_name(name: str) -> bool:
    return ".." in name or "/" in name or "\\" in name or "\x00" in name


def validate_upload(path: str, allowed: set[str] = ALLOWED_EXTENSIONS) -> list[str]:
    """Validate an input file path. Returns list of errors (empty = valid).

    Checks:
    - Resolved path is under the user's home directory
    - File exists and is not a symlink
    - Extension in whitelist
    - File size within MAX_UPLOAD_SIZE
    """
    errors: list[str] = []
    p = Path(path)

    resolved = str(p.resolve())
    if not resolved.startswith(str(Path.home())):
        errors.append("Path must be within user home directory")
        return errors

    if not p.exists():
        errors.append(f"File not found: {path}")
        return errors

    if p.is_symlink():
        errors.append("Symlinks are not allowed")
        return errors

    ext = p.suffix.lower()
    if ext not in allowed:
        errors.append(f"Extension '{ext}' not allowed. Allowed: {sorted(allowed)}")

    size = p.stat().st_size
    if size > MAX_UPLOAD_SIZE:
        size_mb = size / (1024 * 1024)
        errors.append(
            f"File too large: {size_mb:.1f} MB (max {MAX_UPLOAD_SIZE // (1024 * 1024)} MB)"
        )

    if _unsafe_name(p.name):
        errors.append(f"Unsafe filename: {p.name}")

    return errors


def validate_frame_count(count: int) -> list[str]:
    """Validate frame count against MAX_FRAME_COUNT. Returns list of errors."""
    errors: list[str] = []
    if count > MAX_FRAME_COUNT:
        errors.append(f"Frame count {count} exceeds maximum {MAX_FRAME_COUNT}")
    return errors


ALLOWED_OUTPUT_EXTENSIONS = {".mp4", ".mov", ".mkv", ".png", ".jpg", ".jpeg"}
BLOCKED_OUTPUT_PREFIXES = (
    "/System",
    "/Library",
    "/usr",
    "/bin",
    "/sbin",
    "/etc",
    "/private/var",
    "/private/etc",
)


def validate_output_path(path: str) -> list[str]:
    """Validate an output path. Returns list of errors (empty = valid).

    Checks:
    - Path is absolute and not under a system directory
    - Extension in whitelist
    - Parent directory exists and is writable
    """
    errors: list[str] = []
    p = Path(path)

    if not p.is_absolute():
        errors.append("Output path must be absolute")
        return errors

    resolved = str(p.resolve())
    for prefix in BLOCKED_OUTPUT_PREFIXES:
        if resolved.startswith(prefix):
            errors.append(f"Cannot write to system directory: {prefix}")
            return errors

    ext = p.suffix.lower()
    if ext not in ALLOWED_OUTPUT_EXTENSIONS:
        errors.append(f"Output extension '{ext}' not allowed.")

    parent = p.parent
    if not parent.exists():
        errors.append(f"Output directory does not exist: {parent}")
    elif not os.access(str(parent), os.W_OK):
        errors.append(f"Output directory is not writable: {parent}")

    if _unsafe_name(p.name):
        errors.append(f"Unsafe output filename: {p.name}")

    return errors


# --- PII stripping for Sentry and crash dumps ---

_HOME = os.path.expanduser("~")
_USERNAME = os.path.basename(_HOME)
_PATH_PATTERN = re.compile(r"/Users/[^/\s]+|/home/[^/\s]+|C:\\Users\\[^\\\s]+")
# The seed token is the only secret of a scrambled stream
_SENSITIVE_KEYS = {"_token", "token", "auth", "key", "secret", "password", "dsn", "seed"}


def _scrub_dict(d: dict):
    """Redact values for keys that look sensitive, recursing into dicts."""
    for key in list(d.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            d[key] = "<REDACTED>"
        elif isinstance(d[key], dict):
            _scrub_dict(d[key])


def strip_pii(event: dict, hint: dict) -> dict:
    """Sentry before_send hook. Strips file paths, auth tokens and seeds.

    Also used for crash dump sanitization.
    """
    event_str = json.dumps(event, default=str)
    if _HOME and _HOME != "/":
        event_str = event_str.replace(_HOME, "<HOME>")
    if _USERNAME:
        event_str = event_str.replace(_USERNAME, "<USER>")
    event_str = _PATH_PATTERN.sub("<REDACTED_PATH>", event_str)
    event = json.loads(event_str)

    _scrub_dict(event.get("extra", {}))
    for ctx in event.get("contexts", {}).values():
        if isinstance(ctx, dict):
            _scrub_dict(ctx)
    crumbs = event.get("breadcrumbs") or []
    if isinstance(crumbs, dict):
        crumbs = crumbs.get("values", [])
    for crumb in crumbs:
        if isinstance(crumb, dict) and isinstance(crumb.get("data"), dict):
            _scrub_dict(crumb["data"])
    return event
