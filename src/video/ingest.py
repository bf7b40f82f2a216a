"""Fast video header probing."""

import logging

import av

from config.schema import RemapConfig

logger = logging.getLogger(__name__)


def probe(path: str) -> dict:
    """Probe a scrambled video for metadata. Reads only headers."""
    try:
        container = av.open(path)
    except (av.error.FileNotFoundError, av.error.InvalidDataError) as e:
        logger.exception("Probe failed for %s", path)
        return {"ok": False, "error": f"Failed to open video: {type(e).__name__}"}

    if not container.streams.video:
        container.close()
        return {"ok": False, "error": "No video stream found"}

    stream = container.streams.video[0]
    result = {
        "ok": True,
        "width": stream.width,
        "height": stream.height,
        "fps": float(stream.average_rate) if stream.average_rate else 0.0,
        "duration_s": float(container.duration / av.time_base)
        if container.duration
        else 0.0,
        "codec": stream.codec_context.name,
        "frame_count": stream.frames or 0,
    }

    container.close()
    return result


def geometry_warnings(info: dict, config: RemapConfig) -> list[str]:
    """Compare a probe result with a remap configuration.

    A size mismatch still decodes (coordinates are normalized) but the
    cell grid was laid out for the configured size, so tiles land
    stretched or off-grid. Returns human-readable warnings (empty = match).
    """
    warnings: list[str] = []
    if not info.get("ok"):
        return warnings
    if (info["width"], info["height"]) == config.resolution:
        return warnings
    warnings.append(
        f"Video is {info['width']}x{info['height']} but mapping is "
        f"{config.width}x{config.height}"
    )
    if info["width"] * config.height != info["height"] * config.width:
        warnings.append("Video aspect ratio differs from mapping")
    return warnings
