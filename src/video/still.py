"""Still images (screenshots, single frames) and preview encoding via Pillow."""

import base64
import io

import numpy as np
from PIL import Image

DEFAULT_PREVIEW_BYTES = 4 * 1024 * 1024  # 4MB
QUALITY_FALLBACK_CHAIN = (95, 85, 75, 65, 50)


def load_rgba(path: str) -> np.ndarray:
    """Load any Pillow-readable image as RGBA uint8 (H, W, 4)."""
    with Image.open(path) as img:
        return np.array(img.convert("RGBA"))


def save_image(frame: np.ndarray, path: str) -> None:
    """Save an RGBA/RGB frame. Formats without alpha get the RGB channels only."""
    img = Image.fromarray(frame)
    if img.mode == "RGBA" and path.lower().endswith((".jpg", ".jpeg", ".bmp")):
        img = img.convert("RGB")
    img.save(path)


def encode_preview(frame: np.ndarray, quality: int = 95, fmt: str = "JPEG") -> bytes:
    """Encode a frame for transport. JPEG drops alpha; PNG keeps it."""
    if fmt == "JPEG":
        img = Image.fromarray(np.ascontiguousarray(frame[:, :, :3]))
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality)
    elif fmt == "PNG":
        img = Image.fromarray(frame)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
    else:
        raise ValueError(f"unsupported preview format: {fmt}")
    return buf.getvalue()


def encode_preview_fit(
    frame: np.ndarray,
    max_bytes: int = DEFAULT_PREVIEW_BYTES,
    quality_chain: tuple[int, ...] = QUALITY_FALLBACK_CHAIN,
) -> tuple[bytes, int]:
    """JPEG-encode, stepping quality down until the payload fits.

    Returns (jpeg_bytes, quality_used). Raises ValueError if even the
    lowest quality is too large.
    """
    if not quality_chain:
        raise ValueError("quality_chain must not be empty")
    data = b""
    for q in quality_chain:
        data = encode_preview(frame, quality=q)
        if len(data) <= max_bytes:
            return data, q
    raise ValueError(
        f"Preview ({len(data)} bytes) exceeds {max_bytes} bytes "
        f"even at quality {quality_chain[-1]}"
    )


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_preview(data: bytes) -> np.ndarray:
    """Decode preview bytes back to an array (RGB for JPEG, RGBA for PNG)."""
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img)
