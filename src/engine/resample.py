"""Resampler — applies a mapping surface to every incoming frame.

Per output pixel there are two dependent lookups: read the mapping surface
at the pixel's own position to get (u, v), then sample the frame at (u, v).
``sample_dependent`` is the CPU reference of that contract; GPU hosts can
use ``SHADER_SOURCE`` with the surface uploaded as an RGBA32F texture.

The surface is write-once / read-many. Reconfiguration builds a complete
new surface and swaps the reference, so a frame is never resampled against
a partially built map.
"""

import logging
import threading
import time
from collections import deque

import cv2
import numpy as np
import sentry_sdk

from config.schema import RemapConfig
from diagnostics import set_remap_context
from engine.mapping import MappingSurface, build_reverse_map, build_scramble_map

logger = logging.getLogger(__name__)

# Frame budget at 30 fps
RENDER_WARN_MS = 33

SAMPLING = ("nearest", "linear")

# float32 storage can land a hair below an integer texel edge
_TEXEL_SNAP = 1e-3

BUILDERS = {
    "decode": build_reverse_map,
    "scramble": build_scramble_map,
}

SHADER_SOURCE = """\
varying highp vec2 vTextureCoord;
uniform sampler2D uSamplerVideo;
uniform sampler2D uSamplerUvMap;
void main(void) {
  gl_FragColor = texture2D(uSamplerVideo, texture2D(uSamplerUvMap, vTextureCoord).xy);
}
"""


def _as_texture(surface: MappingSurface | np.ndarray) -> np.ndarray:
    texture = surface.texture if isinstance(surface, MappingSurface) else surface
    if texture.ndim != 3 or texture.shape[2] < 2:
        raise ValueError(f"mapping must be (H, W, >=2), got {texture.shape}")
    return texture


def _remap(
    frame: np.ndarray, map_x: np.ndarray, map_y: np.ndarray, interpolation: int
) -> np.ndarray:
    output = cv2.remap(
        np.ascontiguousarray(frame),
        map_x,
        map_y,
        interpolation,
        borderMode=cv2.BORDER_REPLICATE,
    )
    # cv2 drops a trailing single channel
    return output.reshape(map_x.shape + frame.shape[2:])


def _sample_nearest(frame: np.ndarray, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    fh, fw = frame.shape[:2]
    map_x = np.clip(np.floor(u * fw + _TEXEL_SNAP), 0, fw - 1).astype(np.float32)
    map_y = np.clip(np.floor(v * fh + _TEXEL_SNAP), 0, fh - 1).astype(np.float32)
    return _remap(frame, map_x, map_y, cv2.INTER_NEAREST)


def _sample_linear(frame: np.ndarray, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    fh, fw = frame.shape[:2]
    # Texel centres sit at (i + 0.5) / size
    map_x = (u * fw - 0.5).astype(np.float32)
    map_y = (v * fh - 0.5).astype(np.float32)
    return _remap(frame, map_x, map_y, cv2.INTER_LINEAR)


def sample_dependent(
    frame: np.ndarray,
    surface: MappingSurface | np.ndarray,
    *,
    sampling: str = "nearest",
    mask_unmapped: bool = False,
) -> np.ndarray:
    """Resample ``frame`` through a mapping surface.

    Args:
        frame:         Scrambled frame (H, W, C), any intrinsic size.
        surface:       MappingSurface or raw (H', W', 4) float array.
        sampling:      "nearest" (texel containing the coordinate) or
                       "linear" (bilinear, clamp-to-edge).
        mask_unmapped: Zero output pixels whose coverage flag is 0.

    Returns:
        Array of shape (H', W', C) with the frame's dtype.
    """
    if sampling not in SAMPLING:
        raise ValueError(f"unknown sampling: {sampling}")
    if frame.ndim != 3:
        raise ValueError(f"frame must be (H, W, C), got {frame.shape}")

    texture = _as_texture(surface)
    u = texture[:, :, 0].astype(np.float64)
    v = texture[:, :, 1].astype(np.float64)

    if sampling == "nearest":
        output = _sample_nearest(frame, u, v)
    else:
        output = _sample_linear(frame, u, v)

    if mask_unmapped and texture.shape[2] >= 4:
        output[texture[:, :, 3] == 0] = 0
    return output


class Resampler:
    """Holds the current mapping surface and resamples frames through it.

    ``direction`` is "decode" (scrambled -> original) or "scramble"
    (original -> scrambled, unmapped pixels transparent).

    ``sampling`` defaults to "nearest" so that equal-size cell pairs come
    back bit-exact. The browser decoder filters the video texture with
    LINEAR; pass ``sampling="linear"`` to match its output.
    """

    def __init__(
        self,
        config: RemapConfig | None = None,
        *,
        direction: str = "decode",
        sampling: str = "nearest",
    ):
        if direction not in BUILDERS:
            raise ValueError(f"unknown direction: {direction}")
        if sampling not in SAMPLING:
            raise ValueError(f"unknown sampling: {sampling}")
        self.direction = direction
        self.sampling = sampling
        self._swap_lock = threading.Lock()
        self._surface: MappingSurface | None = None
        self._config: RemapConfig | None = None
        self._timing: deque = deque(maxlen=100)
        self._build_thread: threading.Thread | None = None
        self._generation = 0
        self.last_error: Exception | None = None
        if config is not None:
            self.reconfigure(config)

    @property
    def surface(self) -> MappingSurface | None:
        return self._surface

    @property
    def config(self) -> RemapConfig | None:
        return self._config

    def _next_generation(self) -> int:
        with self._swap_lock:
            self._generation += 1
            return self._generation

    def reconfigure(self, config: RemapConfig) -> MappingSurface:
        """Build a new surface for ``config`` and swap it in atomically.

        The most recently requested configuration wins: a slower build
        requested earlier never replaces this one when it finishes.
        """
        return self._build_and_swap(config, self._next_generation())

    def _build_and_swap(self, config: RemapConfig, generation: int) -> MappingSurface:
        sentry_sdk.add_breadcrumb(
            category="remap",
            message=f"Rebuilding {self.direction} map",
            data={
                "resolution": [config.width, config.height],
                "cell_size": [config.cell_size_x, config.cell_size_y],
                "regions": len(config.regions),
            },
            level="info",
        )
        t0 = time.monotonic()
        surface = BUILDERS[self.direction](config)
        with self._swap_lock:
            if generation != self._generation:
                logger.info(
                    "Discarded mapping build %d, superseded by %d",
                    generation,
                    self._generation,
                )
                return surface
            self._surface = surface
            self._config = config
            set_remap_context(self.direction, surface.info())
        logger.info(
            "Mapping swapped in after %.0fms (coverage %.3f)",
            (time.monotonic() - t0) * 1000,
            surface.coverage,
        )
        return surface

    def reconfigure_async(self, config: RemapConfig) -> threading.Thread:
        """Rebuild off the calling thread; frames keep using the old surface meanwhile."""
        generation = self._next_generation()

        def _build():
            try:
                self._build_and_swap(config, generation)
                self.last_error = None
            except Exception as e:
                self.last_error = e
                sentry_sdk.capture_exception(e)
                logger.exception("Background mapping rebuild failed")

        thread = threading.Thread(target=_build, daemon=True)
        self._build_thread = thread
        thread.start()
        return thread

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for a pending async rebuild. Returns True if none is running."""
        thread = self._build_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def render(self, frame: np.ndarray) -> np.ndarray:
        """Resample one frame. Raises RuntimeError if no mapping is configured."""
        surface = self._surface
        if surface is None:
            raise RuntimeError("no mapping configured")

        t0 = time.monotonic()
        output = sample_dependent(
            frame,
            surface,
            sampling=self.sampling,
            mask_unmapped=self.direction == "scramble",
        )
        elapsed_ms = (time.monotonic() - t0) * 1000
        self._timing.append(elapsed_ms)
        if elapsed_ms > RENDER_WARN_MS:
            logger.debug(
                "Resample took %.0fms (>%dms frame budget)", elapsed_ms, RENDER_WARN_MS
            )
        return output

    def stats(self) -> dict:
        """Return p50/p95/max render time over the last 100 frames."""
        s = sorted(self._timing)
        return {
            "p50": s[len(s) // 2] if s else 0,
            "p95": s[int(len(s) * 0.95)] if len(s) >= 20 else None,
            "max": max(s) if s else 0,
            "over_budget": sum(1 for t in s if t > RENDER_WARN_MS) / len(s)
            if s
            else 0,
            "samples": len(s),
        }

    def flush_stats(self):
        self._timing.clear()
