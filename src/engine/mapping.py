"""Mapping builder — pairs region cells with shuffled frame cells.

The result is a mapping surface: an RGBA32F-layout array of shape
(height, width, 4) where, for every output pixel, R/G hold the normalized
source coordinate to sample, B is 0, and A is 1.0 where a cell pair wrote
the pixel (0.0 where nothing did).

All per-pixel math runs in float64 and is stored as float32, so a given
configuration always produces byte-identical surfaces.
"""

import logging
from dataclasses import dataclass

import numpy as np

from config.schema import RemapConfig
from engine.grid import Cell, image_cell_size, partition, partition_regions
from engine.prng import shuffle
from engine.seed import string_to_seed

logger = logging.getLogger(__name__)

CHANNELS = 4


@dataclass(frozen=True)
class CellLayout:
    """Both cell lists of one configuration, image cells already shuffled."""

    seed: int
    region_cells: list[Cell]
    image_cells: list[Cell]
    image_cell_size: tuple[int, int]

    @property
    def paired_count(self) -> int:
        return min(len(self.region_cells), len(self.image_cells))


@dataclass(frozen=True)
class MappingSurface:
    """Immutable per-pixel mapping plus the numbers it was built from."""

    texture: np.ndarray
    seed: int
    region_cell_count: int
    image_cell_count: int
    image_cell_size: tuple[int, int]

    @property
    def width(self) -> int:
        return self.texture.shape[1]

    @property
    def height(self) -> int:
        return self.texture.shape[0]

    @property
    def paired_count(self) -> int:
        return min(self.region_cell_count, self.image_cell_count)

    @property
    def coverage(self) -> float:
        """Fraction of output pixels that received a mapping."""
        return float(np.count_nonzero(self.texture[:, :, 3])) / (
            self.width * self.height
        )

    def info(self) -> dict:
        return {
            "seed": self.seed,
            "width": self.width,
            "height": self.height,
            "region_cells": self.region_cell_count,
            "image_cells": self.image_cell_count,
            "paired_cells": self.paired_count,
            "image_cell_size": list(self.image_cell_size),
            "coverage": round(self.coverage, 6),
        }


def build_layout(config: RemapConfig) -> CellLayout:
    """Partition regions and frame, then shuffle the frame cells by seed."""
    seed = string_to_seed(config.seed)
    region_cells = partition_regions(
        config.effective_regions, config.cell_size_x, config.cell_size_y
    )
    cell_w, cell_h = image_cell_size(
        len(region_cells),
        config.width,
        config.height,
        config.cell_size_x,
        config.cell_size_y,
    )
    image_cells = partition((0, 0, config.width, config.height), cell_w, cell_h)
    shuffle(image_cells, seed)

    if len(image_cells) < len(region_cells):
        logger.info(
            "%d of %d region cells unused (frame grid has %d cells)",
            len(region_cells) - len(image_cells),
            len(region_cells),
            len(image_cells),
        )
    elif len(image_cells) > len(region_cells):
        logger.warning(
            "%d frame cells have no region cell and stay unmapped",
            len(image_cells) - len(region_cells),
        )

    return CellLayout(seed, region_cells, image_cells, (cell_w, cell_h))


def _empty_texture(width: int, height: int) -> np.ndarray:
    return np.zeros((height, width, CHANNELS), dtype=np.float32)


def _axis_map(
    dst_start: int, dst_end: int, src_start: int, src_end: int, extent: int
) -> np.ndarray:
    """Normalized source coordinate for each integer pixel in [dst_start, dst_end)."""
    pixels = np.arange(dst_start, dst_end, dtype=np.float64)
    source = src_start + (pixels - dst_start) / (dst_end - dst_start) * (
        src_end - src_start
    )
    return source / extent


def _write_cell(
    texture: np.ndarray, dst: tuple[int, int, int, int], src: Cell
) -> None:
    left, top, right, bottom = dst
    if right <= left or bottom <= top:
        return
    height, width = texture.shape[:2]
    u = _axis_map(left, right, src.left, src.right, width)
    v = _axis_map(top, bottom, src.top, src.bottom, height)
    texture[top:bottom, left:right, 0] = u[np.newaxis, :]
    texture[top:bottom, left:right, 1] = v[:, np.newaxis]
    texture[top:bottom, left:right, 2] = 0.0
    texture[top:bottom, left:right, 3] = 1.0


def rasterize_reverse(
    region_cells: list[Cell], image_cells: list[Cell], width: int, height: int
) -> np.ndarray:
    """Rasterize the inverse mapping: frame cell i samples region cell i.

    Only the first min(len(region_cells), len(image_cells)) pairs are read.
    """
    texture = _empty_texture(width, height)
    for i in range(min(len(region_cells), len(image_cells))):
        _write_cell(texture, image_cells[i], region_cells[i])
    return texture


def _lerp_edge(start: int, end: int, progress: float) -> int:
    return int(start + (end - start) * progress)


def rasterize_scramble(
    region_cells: list[Cell],
    image_cells: list[Cell],
    width: int,
    height: int,
    progress: float = 1.0,
) -> np.ndarray:
    """Rasterize the forward (encoding) mapping.

    Each pair's destination slides from the frame cell (progress 0) to the
    region cell (progress 1); the destination always samples the frame cell.
    Later pairs overwrite earlier ones where in-between layouts overlap.
    """
    texture = _empty_texture(width, height)
    for i in range(min(len(region_cells), len(image_cells))):
        region, image = region_cells[i], image_cells[i]
        dst = tuple(
            _lerp_edge(a, b, progress) for a, b in zip(image, region)
        )
        _write_cell(texture, dst, image)
    return texture


def _freeze(
    texture: np.ndarray, layout: CellLayout
) -> MappingSurface:
    texture.setflags(write=False)
    return MappingSurface(
        texture=texture,
        seed=layout.seed,
        region_cell_count=len(layout.region_cells),
        image_cell_count=len(layout.image_cells),
        image_cell_size=layout.image_cell_size,
    )


def build_reverse_map(config: RemapConfig) -> MappingSurface:
    """Build the decoding surface: scrambled frame -> original layout."""
    layout = build_layout(config)
    texture = rasterize_reverse(
        layout.region_cells, layout.image_cells, config.width, config.height
    )
    logger.info(
        "Built reverse map %dx%d: seed=%d region_cells=%d image_cells=%d",
        config.width,
        config.height,
        layout.seed,
        len(layout.region_cells),
        len(layout.image_cells),
    )
    return _freeze(texture, layout)


def build_scramble_map(config: RemapConfig) -> MappingSurface:
    """Build the encoding surface: original frame -> scrambled layout."""
    layout = build_layout(config)
    texture = rasterize_scramble(
        layout.region_cells,
        layout.image_cells,
        config.width,
        config.height,
        config.progress,
    )
    logger.info(
        "Built scramble map %dx%d: seed=%d progress=%.3f",
        config.width,
        config.height,
        layout.seed,
        config.progress,
    )
    return _freeze(texture, layout)
