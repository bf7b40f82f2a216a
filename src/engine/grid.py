"""Grid partitioning — tiles rectangles into clipped, absolutely-aligned cells.

Grid lines sit on multiples of the cell size measured from the frame
origin, not from the rectangle's own corner. Two regions that share a
coordinate space therefore share grid lines, and a region whose edges are
off-grid gets narrower cells along those edges.
"""

import logging
import math
from typing import Iterable, NamedTuple

logger = logging.getLogger(__name__)


class Cell(NamedTuple):
    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def area(self) -> int:
        return self.width * self.height


def partition(rect: Iterable[int], cell_w: int, cell_h: int) -> list[Cell]:
    """Split ``(left, top, right, bottom)`` into row-major cells.

    Each row ends on the next multiple of ``cell_h`` (clipped to bottom),
    each column on the next multiple of ``cell_w`` (clipped to right).
    Only the last row/column of the rectangle can be smaller than nominal.
    """
    if cell_w <= 0 or cell_h <= 0:
        raise ValueError(f"cell size must be positive, got {cell_w}x{cell_h}")
    left, top, right, bottom = (int(v) for v in rect)

    cells: list[Cell] = []
    y0 = top
    while True:
        y1 = (y0 // cell_h + 1) * cell_h
        y2 = min(y1, bottom)
        x0 = left
        while True:
            x1 = (x0 // cell_w + 1) * cell_w
            x2 = min(x1, right)
            cells.append(Cell(x0, y0, x2, y2))
            if x1 >= right:
                break
            x0 = x2
        if y1 >= bottom:
            break
        y0 = y2
    return cells


def partition_regions(
    regions: Iterable[Iterable[int]], cell_w: int, cell_h: int
) -> list[Cell]:
    """Partition every region in declaration order into one flat cell list."""
    cells: list[Cell] = []
    for region in regions:
        cells.extend(partition(region, cell_w, cell_h))
    return cells


def grid_count(width: int, height: int, cell_w: int, cell_h: int) -> int:
    """Number of cells ``partition`` yields for the full (0, 0, w, h) frame."""
    return -(-width // cell_w) * -(-height // cell_h)


def _cell_size_for_rows(
    rows: float, height: int, cell_size_x: int, cell_size_y: int
) -> tuple[int, int]:
    cell_h = math.ceil(height / rows)
    cell_w = math.ceil(cell_h * cell_size_x / cell_size_y)
    return cell_w, cell_h


def image_cell_size(
    region_cell_count: int,
    width: int,
    height: int,
    cell_size_x: int,
    cell_size_y: int,
) -> tuple[int, int]:
    """Pick an output-frame cell size giving roughly ``region_cell_count`` cells.

    The cell aspect ratio follows (cell_size_x, cell_size_y). When the
    first guess yields more cells than there are region cells, the row
    count is rounded down so every output cell gets a partner, at the cost
    of leaving some region cells unused. This is a heuristic, not an exact
    fit; the pairing step tolerates both over- and undershoot.

    Returns:
        (image_cell_w, image_cell_h)
    """
    if region_cell_count <= 0:
        raise ValueError("region_cell_count must be positive")

    rows = math.sqrt(
        region_cell_count * height / width * cell_size_x / cell_size_y
    )
    cell_w, cell_h = _cell_size_for_rows(rows, height, cell_size_x, cell_size_y)

    if grid_count(width, height, cell_w, cell_h) > region_cell_count:
        whole_rows = math.floor(rows)
        if whole_rows == 0:
            # Fewer than one row's worth of region cells: one cell covers the frame
            return width, height
        cell_w, cell_h = _cell_size_for_rows(
            whole_rows, height, cell_size_x, cell_size_y
        )

    logger.debug(
        "Image cell size %dx%d for %d region cells (%dx%d frame)",
        cell_w,
        cell_h,
        region_cell_count,
        width,
        height,
    )
    return cell_w, cell_h
