"""
Cell grid addressing.

Cells are invisible squares that divide world space. Every stored entity
carries the string key of the cell it is in, so "what is near here" becomes
an equality or ``IN`` filter on an indexed column instead of a distance scan.

Two neighborhood shapes are provided:
- ``relevant_cells``: the point's cell plus the three cells around its
  nearest corner, for narrow viewport queries
- ``neighborhood_cells``: the full 3x3 block, for simulation context
"""

import math
from typing import List, NamedTuple, Tuple, Union


class Point(NamedTuple):
    """A world position."""
    x: float
    y: float


class CellId(NamedTuple):
    """Integer cell coordinates."""
    cx: int
    cy: int

    @property
    def key(self) -> str:
        """Canonical string used to index entities by cell."""
        return f"cell:{self.cx},{self.cy}"

    def __str__(self) -> str:
        return self.key


PointLike = Union[Point, Tuple[float, float]]


def cell_of(point: PointLike, cell_size: float) -> CellId:
    """Cell containing a point. Each cell spans ``[k * size, (k + 1) * size)``."""
    x, y = point
    return CellId(math.floor(x / cell_size), math.floor(y / cell_size))


def cell_key(point: PointLike, cell_size: float) -> str:
    """String key of the cell containing a point."""
    return cell_of(point, cell_size).key


def parse_cell_key(key: str) -> CellId:
    """Inverse of ``CellId.key``."""
    prefix, sep, coords = key.partition(":")
    if prefix != "cell" or not sep:
        raise ValueError(f"Not a cell key: {key!r}")
    try:
        cx, cy = coords.split(",")
        return CellId(int(cx), int(cy))
    except ValueError as e:
        raise ValueError(f"Not a cell key: {key!r}") from e


def relevant_cells(point: PointLike, cell_size: float) -> List[CellId]:
    """
    The point's cell and the three cells around its nearest corner.

    An object near a boundary is then visible from both sides while a query
    touches only four cells.

    Args:
        point: World position
        cell_size: Cell width and height

    Returns:
        Four cell ids, the point's own cell first
    """
    x, y = point
    cell = cell_of(point, cell_size)

    # which half of the cell the point is in
    left = x < (cell.cx + 0.5) * cell_size
    top = y < (cell.cy + 0.5) * cell_size
    side_x = cell.cx - 1 if left else cell.cx + 1
    side_y = cell.cy - 1 if top else cell.cy + 1

    return [
        cell,
        CellId(side_x, cell.cy),
        CellId(side_x, side_y),
        CellId(cell.cx, side_y),
    ]


def neighborhood_cells(point: PointLike, cell_size: float) -> List[CellId]:
    """The 3x3 block of cells centered on the point's cell, row by row."""
    cell = cell_of(point, cell_size)
    return [
        CellId(cell.cx + i, cell.cy + j)
        for j in range(-1, 2)
        for i in range(-1, 2)
    ]


def cells_for_rect(x: float, y: float, width: float, height: float,
                   cell_size: float) -> List[CellId]:
    """
    Every cell overlapped by an axis-aligned rectangle.

    Used for entities such as lots that can be larger than a cell.
    """
    top_left = cell_of((x, y), cell_size)
    bottom_right = cell_of((x + width, y + height), cell_size)

    cells = []
    for i in range(bottom_right.cx - top_left.cx + 1):
        for j in range(bottom_right.cy - top_left.cy + 1):
            cells.append(CellId(top_left.cx + i, top_left.cy + j))
    return cells
