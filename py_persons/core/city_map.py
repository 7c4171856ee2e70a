"""
City tile maps used for pathfinding.

A tile map is an ASCII grid. Roads and zones come from a base city layout;
building footprints ("lots") carry their own ASCII rooms which are stamped
over the zone letters they occupy. Each character is a tile class with a
traversal cost:

- ``|`` vertical road, ``-`` horizontal road
- ``E`` door, ``H`` house interior
- ``O`` obstacle, `` `` empty ground
- anything else (zone letters such as ``R`` and ``C``) cannot be entered
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from .cells import Point

logger = structlog.get_logger()

NEWLINE = re.compile(r"\r\n|\r|\n")

DEFAULT_TILE_COSTS: Dict[str, float] = {
    "|": 5,
    "-": 3,
    "E": 20,
    "H": 40,
    "O": 100,
    " ": 1000,
}

DEFAULT_CITY_FORMAT = (
    "|-----|---------------|-----|---------------|-----|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|-----|---------------|-----|---------------|-----|\n"
    "|CCCCC|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|CCCCC|\n"
    "|CCCCC|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|CCCCC|\n"
    "|CCCCC|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|CCCCC|\n"
    "|-----|---------------|-----|---------------|-----|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|RRRRR|RRRRRRRRRRRRRRR|CCCCC|RRRRRRRRRRRRRRR|RRRRR|\n"
    "|-----|---------------|-----|---------------|-----|"
)


@dataclass(frozen=True)
class TileGeometry:
    """Placement of a tile map in world space."""
    offset: Point = Point(0.0, 0.0)
    tile_width: float = 500.0
    tile_height: float = 300.0

    def tile_of(self, point: Tuple[float, float]) -> Tuple[int, int]:
        """Column and row of the tile containing a world point."""
        x, y = point
        return (
            math.floor((x - self.offset.x) / self.tile_width),
            math.floor((y - self.offset.y) / self.tile_height),
        )

    def tile_center(self, column: int, row: int) -> Point:
        """World position of the middle of a tile."""
        return Point(
            column * self.tile_width + self.offset.x + self.tile_width / 2,
            row * self.tile_height + self.offset.y + self.tile_height / 2,
        )


@dataclass(frozen=True)
class TileMap:
    """Immutable grid of tile characters. Rows may differ in length."""
    rows: Tuple[str, ...]

    @classmethod
    def from_string(cls, text: str) -> "TileMap":
        return cls(tuple(NEWLINE.split(text)))

    @property
    def num_rows(self) -> int:
        return len(self.rows)

    @property
    def num_columns(self) -> int:
        return max((len(row) for row in self.rows), default=0)

    def tile(self, column: int, row: int) -> Optional[str]:
        """Tile character, or None outside the grid."""
        if row < 0 or row >= len(self.rows) or column < 0:
            return None
        line = self.rows[row]
        if column >= len(line):
            return None
        return line[column]

    def __str__(self) -> str:
        return "\n".join(self.rows)


@dataclass
class Lot:
    """A building footprint with its ASCII room layout."""
    x: float
    y: float
    width: float
    height: float
    format: Optional[str] = None
    id: Optional[str] = None
    zone: Optional[str] = None
    extra: Dict = field(default_factory=dict)


def overlay_lots(base_format: str, lots: Iterable[Lot],
                 geometry: TileGeometry = TileGeometry()) -> TileMap:
    """
    Stamp each lot's rooms onto the base city layout.

    Args:
        base_format: ASCII city layout of roads and zones
        lots: Building footprints, placed by their world position
        geometry: Placement of the city in world space

    Returns:
        Tile map with rooms in place of the zone letters they cover
    """
    rows: List[str] = list(NEWLINE.split(base_format))
    stamped = 0

    for lot in lots:
        if not lot.format:
            continue

        column = round((lot.x - geometry.offset.x) / geometry.tile_width)
        first_row = round((lot.y - geometry.offset.y) / geometry.tile_height)
        lot_width = round(lot.width / geometry.tile_width)

        for row_index, lot_row in enumerate(NEWLINE.split(lot.format)):
            target = first_row + row_index
            if target < 0 or target >= len(rows):
                continue
            line = rows[target]
            rows[target] = f"{line[:column]}{lot_row}{line[column + lot_width:]}"
        stamped += 1

    logger.debug("Lots stamped onto city map", lots=stamped, rows=len(rows))
    return TileMap(tuple(rows))


def passable_tiles(tile_map: TileMap,
                   costs: Optional[Dict[str, float]] = None) -> List[Tuple[int, int]]:
    """Column and row of every tile an agent may stand on, row by row."""
    costs = DEFAULT_TILE_COSTS if costs is None else costs
    return [
        (column, row)
        for row, line in enumerate(tile_map.rows)
        for column, char in enumerate(line)
        if char in costs
    ]


def random_destination(tile_map: TileMap, geometry: TileGeometry, prng,
                       costs: Optional[Dict[str, float]] = None) -> Optional[Point]:
    """
    Pick a random passable tile of the map and return its world position.

    Args:
        tile_map: Map to pick from
        geometry: Placement of the map in world space
        prng: Generator with a ``choice()`` method, e.g. ``AleaPRNG``
        costs: Tile classes that can be entered

    Returns:
        Center of the chosen tile, None when nothing is passable
    """
    candidates = passable_tiles(tile_map, costs)
    if not candidates:
        return None
    column, row = prng.choice(candidates)
    return geometry.tile_center(column, row)
