"""
Direction-map pathfinding.

For a single destination, every tile of a city map gets the direction a
traveler standing on it should step to get closer. The map is computed by
repeated relaxation rather than a priority queue, which keeps the code
simple and the cost bounded for city-sized maps.

Tie-breaking is significant: relaxation accepts equal weights (``<=``), so
the last neighbor tried wins. The order in which neighbors are tried depends
on where a tile sits relative to the destination, which keeps paths from
being pulled toward one corner of the map.
"""

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from .cells import Point
from .city_map import DEFAULT_TILE_COSTS, TileGeometry, TileMap

logger = structlog.get_logger()


class Direction(str, Enum):
    """Step to take from a tile."""
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    DESTINATION = "*"
    NONE = ""

    @property
    def is_move(self) -> bool:
        return self in _STEPS

    @property
    def step(self) -> Tuple[int, int]:
        """Column and row delta of one step."""
        return _STEPS.get(self, (0, 0))

    @property
    def arrow(self) -> str:
        return _ARROWS[self]

    @classmethod
    def from_arrow(cls, char: str) -> "Direction":
        for direction, arrow in _ARROWS.items():
            if arrow == char:
                return direction
        return cls.NONE


_STEPS = {
    Direction.UP: (0, -1),
    Direction.DOWN: (0, 1),
    Direction.LEFT: (-1, 0),
    Direction.RIGHT: (1, 0),
}

_ARROWS = {
    Direction.UP: "↑",
    Direction.DOWN: "↓",
    Direction.LEFT: "←",
    Direction.RIGHT: "→",
    Direction.DESTINATION: "*",
    Direction.NONE: " ",
}


@dataclass
class DirectionTile:
    """One entry of a direction map."""
    tile: str
    weight: float = math.inf
    direction: Direction = Direction.NONE


@dataclass
class DirectionMap:
    """Grid parallel to a tile map holding weights and directions."""
    tiles: List[List[DirectionTile]]
    destination: Tuple[int, int]

    def get(self, column: int, row: int) -> Optional[DirectionTile]:
        if row < 0 or row >= len(self.tiles) or column < 0:
            return None
        line = self.tiles[row]
        if column >= len(line):
            return None
        return line[column]

    def direction_at(self, column: int, row: int) -> Direction:
        """Direction at a tile; NONE outside the grid."""
        data = self.get(column, row)
        return data.direction if data else Direction.NONE

    def weight_at(self, column: int, row: int) -> float:
        data = self.get(column, row)
        return data.weight if data else math.inf

    @property
    def has_destination(self) -> bool:
        column, row = self.destination
        return self.direction_at(column, row) == Direction.DESTINATION

    def render(self) -> str:
        """Arrow drawing of the map, one line per row."""
        return "\n".join(
            "".join(data.direction.arrow for data in line)
            for line in self.tiles
        )

    def signature(self) -> Tuple:
        """Hashable snapshot of weights and directions, for comparisons."""
        return tuple(
            tuple((data.tile, data.weight, data.direction.value) for data in line)
            for line in self.tiles
        )


def _relax(current: DirectionTile, neighbor: Optional[DirectionTile],
           direction: Direction, costs: Mapping[str, float]) -> None:
    """Offer the neighbor a route through the current tile."""
    if neighbor is None:
        return
    new_weight = current.weight + costs.get(neighbor.tile, math.inf)
    if math.isinf(new_weight):
        return
    if new_weight <= neighbor.weight:
        neighbor.weight = new_weight
        neighbor.direction = direction


def compute_direction_map(tile_map: TileMap, destination: Tuple[float, float],
                          costs: Optional[Mapping[str, float]] = None,
                          geometry: TileGeometry = TileGeometry()) -> DirectionMap:
    """
    Compute the direction every tile should step toward a destination.

    Args:
        tile_map: City tiles; rows may be of different lengths
        destination: World position of the destination
        costs: Cost of entering each tile class; missing classes are impassable
        geometry: Placement of the tile map in world space

    Returns:
        Direction map; the destination tile holds ``*`` and weight 0,
        unreachable tiles keep weight ``inf`` and no direction
    """
    costs = DEFAULT_TILE_COSTS if costs is None else costs
    dest_column, dest_row = geometry.tile_of(destination)

    grid = [
        [DirectionTile(tile=char) for char in row]
        for row in tile_map.rows
    ]
    direction_map = DirectionMap(tiles=grid, destination=(dest_column, dest_row))

    target = direction_map.get(dest_column, dest_row)
    if target is None:
        logger.warning("Destination outside of tile map",
                       column=dest_column, row=dest_row)
        return direction_map
    target.weight = 0
    target.direction = Direction.DESTINATION

    num_steps = tile_map.num_rows + tile_map.num_columns
    get = direction_map.get

    for _ in range(num_steps):
        for row_index, line in enumerate(grid):
            for column_index, data in enumerate(line):
                if math.isinf(data.weight):
                    continue

                left = get(column_index - 1, row_index)
                right = get(column_index + 1, row_index)
                top = get(column_index, row_index - 1)
                bottom = get(column_index, row_index + 1)

                delta_x = column_index - dest_column
                delta_y = row_index - dest_row

                def left_right():
                    if delta_x > 0:
                        _relax(data, left, Direction.RIGHT, costs)
                        _relax(data, right, Direction.LEFT, costs)
                    else:
                        _relax(data, right, Direction.LEFT, costs)
                        _relax(data, left, Direction.RIGHT, costs)

                def up_down():
                    if delta_y > 0:
                        _relax(data, top, Direction.DOWN, costs)
                        _relax(data, bottom, Direction.UP, costs)
                    else:
                        _relax(data, bottom, Direction.UP, costs)
                        _relax(data, top, Direction.DOWN, costs)

                # the last accepted relaxation sets the direction
                if abs(delta_x) > abs(delta_y):
                    up_down()
                    left_right()
                else:
                    left_right()
                    up_down()

    return direction_map


class DirectionMapCache:
    """
    Direction maps keyed by destination tile.

    Safe to share between worker threads. Valid only while the tile map is
    unchanged; call ``invalidate`` after the city layout changes.
    """

    def __init__(self, tile_map: TileMap, costs: Optional[Mapping[str, float]] = None,
                 geometry: TileGeometry = TileGeometry(), max_entries: int = 64):
        self.tile_map = tile_map
        self.costs = costs
        self.geometry = geometry
        self.max_entries = max_entries
        self._maps: "OrderedDict[Tuple[int, int], DirectionMap]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, destination: Tuple[float, float]) -> DirectionMap:
        key = self.geometry.tile_of(destination)
        with self._lock:
            cached = self._maps.get(key)
            if cached is not None:
                self.hits += 1
                self._maps.move_to_end(key)
                return cached
            self.misses += 1
            tile_map = self.tile_map

        # computed unlocked; two workers may compute the same map once each
        direction_map = compute_direction_map(tile_map, destination, self.costs, self.geometry)

        with self._lock:
            if self.tile_map is tile_map:
                self._maps[key] = direction_map
                self._maps.move_to_end(key)
                while len(self._maps) > self.max_entries:
                    self._maps.popitem(last=False)
        return direction_map

    def invalidate(self, tile_map: Optional[TileMap] = None) -> None:
        with self._lock:
            if tile_map is not None:
                self.tile_map = tile_map
            self._maps.clear()
        logger.info("Direction map cache invalidated")

    def __len__(self) -> int:
        with self._lock:
            return len(self._maps)


def parse_rendered_directions(rendered: str) -> Dict[Tuple[int, int], Direction]:
    """Read directions back from ``DirectionMap.render`` output."""
    directions = {}
    for row_index, line in enumerate(rendered.split("\n")):
        for column_index, char in enumerate(line):
            directions[(column_index, row_index)] = Direction.from_arrow(char)
    return directions
