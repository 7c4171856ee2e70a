"""Follow a direction map from an agent's position to build a timed path."""

from dataclasses import dataclass
from typing import List, Tuple

import structlog

from .cells import Point
from .city_map import TileGeometry
from .direction_map import Direction, DirectionMap

logger = structlog.get_logger()


@dataclass(frozen=True)
class Waypoint:
    """Where an agent is at a moment, in epoch milliseconds."""
    time_ms: int
    location: Point

    def to_dict(self) -> dict:
        return {"time": self.time_ms, "location": {"x": self.location.x, "y": self.location.y}}

    @classmethod
    def from_dict(cls, data: dict) -> "Waypoint":
        location = data["location"]
        return cls(int(data["time"]), Point(float(location["x"]), float(location["y"])))


@dataclass
class PathOptions:
    """Timing constants of the path walker."""
    lead_time_ms: int = 2000  # delay before the first step
    vertical_step_ms: int = 3000
    horizontal_step_ms: int = 5000
    max_steps: int = 100  # loop guard

    def step_ms(self, direction: Direction) -> int:
        if direction in (Direction.UP, Direction.DOWN):
            return self.vertical_step_ms
        if direction in (Direction.LEFT, Direction.RIGHT):
            return self.horizontal_step_ms
        return 0


def compute_path(direction_map: DirectionMap, origin: Tuple[float, float], now_ms: int,
                 geometry: TileGeometry = TileGeometry(),
                 options: PathOptions = PathOptions()) -> List[Waypoint]:
    """
    Walk the direction map from ``origin`` and record the corners of the route.

    The first waypoint is the origin at ``now_ms + lead_time_ms`` so a freshly
    computed path never starts in the past. Straight runs collapse into one
    segment; a waypoint is added at every tile where the direction changes
    and at the destination. The walk always ends within ``max_steps`` steps,
    so an unreachable destination yields a path that does not move.

    Args:
        direction_map: Directions toward the destination
        origin: Agent's world position
        now_ms: Current time in epoch milliseconds
        geometry: Placement of the tile map in world space
        options: Step timings and loop guard

    Returns:
        Waypoints ordered by time, never empty
    """
    start_ms = now_ms + options.lead_time_ms
    path = [Waypoint(start_ms, Point(*origin))]

    column, row = geometry.tile_of(origin)
    elapsed = 0
    last_direction = None
    moved_since_waypoint = False

    for _ in range(options.max_steps):
        direction = direction_map.direction_at(column, row)

        if direction.is_move:
            # corner, the agent turns on this tile
            if last_direction is not None and direction != last_direction:
                path.append(Waypoint(start_ms + elapsed, geometry.tile_center(column, row)))
            step_x, step_y = direction.step
            column += step_x
            row += step_y
            elapsed += options.step_ms(direction)
            last_direction = direction
            moved_since_waypoint = True
            continue

        if direction == Direction.DESTINATION and last_direction is not None:
            elapsed += options.step_ms(last_direction)
            path.append(Waypoint(start_ms + elapsed, geometry.tile_center(column, row)))
            moved_since_waypoint = False
        break
    else:
        logger.warning("Path walker step limit reached",
                       max_steps=options.max_steps, column=column, row=row)

    if moved_since_waypoint:
        # stopped by the loop guard or on a tile without direction
        path.append(Waypoint(start_ms + elapsed, geometry.tile_center(column, row)))

    return path


def path_end_ms(path: List[Waypoint]) -> int:
    """Time of the last waypoint."""
    return path[-1].time_ms
