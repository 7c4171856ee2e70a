"""Where an agent is along its path at a given moment."""

from typing import List, Tuple

from .cells import Point
from .path_walker import Waypoint


def position_at(path: List[Waypoint], time_ms: int, fallback: Tuple[float, float]) -> Point:
    """
    Interpolate the agent position along its path.

    Before the path starts the agent is at ``fallback`` (its stored position);
    after the last waypoint it stays at the final location.
    """
    if not path or time_ms <= path[0].time_ms:
        return Point(*fallback)

    for a, b in zip(path, path[1:]):
        if time_ms < b.time_ms:
            span = b.time_ms - a.time_ms
            t = (time_ms - a.time_ms) / span if span > 0 else 1.0
            return Point(
                a.location.x + (b.location.x - a.location.x) * t,
                a.location.y + (b.location.y - a.location.y) * t,
            )

    return path[-1].location


def done_walking(path: List[Waypoint], time_ms: int) -> bool:
    """True when the agent has no path or has passed its last waypoint."""
    if not path:
        return True
    return time_ms > path[-1].time_ms
