"""
Decomposition of a timed path into cell occupancy intervals.

Readers ask "which agents may be in cell X right now" by querying intervals
on (cell, start, end) instead of scanning every agent's path. For one agent
the intervals are contiguous, ordered by start time and never repeat the
same cell twice in a row; the last one stays open until ``END_OF_TIME_MS``
because an agent that stopped moving is present indefinitely.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .cells import CellId, PointLike, cell_of
from .path_walker import Waypoint

# 9999-12-31T23:59:59.999Z, stands in for "until further notice"
END_OF_TIME_MS = 253402300799999


@dataclass
class CellInterval:
    """An agent attributed to a cell for ``[start_ms, end_ms)``."""
    npc_id: str
    cell: str
    start_ms: int
    end_ms: int
    sequence: int = 0
    expired: bool = False

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def covers(self, time_ms: int) -> bool:
        return self.start_ms <= time_ms < self.end_ms


def _ms_to_boundary(start: float, velocity: float, cell: int,
                    cell_size: float) -> Optional[float]:
    """Time from segment start until the moving coordinate leaves ``cell``."""
    if velocity > 0:
        return ((cell + 1) * cell_size - start) / velocity
    if velocity < 0:
        return (cell * cell_size - start) / velocity
    return None


def _segment_pieces(a: Waypoint, b: Waypoint,
                    cell_size: float) -> List[Tuple[CellId, int, int]]:
    """
    Cells visited between two waypoints with the time spent in each.

    Each axis crossing moves the agent exactly one cell along that axis, so a
    segment crosses ``|dcx| + |dcy|`` boundaries. The next crossing is the
    earlier of the two per-axis boundary times.
    """
    start_cell = cell_of(a.location, cell_size)
    end_cell = cell_of(b.location, cell_size)
    crossings = abs(end_cell.cx - start_cell.cx) + abs(end_cell.cy - start_cell.cy)
    duration = b.time_ms - a.time_ms

    if crossings == 0 or duration <= 0:
        return [(start_cell, a.time_ms, b.time_ms)]

    velocity_x = (b.location.x - a.location.x) / duration
    velocity_y = (b.location.y - a.location.y) / duration
    cx, cy = start_cell
    elapsed = 0.0
    pieces = []

    for _ in range(crossings):
        time_x = _ms_to_boundary(a.location.x, velocity_x, cx, cell_size)
        time_y = _ms_to_boundary(a.location.y, velocity_y, cy, cell_size)
        if time_x is None and time_y is None:
            break

        crosses_x = time_y is None or (time_x is not None and time_x <= time_y)
        crossing = time_x if crosses_x else time_y
        crossing = min(max(crossing, elapsed), duration)

        pieces.append((CellId(cx, cy), a.time_ms + round(elapsed), a.time_ms + round(crossing)))
        if crosses_x:
            cx += 1 if velocity_x > 0 else -1
        else:
            cy += 1 if velocity_y > 0 else -1
        elapsed = crossing

    pieces.append((CellId(cx, cy), a.time_ms + round(elapsed), b.time_ms))
    return pieces


def coalesce_intervals(npc_id: str,
                       pieces: Iterable[Tuple[CellId, int, int]]) -> List[CellInterval]:
    """
    Merge consecutive pieces in the same cell and number the result.

    Empty pieces are dropped; they only appear where a path touches a cell
    corner or a boundary at a waypoint.
    """
    intervals: List[CellInterval] = []
    for cell, start_ms, end_ms in pieces:
        if end_ms <= start_ms:
            continue
        key = cell.key
        if intervals and intervals[-1].cell == key:
            intervals[-1].end_ms = end_ms
            continue
        intervals.append(CellInterval(npc_id=npc_id, cell=key, start_ms=start_ms,
                                      end_ms=end_ms, sequence=len(intervals)))
    return intervals


def decompose_into_cell_intervals(npc_id: str, path: List[Waypoint], cell_size: float,
                                  now_ms: Optional[int] = None,
                                  origin: Optional[PointLike] = None) -> List[CellInterval]:
    """
    Convert a path into cell occupancy intervals.

    Args:
        npc_id: Agent the intervals belong to
        path: Waypoints ordered by time
        cell_size: Simulation cell size, independent of the tile map unit
        now_ms: When given and earlier than the first waypoint, the agent is
            attributed to its starting cell from ``now_ms`` on
        origin: Agent position, required when ``path`` is empty

    Returns:
        Contiguous intervals from the start time until ``END_OF_TIME_MS``
    """
    pieces: List[Tuple[CellId, int, int]] = []

    if not path:
        if origin is None or now_ms is None:
            raise ValueError("An empty path needs both origin and now_ms")
        pieces.append((cell_of(origin, cell_size), now_ms, END_OF_TIME_MS))
        return coalesce_intervals(npc_id, pieces)

    first = path[0]
    if now_ms is not None and now_ms < first.time_ms:
        start_location = origin if origin is not None else first.location
        pieces.append((cell_of(start_location, cell_size), now_ms, first.time_ms))

    for a, b in zip(path, path[1:]):
        pieces.extend(_segment_pieces(a, b, cell_size))

    last = path[-1]
    pieces.append((cell_of(last.location, cell_size), last.time_ms, END_OF_TIME_MS))

    return coalesce_intervals(npc_id, pieces)


def cells_at(intervals: Iterable[CellInterval], time_ms: int) -> List[str]:
    """Cells whose interval covers ``time_ms``."""
    return [interval.cell for interval in intervals if interval.covers(time_ms)]
