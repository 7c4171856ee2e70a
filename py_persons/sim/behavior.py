"""
Behavior steps: the game rules applied to one cell per tick.

A behavior step is any callable ``f(CellState) -> CellState``. The scheduler
loads the cell, hands a ``CellState`` to the step and writes back whatever
changed. Inventory, construction and economy rules plug in here; the
default step only keeps agents walking around the city.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from ..core.alea_prng import AleaPRNG
from ..core.cell_intervals import CellInterval
from ..core.cells import Point
from ..core.city_map import TileGeometry, TileMap, random_destination
from ..core.motion import done_walking, position_at
from ..core.path_walker import Waypoint
from ..core.terrain import ResourceSpec

logger = structlog.get_logger()


@dataclass
class NpcState:
    """An agent as seen by a behavior step."""
    id: str
    x: float
    y: float
    path: List[Waypoint] = field(default_factory=list)
    destination: Optional[Point] = None
    done_walking_ms: int = 0
    state: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    direction_map: Optional[str] = None
    new_destination: bool = False  # set by a step to request a new path


@dataclass
class ObjectState:
    """A loose object; clear ``exists`` to have it deleted."""
    id: str
    x: float
    y: float
    object_type: str
    exists: bool = True
    grabbed_by_npc_id: Optional[str] = None
    health: Dict[str, float] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)
    version: int = 0  # 0 for objects created during the tick


@dataclass
class ResourceState:
    """A terrain resource with the version it was loaded at."""
    spec: ResourceSpec
    version: int = 1


@dataclass
class CellState:
    """Everything a behavior step may read or change for one cell."""
    cell: str
    now_ms: int
    duration_ms: int
    npcs: List[NpcState] = field(default_factory=list)
    objects: List[ObjectState] = field(default_factory=list)
    resources: List[ResourceState] = field(default_factory=list)
    intervals: List[CellInterval] = field(default_factory=list)
    nearby_npc_ids: List[str] = field(default_factory=list)  # read-only context

    def npc(self, npc_id: str) -> Optional[NpcState]:
        for npc in self.npcs:
            if npc.id == npc_id:
                return npc
        return None


BehaviorStep = Callable[[CellState], CellState]


def idle_behavior(state: CellState) -> CellState:
    """Step that changes nothing."""
    return state


class StreetWalkerBehavior:
    """
    Send every agent that finished walking to a random tile of the city.

    Choices are drawn from an ``AleaPRNG`` seeded by agent id and tick time,
    so replaying the same tick picks the same destinations.
    """

    def __init__(self, tile_map: TileMap, geometry: TileGeometry = TileGeometry(),
                 costs: Optional[Mapping[str, float]] = None):
        self.tile_map = tile_map
        self.geometry = geometry
        self.costs = costs

    def __call__(self, state: CellState) -> CellState:
        result = copy.deepcopy(state)
        started = 0

        for npc in result.npcs:
            if not done_walking(npc.path, state.now_ms):
                continue

            npc.x, npc.y = position_at(npc.path, state.now_ms, (npc.x, npc.y))

            prng = AleaPRNG(f"{npc.id}-{state.now_ms}")
            destination = random_destination(self.tile_map, self.geometry, prng, self.costs)
            if destination is None:
                continue

            npc.destination = destination
            npc.new_destination = True
            started += 1

        logger.debug("Street walkers dispatched", cell=state.cell, started=started)
        return result
