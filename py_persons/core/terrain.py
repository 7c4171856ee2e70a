"""
Procedural terrain resources.

The world is covered by terrain tiles. The first time a tile is needed its
trees and rocks are generated from nothing but the tile coordinates:

1. Scatter a seeded random number of points in the tile and its 8 neighbors
2. Spread them out with Lloyd relaxation over a Voronoi diagram
3. Keep the points inside the tile, snapped to a coarse grid
4. Pick a resource type for each point from a weighted table

Every random draw comes from an ``AleaPRNG`` seeded by coordinates, so the
same tile always yields the same resources regardless of which tiles were
generated before it. Neighbor tiles are scattered too so density does not
drop along tile edges.
"""

import base64
import hashlib
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog
from scipy.spatial import Voronoi

from .alea_prng import AleaPRNG

logger = structlog.get_logger()


class ResourceType(str, Enum):
    """Object types produced by terrain generation and harvesting."""
    TREE = "TREE"
    ROCK = "ROCK"
    WOOD = "WOOD"
    STONE = "STONE"
    COAL = "COAL"
    IRON = "IRON"


@dataclass(frozen=True)
class TerrainTilePosition:
    """Coordinates of a terrain tile."""
    tile_x: int
    tile_y: int

    @property
    def id(self) -> str:
        return f"terrainTile({self.tile_x},{self.tile_y})"


@dataclass
class ResourceSpawn:
    """An item a resource can drop, with its weight and respawn delay."""
    type: ResourceType
    probability: int
    spawn_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "probability": self.probability,
                "spawn_time_ms": self.spawn_time_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceSpawn":
        return cls(ResourceType(data["type"]), int(data["probability"]), int(data["spawn_time_ms"]))


SPAWN_TABLES: Dict[ResourceType, List[ResourceSpawn]] = {
    ResourceType.TREE: [
        ResourceSpawn(ResourceType.WOOD, 100, 60000),
    ],
    ResourceType.ROCK: [
        ResourceSpawn(ResourceType.STONE, 70, 60000),
        ResourceSpawn(ResourceType.COAL, 20, 120000),
        ResourceSpawn(ResourceType.IRON, 10, 180000),
    ],
}


@dataclass
class TerrainOptions:
    """Terrain generation parameters."""
    tile_size: int = 1000
    min_points: int = 10  # scattered points per tile
    max_points: int = 25
    relaxation_steps: int = 5
    snap: int = 10  # alignment grid for final positions
    max_resources: int = 100  # per tile
    feature_weights: Tuple[Tuple[ResourceType, float], ...] = (
        (ResourceType.TREE, 90.0),
        (ResourceType.ROCK, 10.0),
    )


@dataclass
class ResourceSpec:
    """A generated resource with its depletion and respawn state."""
    id: str
    x: int
    y: int
    object_type: ResourceType
    spawn_seed: str
    spawns: List[ResourceSpawn]
    spawn_state: Optional[Dict[str, Any]] = None  # None until first harvest
    depleted: bool = False
    ready_time_ms: int = 0
    health: Dict[str, float] = field(default_factory=lambda: {"rate": 0, "max": 10, "value": 10})
    tree_seed: Optional[str] = None


@dataclass
class SpawnedObject:
    """An item dropped next to a harvested resource."""
    id: str
    x: int
    y: int
    object_type: ResourceType


@dataclass
class HarvestResult:
    """Outcome of harvesting a resource once."""
    spawned: SpawnedObject
    spawn_state: Dict[str, Any]
    ready_time_ms: int


def tile_seed(tile_x: int, tile_y: int) -> str:
    """One-way hash of tile coordinates used to seed the tile generator."""
    digest = hashlib.sha256(f"terrain-{tile_x}-{tile_y}".encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def terrain_tile_position(point: Tuple[float, float], tile_size: int = 1000) -> TerrainTilePosition:
    """Terrain tile containing a world point."""
    x, y = point
    return TerrainTilePosition(math.floor(x / tile_size), math.floor(y / tile_size))


def tiles_to_load(position: TerrainTilePosition) -> List[TerrainTilePosition]:
    """Terrain tiles that should exist around a viewer's tile."""
    return [
        TerrainTilePosition(position.tile_x + i, position.tile_y + j)
        for i in range(-1, 4)
        for j in range(-1, 4)
    ]


def generate_tile_points(tile_x: int, tile_y: int, options: TerrainOptions) -> np.ndarray:
    """
    Scatter random points uniformly inside one tile.

    Args:
        tile_x, tile_y: Tile coordinates, the only seed input
        options: Point count range and tile size

    Returns:
        Array of [x, y] world coordinates
    """
    prng = AleaPRNG(tile_seed(tile_x, tile_y))
    count = math.floor(prng.double() * (options.max_points - options.min_points)) + options.min_points

    points = []
    for _ in range(count):
        x = prng.double() * options.tile_size + tile_x * options.tile_size
        y = prng.double() * options.tile_size + tile_y * options.tile_size
        points.append([x, y])
    return np.array(points, dtype=float).reshape(-1, 2)


def cell_centroid(vertices: np.ndarray) -> np.ndarray:
    """
    Area centroid of a Voronoi cell given by its vertices in order.

    Cells with fewer than three vertices or no area fall back to the mean of
    their vertices.
    """
    x, y = vertices[:, 0], vertices[:, 1]
    x_next, y_next = np.roll(x, -1), np.roll(y, -1)
    cross = x * y_next - x_next * y
    area = cross.sum() / 2

    if len(vertices) < 3 or abs(area) < 1e-10:
        return vertices.mean(axis=0)
    return np.array([((x + x_next) * cross).sum(), ((y + y_next) * cross).sum()]) / (6 * area)


def relax_points(points: np.ndarray, n_iterations: int) -> np.ndarray:
    """
    Lloyd relaxation: move every point to the centroid of its Voronoi cell.

    Points on the hull have unbounded cells and stay where they are; they
    belong to the neighbor tiles that only exist to shape the center tile.

    Args:
        points: Array of [x, y] points, left untouched
        n_iterations: Number of relaxation rounds

    Returns:
        Relaxed copy of the points
    """
    relaxed = points.copy()
    if len(relaxed) < 4:
        return relaxed

    for _ in range(n_iterations):
        vor = Voronoi(relaxed)
        moved = relaxed.copy()

        for index, region_index in enumerate(vor.point_region):
            region = vor.regions[region_index] if region_index >= 0 else []
            if len(region) < 3 or -1 in region:
                continue
            moved[index] = cell_centroid(vor.vertices[region])

        relaxed = moved

    return relaxed


def generate_terrain_points(position: TerrainTilePosition,
                            options: TerrainOptions = TerrainOptions()) -> List[Tuple[int, int]]:
    """
    Evenly spread, grid-aligned points inside one terrain tile.

    Args:
        position: Tile to generate
        options: Generation parameters

    Returns:
        Unique (x, y) positions, in generation order
    """
    blocks = [
        generate_tile_points(position.tile_x + i, position.tile_y + j, options)
        for i in range(-1, 2)
        for j in range(-1, 2)
    ]
    points = np.vstack(blocks)
    points = relax_points(points, options.relaxation_steps)

    seen = set()
    result = []
    for x, y in points:
        if math.floor(x / options.tile_size) != position.tile_x:
            continue
        if math.floor(y / options.tile_size) != position.tile_y:
            continue
        snapped = (
            int(math.floor(x / options.snap) * options.snap),
            int(math.floor(y / options.snap) * options.snap),
        )
        if snapped in seen:
            continue
        seen.add(snapped)
        result.append(snapped)
    return result


def pick_weighted(prng: AleaPRNG, weights: Sequence[Tuple[Any, float]]) -> Any:
    """Choose an item by cumulative weighted probability."""
    total = sum(weight for _, weight in weights)
    roll = prng.quick() * total
    cumulative = 0.0
    for item, weight in weights:
        cumulative += weight
        if roll < cumulative:
            return item
    return weights[-1][0]


def generate_terrain_tile(position: TerrainTilePosition,
                          options: TerrainOptions = TerrainOptions()) -> List[ResourceSpec]:
    """
    Generate the resources of one terrain tile.

    Pure and deterministic: the result depends only on ``position`` and
    ``options``.

    Args:
        position: Tile to generate
        options: Generation parameters

    Returns:
        At most ``options.max_resources`` resources
    """
    resources = []
    for x, y in generate_terrain_points(position, options):
        resource_id = f"resource({x},{y})"
        prng = AleaPRNG(resource_id)
        object_type = pick_weighted(prng, options.feature_weights)

        resource = ResourceSpec(
            id=resource_id,
            x=x,
            y=y,
            object_type=object_type,
            spawn_seed=resource_id,
            spawns=[ResourceSpawn(s.type, s.probability, s.spawn_time_ms)
                    for s in SPAWN_TABLES.get(object_type, [])],
        )
        if object_type == ResourceType.TREE:
            resource.tree_seed = f"tree({x},{y})"
        resources.append(resource)

    if len(resources) > options.max_resources:
        logger.warning("Terrain tile resources capped", tile=position.id,
                       generated=len(resources), cap=options.max_resources)
        resources = resources[:options.max_resources]

    return resources


def harvest(resource: ResourceSpec, now_ms: int) -> Optional[HarvestResult]:
    """
    Harvest a resource once, if it is ready.

    The drop is chosen by the resource's own generator; its state continues
    from ``resource.spawn_state`` (or the spawn seed on first harvest) and the
    new state is returned for the caller to store.

    Returns:
        None when the resource is still depleted or has no spawns
    """
    if resource.depleted and resource.ready_time_ms > now_ms:
        return None
    if not resource.spawns:
        return None

    if resource.spawn_state is None:
        prng = AleaPRNG(resource.spawn_seed)
    else:
        prng = AleaPRNG.from_state(resource.spawn_state)

    spawn = resource.spawns[math.floor(prng.quick() * len(resource.spawns))]
    x = resource.x + math.floor(prng.quick() * 200) - 100
    y = resource.y + math.floor(prng.quick() * 200) - 100
    spawned = SpawnedObject(id=f"object-{prng.int32()}", x=x, y=y, object_type=spawn.type)
    respawn_ms = math.ceil(prng.quick() * spawn.spawn_time_ms)

    return HarvestResult(spawned=spawned, spawn_state=prng.state(),
                         ready_time_ms=now_ms + respawn_ms)
