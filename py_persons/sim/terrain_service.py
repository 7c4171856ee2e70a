"""
Terrain persistence and harvesting.

Generation itself is pure (``core.terrain``); this service decides which
tiles are missing, stores a generated tile all at once, and applies
harvests to stored resources.
"""

from typing import List, Optional, Tuple

import structlog
from scipy.spatial import QhullError
from sqlalchemy.exc import IntegrityError

from ..core.cells import cell_key
from ..core.terrain import (
    ResourceSpec,
    SpawnedObject,
    TerrainOptions,
    TerrainTilePosition,
    generate_terrain_tile,
    harvest,
    terrain_tile_position,
    tiles_to_load,
)
from ..db.connection import Database
from ..db.models import NetworkObject, Resource, TerrainTile
from ..db.queries import CellQueries
from ..errors import RetryableOperationError, TerrainGenerationError
from .dispatch import TERRAIN_TILE_TOPIC, Dispatcher, TerrainTileMessage
from .scheduler import current_time_ms, resource_state, resource_values

logger = structlog.get_logger()


class TerrainService:
    """Keeps the terrain around viewers generated and handles harvests."""

    def __init__(self, database: Database, dispatcher: Optional[Dispatcher] = None,
                 options: TerrainOptions = TerrainOptions(), cell_size: int = 2000,
                 clock=current_time_ms):
        self.db = database
        self.dispatcher = dispatcher
        self.options = options
        self.cell_size = cell_size
        self.clock = clock

    def missing_tiles(self, point: Tuple[float, float]) -> List[TerrainTilePosition]:
        """Tiles around ``point`` that have not been stored yet."""
        wanted = tiles_to_load(terrain_tile_position(point, self.options.tile_size))
        with self.db.get_session() as session:
            existing = set(CellQueries(session).existing_terrain_tiles(wanted))
        return [position for position in wanted if position.id not in existing]

    def request_missing_tiles(self, point: Tuple[float, float]) -> List[TerrainTilePosition]:
        """
        Publish one generation job per missing tile around ``point``.

        Without a dispatcher the tiles are generated inline.
        """
        missing = self.missing_tiles(point)
        for position in missing:
            message = TerrainTileMessage(tile_x=position.tile_x, tile_y=position.tile_y)
            if self.dispatcher is None:
                self.handle_message(message)
            else:
                self.dispatcher.publish(TERRAIN_TILE_TOPIC, message)

        logger.info("Terrain tiles requested", x=point[0], y=point[1], missing=len(missing))
        return missing

    def handle_message(self, message: TerrainTileMessage) -> int:
        """Subscriber for ``generate_terrain`` jobs."""
        return self.store_tile(TerrainTilePosition(message.tile_x, message.tile_y))

    def store_tile(self, position: TerrainTilePosition) -> int:
        """
        Generate a tile and commit its resources together with the tile marker.

        Storing a tile that already exists is a no-op, so duplicated jobs are
        harmless.

        Returns:
            Number of resources written

        Raises:
            TerrainGenerationError: The generator failed; nothing was stored
        """
        with self.db.get_session() as session:
            if CellQueries(session).get_terrain_tile(position) is not None:
                logger.debug("Terrain tile already stored", tile=position.id)
                return 0

        try:
            resources = generate_terrain_tile(position, self.options)
        except (QhullError, ValueError) as e:
            logger.error("Terrain generation failed", tile=position.id, error=str(e))
            raise TerrainGenerationError(f"Could not generate {position.id}") from e

        now_ms = self.clock()
        try:
            with self.db.get_session() as session:
                for spec in resources:
                    session.add(self._resource_row(spec, now_ms))
                session.add(TerrainTile(
                    id=position.id,
                    tile_x=position.tile_x,
                    tile_y=position.tile_y,
                    resource_count=len(resources),
                    created_ms=now_ms,
                ))
        except IntegrityError:
            # another worker stored the same tile first
            logger.info("Terrain tile stored concurrently", tile=position.id)
            return 0

        logger.info("Terrain tile stored", tile=position.id, resources=len(resources))
        return len(resources)

    def _resource_row(self, spec: ResourceSpec, now_ms: int) -> Resource:
        values = resource_values(spec, self.cell_size)
        return Resource(id=spec.id, version=1, last_update_ms=now_ms, **values)

    def tile_resources(self, position: TerrainTilePosition) -> Optional[List[ResourceSpec]]:
        """Stored resources of a tile, None when the tile was never stored."""
        size = self.options.tile_size
        with self.db.get_session() as session:
            queries = CellQueries(session)
            if queries.get_terrain_tile(position) is None:
                return None
            rows = queries.resources_in_area(position.tile_x * size, position.tile_y * size,
                                             size, size)
            return [resource_state(row).spec for row in rows]

    def harvest_resource(self, resource_id: str,
                         now_ms: Optional[int] = None) -> Optional[SpawnedObject]:
        """
        Harvest a stored resource once.

        The dropped object and the depleted resource are written in one
        transaction; the resource's generator state is saved so the next
        harvest continues the same sequence.

        Returns:
            The spawned object, None when the resource is missing or not ready

        Raises:
            RetryableOperationError: The resource changed concurrently
        """
        now_ms = self.clock() if now_ms is None else now_ms

        with self.db.get_session() as session:
            queries = CellQueries(session)
            row = session.get(Resource, resource_id)
            if row is None:
                logger.warning("Harvest of unknown resource", id=resource_id)
                return None

            state = resource_state(row)
            result = harvest(state.spec, now_ms)
            if result is None:
                logger.debug("Resource not ready", id=resource_id, ready_time_ms=row.ready_time_ms)
                return None

            spec = state.spec
            spec.spawn_state = result.spawn_state
            spec.depleted = True
            spec.ready_time_ms = result.ready_time_ms
            values = resource_values(spec, self.cell_size)
            values["last_update_ms"] = now_ms

            if queries.update_versioned(Resource, spec.id, state.version, values) == 0:
                raise RetryableOperationError()

            spawned = result.spawned
            session.add(NetworkObject(
                id=spawned.id,
                x=spawned.x,
                y=spawned.y,
                cell=cell_key((spawned.x, spawned.y), self.cell_size),
                object_type=spawned.object_type.value,
                exists=True,
                health={},
                state={"source": spec.id},
                last_update_ms=now_ms,
                version=1,
            ))

        logger.info("Resource harvested", id=resource_id, spawned=spawned.id,
                    object_type=spawned.object_type.value, ready_time_ms=result.ready_time_ms)
        return spawned
