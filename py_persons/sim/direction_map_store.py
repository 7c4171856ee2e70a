"""Pre-generated direction maps, kept in the database by destination tile."""

from typing import Dict, Optional, Tuple

import structlog

from ..core.direction_map import Direction, DirectionMap, DirectionMapCache, parse_rendered_directions
from ..db.connection import Database
from ..db.queries import CellQueries
from .dispatch import DirectionMapMessage
from .scheduler import current_time_ms

logger = structlog.get_logger()


class DirectionMapStore:
    """Computes direction maps through a cache and persists their drawings."""

    def __init__(self, database: Database, cache: DirectionMapCache, clock=current_time_ms):
        self.db = database
        self.cache = cache
        self.clock = clock

    def key_for(self, destination: Tuple[float, float]) -> str:
        column, row = self.cache.geometry.tile_of(destination)
        return f"{column},{row}"

    def generate(self, destination: Tuple[float, float]) -> DirectionMap:
        """Compute (or reuse) the map for ``destination`` and store it."""
        direction_map = self.cache.get(destination)
        key = self.key_for(destination)
        with self.db.get_session() as session:
            CellQueries(session).save_direction_map(key, direction_map.render(), self.clock())
        logger.info("Direction map stored", key=key, reachable=direction_map.has_destination)
        return direction_map

    def handle_message(self, message: DirectionMapMessage) -> DirectionMap:
        """Subscriber for ``generate_direction_map`` jobs."""
        return self.generate((message.x, message.y))

    def rendered(self, destination: Tuple[float, float]) -> Optional[str]:
        with self.db.get_session() as session:
            record = CellQueries(session).get_direction_map(self.key_for(destination))
            return record.rendered if record else None

    def stored_directions(self, destination: Tuple[float, float]) -> Optional[Dict[Tuple[int, int], Direction]]:
        """Directions by (column, row) read back from the stored drawing."""
        rendered = self.rendered(destination)
        if rendered is None:
            return None
        return parse_rendered_directions(rendered)
