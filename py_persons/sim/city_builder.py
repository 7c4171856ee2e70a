"""
City and population setup.

``build_city`` turns a base layout into lots, stores each lot as a house
indexed under every cell it overlaps, and places the lot furniture.
``seed_npcs`` replaces the population: each agent gets a residential home,
starts at its door and is due for a destination on the next tick of its cell.
"""

from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import delete, update

from ..core.alea_prng import AleaPRNG
from ..core.cell_intervals import decompose_into_cell_intervals
from ..core.cells import cell_key
from ..core.city_map import DEFAULT_CITY_FORMAT, TileGeometry, TileMap
from ..core.lots import LotZone, build_city_map, lot_entrance
from ..db.connection import Database
from ..db.models import House, HouseCell, NetworkObject, Npc, NpcCellTime
from ..db.queries import CellQueries
from .scheduler import current_time_ms

logger = structlog.get_logger()


@dataclass
class CityLayout:
    """Result of building a city."""
    tile_map: TileMap
    houses: int
    objects: int


class CityBuilder:
    """Stores the lots of a city and the agents living in it."""

    def __init__(self, database: Database, geometry: TileGeometry = TileGeometry(),
                 cell_size: int = 2000, clock=current_time_ms):
        self.db = database
        self.geometry = geometry
        self.cell_size = cell_size
        self.clock = clock

    def build_city(self, base_format: str = DEFAULT_CITY_FORMAT,
                   city_id: str = "city1") -> CityLayout:
        """
        Generate lots from ``base_format`` and replace the stored houses.

        Residents of houses that keep their id are carried over, so rebuilding
        the same layout does not unhouse the population.
        """
        tile_map, lots, objects = build_city_map(base_format, self.geometry, city_id)
        now_ms = self.clock()

        with self.db.get_session() as session:
            residents = dict(session.query(House.id, House.npc_id).all())
            session.execute(delete(HouseCell.__table__))
            session.execute(delete(House.__table__))

            queries = CellQueries(session)
            for lot in lots:
                queries.add_house(
                    id=lot.id, x=lot.x, y=lot.y, cell_size=self.cell_size,
                    width=lot.width, height=lot.height, npc_id=residents.get(lot.id),
                    zone=lot.zone, format=lot.format,
                )

            for obj in objects:
                session.merge(NetworkObject(
                    id=obj.id,
                    x=obj.x,
                    y=obj.y,
                    cell=cell_key((obj.x, obj.y), self.cell_size),
                    object_type=obj.object_type,
                    exists=True,
                    health={},
                    state=obj.state,
                    last_update_ms=now_ms,
                    version=1,
                ))

        logger.info("City built", city_id=city_id, houses=len(lots), objects=len(objects))
        return CityLayout(tile_map=tile_map, houses=len(lots), objects=len(objects))

    def seed_npcs(self, count: int = 50, seed: str = "npcs") -> List[str]:
        """
        Replace every agent with ``count`` new ones.

        Homes are drawn among residential houses with an ``AleaPRNG`` seeded
        by ``seed``; a house records the first agent that moves in. Without
        any residential house agents start at the center of the first tile.

        Returns:
            Ids of the created agents
        """
        now_ms = self.clock()
        prng = AleaPRNG(seed)
        npc_ids = [f"npc-{i}" for i in range(count)]

        with self.db.get_session() as session:
            session.execute(delete(NpcCellTime.__table__))
            session.execute(delete(Npc.__table__))
            session.execute(update(House.__table__).values(npc_id=None))

            homes = (
                session.query(House)
                .filter(House.zone == LotZone.RESIDENTIAL.value)
                .order_by(House.id)
                .all()
            )
            queries = CellQueries(session)

            for npc_id in npc_ids:
                home: Optional[House] = prng.choice(homes) if homes else None
                x, y = self._start_position(home)
                if home is not None and home.npc_id is None:
                    home.npc_id = npc_id

                session.add(Npc(
                    id=npc_id,
                    x=x,
                    y=y,
                    cell=cell_key((x, y), self.cell_size),
                    path=[],
                    done_walking_ms=now_ms,
                    state={"home_id": home.id if home is not None else None},
                    last_update_ms=now_ms,
                    version=1,
                ))
                queries.replace_intervals(npc_id, decompose_into_cell_intervals(
                    npc_id, [], self.cell_size, now_ms=now_ms, origin=(x, y)
                ))

        logger.info("Agents seeded", count=count, homes=len(homes))
        return npc_ids

    def _start_position(self, home: Optional[House]):
        if home is not None:
            entrance = lot_entrance(home, self.geometry)
            if entrance is not None:
                return entrance
        return tuple(self.geometry.tile_center(0, 0))
