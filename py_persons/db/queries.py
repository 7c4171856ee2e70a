"""
Cell-scoped query utilities.

Every stored entity carries the key of the cell it is in, so the queries here
are equality or ``IN`` filters on indexed ``cell`` columns. The class also
owns the low-level writes the scheduler needs:

- cell lock rows (insert, token-checked take-over and release)
- version-checked updates of NPCs, objects and resources
- replacement of an NPC's occupancy intervals
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from ..core.cell_intervals import CellInterval
from ..core.cells import CellId, PointLike, cell_key, cells_for_rect, relevant_cells
from ..core.terrain import TerrainTilePosition
from .models import (
    CellLock,
    DirectionMapRecord,
    House,
    HouseCell,
    NetworkObject,
    Npc,
    NpcCellTime,
    Resource,
    TerrainTile,
)

logger = structlog.get_logger()


class CellQueries:
    """
    Queries and writes scoped to simulation cells.

    All methods run inside the session given at construction; committing is
    the caller's business.
    """

    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session

    # Entities by cell

    def npcs_in_cell(self, cell: str) -> List[Npc]:
        return self.session.query(Npc).filter(Npc.cell == cell).order_by(Npc.id).all()

    def objects_in_cell(self, cell: str) -> List[NetworkObject]:
        return (
            self.session.query(NetworkObject)
            .filter(NetworkObject.cell == cell)
            .order_by(NetworkObject.id)
            .all()
        )

    def resources_in_cell(self, cell: str) -> List[Resource]:
        return (
            self.session.query(Resource)
            .filter(Resource.cell == cell)
            .order_by(Resource.id)
            .all()
        )

    # Houses and tick targets

    def add_house(self, id: str, x: float, y: float, cell_size: float,
                  width: float = 0, height: float = 0, npc_id: Optional[str] = None,
                  zone: Optional[str] = None, format: Optional[str] = None) -> House:
        """Add a house indexed under every cell its footprint overlaps."""
        house = House(
            id=id, x=x, y=y, width=width, height=height,
            cell=cell_key((x, y), cell_size), zone=zone, format=format, npc_id=npc_id,
        )
        house.cells = [
            HouseCell(cell=cell.key)
            for cell in cells_for_rect(x, y, width, height, cell_size)
        ]
        self.session.add(house)
        return house

    def populated_house_cells(self) -> List[str]:
        """Distinct cells overlapped by a house that has a resident."""
        rows = (
            self.session.query(HouseCell.cell)
            .join(House, House.id == HouseCell.house_id)
            .filter(House.npc_id.isnot(None))
            .distinct()
            .all()
        )
        return sorted(row[0] for row in rows)

    def npc_cells(self) -> List[str]:
        """Distinct cells agents are stored under."""
        rows = self.session.query(Npc.cell).distinct().all()
        return sorted(row[0] for row in rows)

    def tick_cells(self) -> List[str]:
        """
        Cells that get a simulation tick.

        A populated house marks its cells, and every cell an agent is stored
        under is ticked too, so agents that walked away from the houses keep
        being simulated.
        """
        return sorted(set(self.populated_house_cells()) | set(self.npc_cells()))

    # Occupancy intervals

    def active_intervals(self, cell: str, time_ms: int) -> List[NpcCellTime]:
        """Non-expired intervals of a cell that have not ended by ``time_ms``."""
        return (
            self.session.query(NpcCellTime)
            .filter(
                NpcCellTime.cell == cell,
                NpcCellTime.expired.is_(False),
                NpcCellTime.end_ms > time_ms,
            )
            .order_by(NpcCellTime.start_ms, NpcCellTime.npc_id)
            .all()
        )

    def expire_intervals(self, cell: str, time_ms: int) -> int:
        """
        Flag the intervals of a cell whose end has passed.

        Returns:
            Number of intervals flagged
        """
        stale = and_(
            NpcCellTime.cell == cell,
            NpcCellTime.expired.is_(False),
            NpcCellTime.end_ms <= time_ms,
        )
        # only open a write when there is something to flag
        pending = self.session.execute(select(NpcCellTime.npc_id).where(stale).limit(1)).first()
        if pending is None:
            return 0

        result = self.session.execute(
            update(NpcCellTime.__table__).where(stale).values(expired=True)
        )
        return result.rowcount

    def npc_ids_in_cells(self, cells: Iterable[str], time_ms: int) -> List[str]:
        """Agents whose interval in any of ``cells`` covers ``time_ms``."""
        cells = list(cells)
        if not cells:
            return []
        rows = (
            self.session.query(NpcCellTime.npc_id)
            .filter(
                NpcCellTime.cell.in_(cells),
                NpcCellTime.start_ms <= time_ms,
                NpcCellTime.end_ms > time_ms,
            )
            .distinct()
            .order_by(NpcCellTime.npc_id)
            .all()
        )
        return [row[0] for row in rows]

    def npc_ids_near(self, point: PointLike, cell_size: float, time_ms: int) -> List[str]:
        """Agents present around a viewer, using the corner-biased cells."""
        cells = [cell.key for cell in relevant_cells(point, cell_size)]
        return self.npc_ids_in_cells(cells, time_ms)

    def replace_intervals(self, npc_id: str, intervals: Sequence[CellInterval]) -> None:
        """Drop every stored interval of an agent and write the new ones."""
        self.session.execute(
            delete(NpcCellTime.__table__).where(NpcCellTime.npc_id == npc_id)
        )
        for interval in intervals:
            self.session.add(NpcCellTime(
                npc_id=interval.npc_id,
                sequence=interval.sequence,
                cell=interval.cell,
                start_ms=interval.start_ms,
                end_ms=interval.end_ms,
                expired=interval.expired,
            ))

    def intervals_for_npc(self, npc_id: str) -> List[NpcCellTime]:
        return (
            self.session.query(NpcCellTime)
            .filter(NpcCellTime.npc_id == npc_id)
            .order_by(NpcCellTime.sequence)
            .all()
        )

    # Cell locks

    def get_lock(self, cell: str) -> Optional[CellLock]:
        return self.session.get(CellLock, cell)

    def insert_lock(self, cell: str, token: str, now_ms: int) -> None:
        """Insert a lock row; a concurrent insert surfaces as IntegrityError on flush."""
        self.session.add(CellLock(cell=cell, token=token, created_ms=now_ms))
        self.session.flush()

    def take_over_lock(self, cell: str, old_token: str, new_token: str, now_ms: int) -> int:
        """Replace a stale lock only if nobody else replaced it first."""
        result = self.session.execute(
            update(CellLock.__table__)
            .where(CellLock.cell == cell, CellLock.token == old_token)
            .values(token=new_token, created_ms=now_ms)
        )
        return result.rowcount

    def release_lock(self, cell: str, token: str) -> int:
        """Delete the lock only while ``token`` still owns it."""
        result = self.session.execute(
            delete(CellLock.__table__).where(CellLock.cell == cell, CellLock.token == token)
        )
        return result.rowcount

    # Versioned writes

    def update_versioned(self, model, entity_id: str, expected_version: int,
                         values: Dict[str, Any]) -> int:
        """
        Update a row only if its version is still ``expected_version``.

        Returns:
            Rows updated, 0 on a version mismatch or a missing row
        """
        table = model.__table__
        result = self.session.execute(
            update(table)
            .where(table.c.id == entity_id, table.c.version == expected_version)
            .values(version=expected_version + 1, **values)
        )
        return result.rowcount

    def delete_versioned(self, model, entity_id: str, expected_version: int) -> int:
        table = model.__table__
        result = self.session.execute(
            delete(table).where(table.c.id == entity_id, table.c.version == expected_version)
        )
        return result.rowcount

    def row_exists(self, model, entity_id: str) -> bool:
        table = model.__table__
        row = self.session.execute(select(table.c.id).where(table.c.id == entity_id)).first()
        return row is not None

    # Terrain

    def existing_terrain_tiles(self, positions: Iterable[TerrainTilePosition]) -> List[str]:
        ids = [position.id for position in positions]
        if not ids:
            return []
        rows = self.session.query(TerrainTile.id).filter(TerrainTile.id.in_(ids)).all()
        return [row[0] for row in rows]

    def get_terrain_tile(self, position: TerrainTilePosition) -> Optional[TerrainTile]:
        return self.session.get(TerrainTile, position.id)

    def resources_in_area(self, x: float, y: float, width: float, height: float) -> List[Resource]:
        return (
            self.session.query(Resource)
            .filter(
                Resource.x >= x,
                Resource.x < x + width,
                Resource.y >= y,
                Resource.y < y + height,
            )
            .order_by(Resource.id)
            .all()
        )

    # Direction maps

    def get_direction_map(self, key: str) -> Optional[DirectionMapRecord]:
        return self.session.get(DirectionMapRecord, key)

    def save_direction_map(self, key: str, rendered: str, now_ms: int) -> DirectionMapRecord:
        record = self.session.get(DirectionMapRecord, key)
        if record is None:
            record = DirectionMapRecord(id=key, rendered=rendered, created_ms=now_ms)
            self.session.add(record)
        else:
            record.rendered = rendered
            record.created_ms = now_ms
        return record


def cell_keys(cells: Iterable[CellId]) -> List[str]:
    """String keys of cell ids, order preserved."""
    return [cell.key for cell in cells]
