"""Database models for the simulation world."""

from sqlalchemy import Column, Integer, BigInteger, String, Float, Boolean, Text, JSON, Index, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Npc(Base):
    """Autonomous agents walking the city."""

    __tablename__ = "npcs"

    id = Column(String(100), primary_key=True)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    cell = Column(String(64), nullable=False, index=True)

    # Movement
    path = Column(JSON, nullable=False, default=list)  # list of {time, location}
    destination_x = Column(Float)
    destination_y = Column(Float)
    done_walking_ms = Column(BigInteger, nullable=False, default=0)
    direction_map = Column(Text)  # rendered arrows, for debugging

    # Opaque game state owned by the behavior step
    state = Column(JSON, nullable=False, default=dict)

    last_update_ms = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)


class NetworkObject(Base):
    """Loose objects lying in the world (spawned items, dropped goods)."""

    __tablename__ = "network_objects"

    id = Column(String(100), primary_key=True)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    cell = Column(String(64), nullable=False, index=True)
    object_type = Column(String(50), nullable=False)

    exists = Column(Boolean, nullable=False, default=True)
    grabbed_by_npc_id = Column(String(100))
    health = Column(JSON, nullable=False, default=dict)
    state = Column(JSON, nullable=False, default=dict)

    last_update_ms = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)


class Resource(Base):
    """Trees and rocks placed by terrain generation."""

    __tablename__ = "resources"

    id = Column(String(100), primary_key=True)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    cell = Column(String(64), nullable=False, index=True)
    object_type = Column(String(50), nullable=False)

    # Depletion and respawn
    spawn_seed = Column(String(100), nullable=False)
    spawn_state = Column(JSON)  # Alea state, null until first harvest
    spawns = Column(JSON, nullable=False, default=list)
    depleted = Column(Boolean, nullable=False, default=False)
    ready_time_ms = Column(BigInteger, nullable=False, default=0)
    health = Column(JSON, nullable=False, default=dict)
    tree_seed = Column(String(100))

    last_update_ms = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)


class TerrainTile(Base):
    """Marker that a terrain tile's resources have been committed."""

    __tablename__ = "terrain_tiles"

    id = Column(String(64), primary_key=True)  # terrainTile(x,y)
    tile_x = Column(Integer, nullable=False)
    tile_y = Column(Integer, nullable=False)
    resource_count = Column(Integer, nullable=False, default=0)
    created_ms = Column(BigInteger, nullable=False)


class NpcCellTime(Base):
    """Occupancy intervals, the spatial-temporal index of moving NPCs."""

    __tablename__ = "npc_cell_times"

    npc_id = Column(String(100), primary_key=True)
    sequence = Column(Integer, primary_key=True)
    cell = Column(String(64), nullable=False)
    start_ms = Column(BigInteger, nullable=False)
    end_ms = Column(BigInteger, nullable=False)
    expired = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_npc_cell_times_cell_start", "cell", "start_ms"),
    )


class CellLock(Base):
    """A simulation job is in flight for this cell."""

    __tablename__ = "cell_locks"

    cell = Column(String(64), primary_key=True)
    token = Column(String(64), nullable=False)  # owner of the lock
    created_ms = Column(BigInteger, nullable=False)


class House(Base):
    """Dwellings and shops built from city lots."""

    __tablename__ = "houses"

    id = Column(String(100), primary_key=True)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    width = Column(Float, nullable=False, default=0)
    height = Column(Float, nullable=False, default=0)
    cell = Column(String(64), nullable=False, index=True)  # cell of the top-left corner
    zone = Column(String(20))
    format = Column(Text)  # ASCII rooms stamped onto the city map
    npc_id = Column(String(100))  # resident; a house without one is not populated

    cells = relationship("HouseCell", back_populates="house", cascade="all, delete-orphan")


class HouseCell(Base):
    """Every cell a house overlaps; houses can be larger than a cell."""

    __tablename__ = "house_cells"

    house_id = Column(String(100), ForeignKey("houses.id"), primary_key=True)
    cell = Column(String(64), primary_key=True, index=True)

    house = relationship("House", back_populates="cells")


class DirectionMapRecord(Base):
    """Pre-generated direction maps, keyed by destination tile."""

    __tablename__ = "direction_maps"

    id = Column(String(64), primary_key=True)  # column,row of the destination tile
    rendered = Column(Text, nullable=False)
    created_ms = Column(BigInteger, nullable=False)
