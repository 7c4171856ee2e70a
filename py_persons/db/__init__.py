"""
Database utilities and models.

This package provides:
- SQLAlchemy models for the world state
- Database connection management
- Cell-scoped queries and versioned writes
"""

from .connection import Database, db
from .queries import CellQueries
from .models import (
    Base, Npc, NetworkObject, Resource, TerrainTile, NpcCellTime, CellLock,
    House, HouseCell, DirectionMapRecord
)

__all__ = [
    # Connection management
    'Database', 'db',

    # Query functionality
    'CellQueries',

    # Models
    'Base', 'Npc', 'NetworkObject', 'Resource', 'TerrainTile', 'NpcCellTime',
    'CellLock', 'House', 'HouseCell', 'DirectionMapRecord'
]
