"""
Cell-scoped simulation: scheduling, dispatch, behavior steps and terrain upkeep.
"""

from .behavior import CellState, NpcState, ObjectState, ResourceState, StreetWalkerBehavior, idle_behavior
from .dispatch import CellTickMessage, TerrainTileMessage, DirectionMapMessage, InProcessDispatcher
from .scheduler import CellTick, CellTickRunner, SimulationOptions, TickOutcome, TickPhase, fan_out_cell_ticks
from .terrain_service import TerrainService
from .direction_map_store import DirectionMapStore
from .city_builder import CityBuilder, CityLayout

__all__ = ['CellState', 'NpcState', 'ObjectState', 'ResourceState', 'StreetWalkerBehavior', 'idle_behavior',
           'CellTickMessage', 'TerrainTileMessage', 'DirectionMapMessage', 'InProcessDispatcher',
           'CellTick', 'CellTickRunner', 'SimulationOptions', 'TickOutcome', 'TickPhase', 'fan_out_cell_ticks',
           'TerrainService', 'DirectionMapStore', 'CityBuilder', 'CityLayout']
