"""
Core simulation algorithms.
"""

from .cells import CellId, Point, cell_of, cell_key, parse_cell_key, relevant_cells, neighborhood_cells, cells_for_rect
from .city_map import TileMap, TileGeometry, Lot, DEFAULT_TILE_COSTS, DEFAULT_CITY_FORMAT, overlay_lots
from .direction_map import Direction, DirectionMap, DirectionMapCache, compute_direction_map
from .path_walker import Waypoint, PathOptions, compute_path
from .cell_intervals import CellInterval, END_OF_TIME_MS, decompose_into_cell_intervals
from .terrain import TerrainTilePosition, TerrainOptions, ResourceSpec, generate_terrain_tile
from .lots import LotZone, LotFiller, LotObject, generate_lots, build_city_map, lot_entrance

__all__ = ['CellId', 'Point', 'cell_of', 'cell_key', 'parse_cell_key', 'relevant_cells',
           'neighborhood_cells', 'cells_for_rect',
           'TileMap', 'TileGeometry', 'Lot', 'DEFAULT_TILE_COSTS', 'DEFAULT_CITY_FORMAT', 'overlay_lots',
           'Direction', 'DirectionMap', 'DirectionMapCache', 'compute_direction_map',
           'Waypoint', 'PathOptions', 'compute_path',
           'CellInterval', 'END_OF_TIME_MS', 'decompose_into_cell_intervals',
           'TerrainTilePosition', 'TerrainOptions', 'ResourceSpec', 'generate_terrain_tile',
           'LotZone', 'LotFiller', 'LotObject', 'generate_lots', 'build_city_map', 'lot_entrance']
