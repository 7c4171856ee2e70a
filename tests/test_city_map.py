"""Tests for city tile maps."""

from py_persons.core.alea_prng import AleaPRNG
from py_persons.core.cells import Point
from py_persons.core.city_map import (
    DEFAULT_CITY_FORMAT, DEFAULT_TILE_COSTS, Lot, TileGeometry, TileMap,
    overlay_lots, passable_tiles, random_destination
)


class TestTileGeometry:
    """Test world to tile conversion."""

    def test_tile_of(self):
        geometry = TileGeometry()
        assert geometry.tile_of((0, 0)) == (0, 0)
        assert geometry.tile_of((499, 299)) == (0, 0)
        assert geometry.tile_of((500, 300)) == (1, 1)
        assert geometry.tile_of((-1, -1)) == (-1, -1)

    def test_offset(self):
        geometry = TileGeometry(offset=Point(1000, 600))
        assert geometry.tile_of((1000, 600)) == (0, 0)
        assert geometry.tile_center(0, 0) == Point(1250, 750)

    def test_center_round_trip(self):
        geometry = TileGeometry()
        assert geometry.tile_of(geometry.tile_center(7, 3)) == (7, 3)


class TestTileMap:
    """Test tile map parsing."""

    def test_from_string(self):
        tile_map = TileMap.from_string("|-\r\n-|-\n|")
        assert tile_map.num_rows == 3
        assert tile_map.num_columns == 3
        assert tile_map.tile(2, 1) == "-"
        assert tile_map.tile(1, 2) is None
        assert tile_map.tile(-1, 0) is None

    def test_default_city(self):
        tile_map = TileMap.from_string(DEFAULT_CITY_FORMAT)
        assert tile_map.num_rows == 15
        assert str(tile_map) == DEFAULT_CITY_FORMAT


class TestOverlayLots:
    """Test stamping building rooms into the city."""

    def test_stamps_rooms(self):
        base = "|RRRR|\n|RRRR|\n|RRRR|"
        lot = Lot(x=500, y=300, width=1000, height=600, format="EH\nHH")
        tile_map = overlay_lots(base, [lot])

        assert tile_map.rows == ("|RRRR|", "|EHRR|", "|HHRR|")

    def test_lot_without_format_ignored(self):
        base = "|RR|"
        tile_map = overlay_lots(base, [Lot(x=500, y=0, width=500, height=300)])
        assert tile_map.rows == ("|RR|",)

    def test_rows_outside_map_ignored(self):
        base = "|RR|"
        lot = Lot(x=500, y=0, width=500, height=600, format="E\nH")
        tile_map = overlay_lots(base, [lot])
        assert tile_map.rows == ("|ER|",)


class TestRandomDestination:
    """Test destination picking."""

    def test_passable(self):
        tile_map = TileMap.from_string("|R\nR-")
        assert passable_tiles(tile_map) == [(0, 0), (1, 1)]

    def test_destination_on_passable_tile(self):
        tile_map = TileMap.from_string(DEFAULT_CITY_FORMAT)
        geometry = TileGeometry()
        for seed in range(20):
            destination = random_destination(tile_map, geometry, AleaPRNG(seed))
            column, row = geometry.tile_of(destination)
            assert tile_map.tile(column, row) in DEFAULT_TILE_COSTS

    def test_deterministic(self):
        tile_map = TileMap.from_string(DEFAULT_CITY_FORMAT)
        first = random_destination(tile_map, TileGeometry(), AleaPRNG("npc-1-1000"))
        second = random_destination(tile_map, TileGeometry(), AleaPRNG("npc-1-1000"))
        assert first == second

    def test_nothing_passable(self):
        tile_map = TileMap.from_string("RR\nCC")
        assert random_destination(tile_map, TileGeometry(), AleaPRNG(1)) is None
