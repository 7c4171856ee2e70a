"""Tests for stored direction maps."""

from py_persons.core.city_map import TileMap
from py_persons.core.direction_map import Direction, DirectionMapCache
from py_persons.sim.direction_map_store import DirectionMapStore
from py_persons.sim.dispatch import DirectionMapMessage

ROAD_COSTS = {"|": 5, "-": 3}


class TestDirectionMapStore:

    def test_generate_and_read_back(self, database, small_city, unit_geometry):
        store = DirectionMapStore(database, DirectionMapCache(small_city, ROAD_COSTS, unit_geometry),
                                  clock=lambda: 42)
        assert store.rendered((1.5, 1.5)) is None

        store.handle_message(DirectionMapMessage(x=1.5, y=1.5))

        assert store.rendered((1.5, 1.5)) == "↓↓\n→*"
        directions = store.stored_directions((1.2, 1.8))
        assert directions[(0, 0)] == Direction.DOWN
        assert directions[(1, 1)] == Direction.DESTINATION

    def test_regenerate_overwrites(self, database, small_city, unit_geometry):
        cache = DirectionMapCache(small_city, ROAD_COSTS, unit_geometry)
        store = DirectionMapStore(database, cache)
        store.generate((1.5, 1.5))

        cache.invalidate(TileMap.from_string("|R\n-|"))
        store.generate((1.5, 1.5))

        assert store.rendered((1.5, 1.5)) == "↓ \n→*"
        assert store.key_for((1.5, 1.5)) == "1,1"
