"""Shared fixtures."""

import pytest

from py_persons.core.city_map import TileGeometry, TileMap
from py_persons.db.connection import Database
from py_persons.db.models import Npc
from py_persons.db.queries import CellQueries


@pytest.fixture
def database(tmp_path):
    """A fresh file-backed SQLite database per test."""
    database = Database()
    database.initialize(f"sqlite:///{tmp_path / 'persons.db'}")
    yield database
    database.dispose()


@pytest.fixture
def unit_geometry():
    """One world unit per tile, no offset."""
    return TileGeometry(tile_width=1, tile_height=1)


@pytest.fixture
def small_city():
    """Two road tiles around a corner."""
    return TileMap.from_string("|-\n-|")


@pytest.fixture
def seed_world(database):
    """Insert houses and agents; returns a callable taking row kwargs."""

    def _seed(npcs=(), houses=(), cell_size=2000):
        with database.get_session() as session:
            queries = CellQueries(session)
            for values in npcs:
                session.add(Npc(**values))
            for values in houses:
                queries.add_house(cell_size=cell_size, **values)

    return _seed
