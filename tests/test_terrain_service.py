"""Tests for terrain persistence and harvesting."""

import pytest

from py_persons.core.terrain import TerrainTilePosition, generate_terrain_tile
from py_persons.db.models import NetworkObject, Resource, TerrainTile
from py_persons.errors import TerrainGenerationError
from py_persons.sim.dispatch import TERRAIN_TILE_TOPIC, InProcessDispatcher
from py_persons.sim.terrain_service import TerrainService

NOW = 5_000_000


@pytest.fixture
def service(database):
    return TerrainService(database, clock=lambda: NOW)


class TestStoreTile:
    """Test all-or-nothing tile storage."""

    def test_stores_resources_and_marker(self, database, service):
        position = TerrainTilePosition(0, 0)
        written = service.store_tile(position)

        assert written == len(generate_terrain_tile(position))
        with database.get_session() as session:
            marker = session.get(TerrainTile, position.id)
            assert marker.resource_count == written
            assert session.query(Resource).count() == written

    def test_idempotent(self, database, service):
        position = TerrainTilePosition(1, 2)
        first = service.store_tile(position)

        assert service.store_tile(position) == 0
        with database.get_session() as session:
            assert session.query(Resource).count() == first

    def test_generation_failure_stores_nothing(self, database, service, monkeypatch):
        def broken(position, options):
            raise ValueError("bad seed")

        monkeypatch.setattr("py_persons.sim.terrain_service.generate_terrain_tile", broken)

        with pytest.raises(TerrainGenerationError):
            service.store_tile(TerrainTilePosition(0, 0))
        with database.get_session() as session:
            assert session.query(TerrainTile).count() == 0

    def test_tile_resources(self, service):
        position = TerrainTilePosition(-1, 0)
        assert service.tile_resources(position) is None

        service.store_tile(position)
        resources = service.tile_resources(position)
        assert [r.id for r in resources] == sorted(r.id for r in generate_terrain_tile(position))


class TestRequestMissingTiles:
    """Test which tiles are requested around a viewer."""

    def test_publishes_missing_tiles(self, database):
        dispatcher = InProcessDispatcher(synchronous=True)
        received = []
        dispatcher.subscribe(TERRAIN_TILE_TOPIC, received.append)
        service = TerrainService(database, dispatcher, clock=lambda: NOW)

        service.store_tile(TerrainTilePosition(0, 0))
        missing = service.request_missing_tiles((500, 500))

        assert len(missing) == 24
        assert TerrainTilePosition(0, 0) not in missing
        assert len(received) == 24

    def test_inline_generation_without_dispatcher(self, service):
        service.request_missing_tiles((500, 500))
        assert service.missing_tiles((500, 500)) == []


class TestHarvestResource:
    """Test harvesting stored resources."""

    def test_harvest_spawns_object_and_depletes(self, database, service):
        service.store_tile(TerrainTilePosition(0, 0))
        with database.get_session() as session:
            resource_id = session.query(Resource.id).order_by(Resource.id).first()[0]

        spawned = service.harvest_resource(resource_id, now_ms=NOW)

        assert spawned is not None
        with database.get_session() as session:
            resource = session.get(Resource, resource_id)
            assert resource.depleted
            assert resource.ready_time_ms > NOW
            assert resource.spawn_state is not None
            assert resource.version == 2
            obj = session.get(NetworkObject, spawned.id)
            assert obj.object_type == spawned.object_type.value

        assert service.harvest_resource(resource_id, now_ms=NOW) is None

    def test_harvest_continues_sequence(self, database, service):
        service.store_tile(TerrainTilePosition(0, 0))
        with database.get_session() as session:
            resource_id = session.query(Resource.id).order_by(Resource.id).first()[0]

        first = service.harvest_resource(resource_id, now_ms=NOW)
        with database.get_session() as session:
            ready = session.get(Resource, resource_id).ready_time_ms
        second = service.harvest_resource(resource_id, now_ms=ready)

        assert second is not None
        assert second.id != first.id

    def test_unknown_resource(self, service):
        assert service.harvest_resource("resource(1,1)", now_ms=NOW) is None
