"""
Tests for the cell-scoped scheduler.

Concurrency is exercised by driving two ticks phase by phase against the
same database, which makes the interleavings deterministic.
"""

import pytest
from sqlalchemy import update

from py_persons.core.cell_intervals import END_OF_TIME_MS
from py_persons.core.cells import Point
from py_persons.core.city_map import TileGeometry, TileMap
from py_persons.core.direction_map import DirectionMapCache
from py_persons.core.motion import done_walking, position_at
from py_persons.db.models import CellLock, House, NetworkObject, Npc, NpcCellTime
from py_persons.db.queries import CellQueries
from py_persons.errors import RetryableOperationError, TickConflictError
from py_persons.sim.behavior import ObjectState, StreetWalkerBehavior, idle_behavior
from py_persons.sim.dispatch import CELL_TICK_TOPIC, InProcessDispatcher
from py_persons.sim.scheduler import (
    CellTickRunner, SimulationOptions, TickOutcome, TickPhase, fan_out_cell_ticks
)

NOW = 1_000_000
CELL = "cell:0,0"
STREET = TileMap.from_string("-----")


def send_east(state):
    """Send every agent to the east end of the street."""
    for npc in state.npcs:
        npc.destination = Point(2250, 150)
        npc.new_destination = True
    return state


def make_runner(database, behavior=send_east, now=NOW, **options):
    return CellTickRunner(
        database,
        behavior,
        DirectionMapCache(STREET),
        TileGeometry(),
        SimulationOptions(**options),
        clock=lambda: now,
    )


@pytest.fixture
def walker(seed_world):
    seed_world(npcs=[{"id": "npc-1", "x": 250, "y": 150, "cell": CELL, "path": [], "version": 1}])


def _npc(database, npc_id="npc-1"):
    with database.get_session() as session:
        row = session.get(Npc, npc_id)
        if row is None:
            return None
        return {"version": row.version, "path": row.path, "cell": row.cell,
                "done_walking_ms": row.done_walking_ms, "direction_map": row.direction_map}


def _intervals(database, npc_id="npc-1"):
    with database.get_session() as session:
        return [(row.cell, row.start_ms, row.end_ms, row.sequence)
                for row in CellQueries(session).intervals_for_npc(npc_id)]


def _lock(database, cell=CELL):
    with database.get_session() as session:
        lock = session.get(CellLock, cell)
        return lock.token if lock else None


class TestRunCellTick:
    """Test a tick end to end."""

    def test_commit_writes_path_and_intervals(self, database, walker):
        outcome = make_runner(database).run_cell_tick(CELL, 60000)

        assert outcome == TickOutcome.COMMITTED
        npc = _npc(database)
        assert npc["version"] == 2
        assert npc["path"] == [
            {"time": NOW + 2000, "location": {"x": 250.0, "y": 150.0}},
            {"time": NOW + 27000, "location": {"x": 2250.0, "y": 150.0}},
        ]
        assert npc["done_walking_ms"] == NOW + 27000
        assert npc["direction_map"] == "→→→→*"
        assert _intervals(database) == [
            ("cell:0,0", NOW, NOW + 23875, 0),
            ("cell:1,0", NOW + 23875, END_OF_TIME_MS, 1),
        ]
        assert _lock(database) is None

    def test_fresh_lock_skips(self, database, walker):
        with database.get_session() as session:
            session.add(CellLock(cell=CELL, token="other", created_ms=NOW - 1000))

        outcome = make_runner(database).run_cell_tick(CELL, 60000)

        assert outcome == TickOutcome.SKIPPED
        assert _npc(database)["version"] == 1
        assert _lock(database) == "other"

    def test_stale_lock_taken_over(self, database, walker):
        with database.get_session() as session:
            session.add(CellLock(cell=CELL, token="crashed", created_ms=NOW - 120000))

        outcome = make_runner(database).run_cell_tick(CELL, 60000)

        assert outcome == TickOutcome.COMMITTED
        assert _npc(database)["version"] == 2
        assert _lock(database) is None

    def test_invalid_cell_key(self, database):
        with pytest.raises(ValueError):
            make_runner(database).run_cell_tick("0,0", 60000)

    def test_unchanged_cell_only_releases_lock(self, database, walker):
        outcome = make_runner(database, behavior=idle_behavior).run_cell_tick(CELL, 60000)

        assert outcome == TickOutcome.COMMITTED
        assert _npc(database)["version"] == 1
        assert _lock(database) is None

    def test_retries_exhausted(self, database, walker):
        calls = []

        def conflicting(state):
            calls.append(state.cell)
            with database.get_session() as session:
                session.execute(update(Npc.__table__).values(version=Npc.__table__.c.version + 10))
            return send_east(state)

        runner = make_runner(database, behavior=conflicting, tick_max_attempts=2)
        with pytest.raises(RetryableOperationError, match="operation could not complete, retry"):
            runner.run_cell_tick(CELL, 60000)

        assert len(calls) == 2
        assert _intervals(database) == []
        assert _lock(database) is None


class TestInterleavedTicks:
    """Two workers on the same cell."""

    def test_second_worker_skips(self, database, walker):
        runner = make_runner(database)
        first = runner.new_tick(CELL, 60000)
        second = runner.new_tick(CELL, 60000)

        assert first.acquire_lock()
        assert not second.acquire_lock()
        assert second.phase == TickPhase.ABORTED

        first.load()
        first.compute()
        first.commit()

        assert first.phase == TickPhase.COMMITTED
        assert _npc(database)["version"] == 2

    def test_lock_taken_over_before_commit(self, database, walker):
        first = make_runner(database).new_tick(CELL, 60000)
        late = make_runner(database, now=NOW + 60001).new_tick(CELL, 60000)

        assert first.acquire_lock()
        assert late.acquire_lock()
        assert _lock(database) == late.token

        first.load()
        first.compute()
        with pytest.raises(TickConflictError):
            first.commit()

        assert first.phase == TickPhase.ABORTED
        assert _npc(database)["version"] == 1
        assert _intervals(database) == []
        assert _lock(database) == late.token

        late.load()
        late.compute()
        late.commit()
        assert _npc(database)["version"] == 2
        assert _lock(database) is None

    def test_version_conflict_rolls_back(self, database, walker):
        tick = make_runner(database).new_tick(CELL, 60000)
        tick.acquire_lock()
        tick.load()

        with database.get_session() as session:
            session.execute(update(Npc.__table__).where(Npc.id == "npc-1").values(version=7))

        tick.compute()
        with pytest.raises(TickConflictError):
            tick.commit()

        assert _npc(database)["version"] == 7
        assert _npc(database)["path"] == []
        assert _intervals(database) == []
        assert _lock(database) is None

    def test_vanished_entity_is_skipped(self, database, walker):
        tick = make_runner(database).new_tick(CELL, 60000)
        tick.acquire_lock()
        tick.load()

        with database.get_session() as session:
            session.delete(session.get(Npc, "npc-1"))

        tick.compute()
        tick.commit()

        assert tick.phase == TickPhase.COMMITTED
        assert tick.stats["skipped"] == 1
        assert _intervals(database) == []
        assert _lock(database) is None

    def test_phases_must_run_in_order(self, database, walker):
        tick = make_runner(database).new_tick(CELL, 60000)
        with pytest.raises(RuntimeError):
            tick.load()


class TestLoad:
    """Test what a tick reads."""

    def test_expires_ended_intervals(self, database, walker):
        with database.get_session() as session:
            session.add(NpcCellTime(npc_id="npc-9", sequence=0, cell=CELL, start_ms=0, end_ms=NOW - 1))
            session.add(NpcCellTime(npc_id="npc-9", sequence=1, cell=CELL, start_ms=NOW - 1, end_ms=NOW + 5))

        tick = make_runner(database, behavior=idle_behavior).new_tick(CELL, 60000)
        tick.acquire_lock()
        state = tick.load()

        assert [(i.npc_id, i.sequence) for i in state.intervals] == [("npc-9", 1)]
        tick.compute()
        tick.commit()

        with database.get_session() as session:
            rows = {row.sequence: row.expired for row in CellQueries(session).intervals_for_npc("npc-9")}
        assert rows == {0: True, 1: False}

    def test_nearby_agents_from_surrounding_cells(self, database, walker):
        with database.get_session() as session:
            session.add(NpcCellTime(npc_id="npc-2", sequence=0, cell="cell:1,1",
                                    start_ms=0, end_ms=END_OF_TIME_MS))
            session.add(NpcCellTime(npc_id="npc-3", sequence=0, cell="cell:5,5",
                                    start_ms=0, end_ms=END_OF_TIME_MS))

        tick = make_runner(database).new_tick(CELL, 60000)
        tick.acquire_lock()
        state = tick.load()
        tick.abort()

        assert state.nearby_npc_ids == ["npc-2"]
        assert [npc.id for npc in state.npcs] == ["npc-1"]
        assert _lock(database) is None


class TestObjects:
    """Test object writes."""

    def test_delete_update_and_create(self, database, seed_world):
        with database.get_session() as session:
            session.add(NetworkObject(id="obj-1", x=10, y=10, cell=CELL, object_type="WOOD",
                                      health={}, state={}, version=1))
            session.add(NetworkObject(id="obj-2", x=20, y=20, cell=CELL, object_type="STONE",
                                      health={}, state={}, version=1))

        def rearrange(state):
            for obj in state.objects:
                if obj.id == "obj-1":
                    obj.exists = False
                else:
                    obj.x = 2500
            state.objects.append(ObjectState(id="obj-3", x=30, y=30, object_type="COAL"))
            return state

        outcome = make_runner(database, behavior=rearrange).run_cell_tick(CELL, 60000)
        assert outcome == TickOutcome.COMMITTED

        with database.get_session() as session:
            assert session.get(NetworkObject, "obj-1") is None
            moved = session.get(NetworkObject, "obj-2")
            assert (moved.cell, moved.version) == ("cell:1,0", 2)
            created = session.get(NetworkObject, "obj-3")
            assert (created.cell, created.version) == (CELL, 1)


class TestFanOut:
    """Test which cells get a tick job."""

    def test_one_message_per_populated_house_cell(self, database, seed_world):
        seed_world(houses=[
            {"id": "h1", "x": 10, "y": 10, "npc_id": "a"},
            {"id": "h2", "x": 20, "y": 20, "npc_id": "b"},
            {"id": "h3", "x": 2100, "y": 20, "npc_id": "c"},
            {"id": "empty", "x": 6100, "y": 20},
        ])
        received = []
        dispatcher = InProcessDispatcher(synchronous=True)
        dispatcher.subscribe(CELL_TICK_TOPIC, received.append)

        cells = fan_out_cell_ticks(database, dispatcher, duration_ms=30000)

        assert cells == ["cell:0,0", "cell:1,0"]
        assert [(m.cell, m.duration_ms) for m in received] == [("cell:0,0", 30000), ("cell:1,0", 30000)]

    def test_house_spanning_cells_marks_each_cell(self, database, seed_world):
        seed_world(houses=[
            {"id": "wide", "x": 1500, "y": 10, "width": 1000, "height": 2500, "npc_id": "a"},
        ])

        cells = fan_out_cell_ticks(database, InProcessDispatcher(synchronous=True))

        assert cells == ["cell:0,0", "cell:0,1", "cell:1,0", "cell:1,1"]
        with database.get_session() as session:
            stored = sorted(c.cell for c in session.get(House, "wide").cells)
        assert stored == cells

    def test_cells_holding_agents_are_ticked(self, database, seed_world):
        seed_world(npcs=[{"id": "npc-1", "x": 10250, "y": 150, "cell": "cell:5,0",
                          "path": [], "version": 1}])

        cells = fan_out_cell_ticks(database, InProcessDispatcher(synchronous=True))

        assert cells == ["cell:5,0"]

    def test_street_walkers_end_to_end(self, database, seed_world):
        seed_world(
            npcs=[{"id": "npc-1", "x": 250, "y": 150, "cell": CELL, "path": [], "version": 1}],
            houses=[{"id": "h1", "x": 10, "y": 10, "npc_id": "npc-1"}],
        )
        runner = make_runner(database, behavior=StreetWalkerBehavior(STREET))
        dispatcher = InProcessDispatcher(synchronous=True)
        dispatcher.subscribe(CELL_TICK_TOPIC, runner.handle_message)

        fan_out_cell_ticks(database, dispatcher)

        npc = _npc(database)
        assert npc["version"] == 2
        assert len(npc["path"]) >= 1
        assert _intervals(database)[-1][2] == END_OF_TIME_MS


LONG_STREET = TileMap.from_string("-" * 20)


def shuttle(state):
    """Walk every idle agent to the far end of the long street."""
    for npc in state.npcs:
        if not done_walking(npc.path, state.now_ms):
            continue
        npc.x, npc.y = position_at(npc.path, state.now_ms, (npc.x, npc.y))
        npc.destination = Point(9750 if npc.x < 5000 else 250, 150)
        npc.new_destination = True
    return state


class TestRepeatedFanOut:
    """Agents keep being simulated after they walk away from the houses."""

    def _run_rounds(self, database, seed_world, behavior, rounds=8):
        seed_world(
            npcs=[{"id": "npc-1", "x": 250, "y": 150, "cell": CELL, "path": [], "version": 1}],
            houses=[{"id": "h1", "x": 10, "y": 10, "npc_id": "npc-1"}],
        )
        clock = {"now": NOW}
        runner = CellTickRunner(database, behavior, DirectionMapCache(LONG_STREET),
                                TileGeometry(), SimulationOptions(), clock=lambda: clock["now"])
        dispatcher = InProcessDispatcher(synchronous=True)
        dispatcher.subscribe(CELL_TICK_TOPIC, runner.handle_message)

        history = []
        for _ in range(rounds):
            fan_out_cell_ticks(database, dispatcher)
            npc = _npc(database)
            history.append((npc["cell"], npc["version"]))
            clock["now"] += 10_000_000
        return history

    def test_agent_shuttling_between_cells(self, database, seed_world):
        history = self._run_rounds(database, seed_world, shuttle)

        assert history == [
            ("cell:0,0", 2), ("cell:4,0", 3), ("cell:0,0", 4), ("cell:4,0", 5),
            ("cell:0,0", 6), ("cell:4,0", 7), ("cell:0,0", 8), ("cell:4,0", 9),
        ]

    def test_street_walker_never_stalls(self, database, seed_world):
        history = self._run_rounds(database, seed_world, StreetWalkerBehavior(LONG_STREET))

        assert [version for _, version in history] == list(range(2, 10))
