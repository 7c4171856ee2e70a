"""
Cell-scoped simulation scheduler.

The world is simulated one cell at a time. A tick of a cell goes through
explicit phases::

    IDLE -> LOCKING -> LOADED -> COMPUTED -> COMMITTED
                 \\         \\          \\
                  +---------+----------+--> ABORTED

1. LOCKING: a short transaction takes the cell lock, or skips the tick when
   another worker holds a fresh one. A stale lock is taken over.
2. LOADED: the tick transaction reads the cell's agents, objects, resources
   and live occupancy intervals, and flags intervals that have ended.
3. COMPUTED: the behavior step runs; agents with a new destination get a
   direction map, a path and fresh occupancy intervals.
4. COMMITTED: version-checked writes and the token-checked lock release are
   committed together. Any mismatch rolls the whole tick back.

``CellTickRunner`` retries a conflicted tick from the locking phase and turns
exhaustion into ``RetryableOperationError``.
"""

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from ..core.cell_intervals import CellInterval, decompose_into_cell_intervals
from ..core.cells import Point, cell_key, neighborhood_cells, parse_cell_key
from ..core.city_map import TileGeometry
from ..core.direction_map import DirectionMapCache
from ..core.path_walker import PathOptions, Waypoint, compute_path, path_end_ms
from ..core.terrain import ResourceSpawn, ResourceSpec, ResourceType
from ..db.connection import Database
from ..db.models import NetworkObject, Npc, Resource
from ..db.queries import CellQueries, cell_keys
from ..errors import RetryableOperationError, TickConflictError
from .behavior import BehaviorStep, CellState, NpcState, ObjectState, ResourceState
from .dispatch import CELL_TICK_TOPIC, CellTickMessage, Dispatcher

logger = structlog.get_logger()


def current_time_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class TickPhase(Enum):
    IDLE = "idle"
    LOCKING = "locking"
    LOADED = "loaded"
    COMPUTED = "computed"
    COMMITTED = "committed"
    ABORTED = "aborted"


class TickOutcome(str, Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"  # another worker holds the cell


@dataclass
class SimulationOptions:
    """Scheduler parameters."""
    cell_size: int = 2000
    lock_stale_after_ms: int = 60000
    tick_max_attempts: int = 3
    path: PathOptions = field(default_factory=PathOptions)

    @classmethod
    def from_settings(cls, settings) -> "SimulationOptions":
        return cls(
            cell_size=settings.cell_size,
            lock_stale_after_ms=settings.lock_stale_after_ms,
            tick_max_attempts=settings.tick_max_attempts,
            path=PathOptions(
                lead_time_ms=settings.path_lead_time_ms,
                vertical_step_ms=settings.vertical_step_ms,
                horizontal_step_ms=settings.horizontal_step_ms,
                max_steps=settings.path_max_steps,
            ),
        )


def _npc_state(row: Npc) -> NpcState:
    destination = None
    if row.destination_x is not None and row.destination_y is not None:
        destination = Point(row.destination_x, row.destination_y)
    return NpcState(
        id=row.id,
        x=row.x,
        y=row.y,
        path=[Waypoint.from_dict(w) for w in (row.path or [])],
        destination=destination,
        done_walking_ms=row.done_walking_ms or 0,
        state=dict(row.state or {}),
        version=row.version,
        direction_map=row.direction_map,
    )


def _object_state(row: NetworkObject) -> ObjectState:
    return ObjectState(
        id=row.id,
        x=row.x,
        y=row.y,
        object_type=row.object_type,
        exists=row.exists,
        grabbed_by_npc_id=row.grabbed_by_npc_id,
        health=dict(row.health or {}),
        state=dict(row.state or {}),
        version=row.version,
    )


def resource_state(row: Resource) -> ResourceState:
    spec = ResourceSpec(
        id=row.id,
        x=row.x,
        y=row.y,
        object_type=ResourceType(row.object_type),
        spawn_seed=row.spawn_seed,
        spawns=[ResourceSpawn.from_dict(s) for s in (row.spawns or [])],
        spawn_state=row.spawn_state,
        depleted=row.depleted,
        ready_time_ms=row.ready_time_ms,
        health=dict(row.health or {}),
        tree_seed=row.tree_seed,
    )
    return ResourceState(spec=spec, version=row.version)


def resource_values(spec: ResourceSpec, cell_size: float) -> Dict:
    """Column values of a resource row."""
    return {
        "x": spec.x,
        "y": spec.y,
        "cell": cell_key((spec.x, spec.y), cell_size),
        "object_type": spec.object_type.value,
        "spawn_seed": spec.spawn_seed,
        "spawn_state": spec.spawn_state,
        "spawns": [s.to_dict() for s in spec.spawns],
        "depleted": spec.depleted,
        "ready_time_ms": spec.ready_time_ms,
        "health": spec.health,
        "tree_seed": spec.tree_seed,
    }


class CellTick:
    """
    One tick of one cell, driven phase by phase.

    The runner calls the phases in order; tests call them one at a time to
    interleave two workers deterministically.
    """

    def __init__(self, database: Database, cell: str, duration_ms: int,
                 behavior: BehaviorStep, direction_maps: DirectionMapCache,
                 geometry: TileGeometry = TileGeometry(),
                 options: SimulationOptions = SimulationOptions(),
                 clock=current_time_ms):
        self.db = database
        self.cell = cell
        self.duration_ms = duration_ms
        self.behavior = behavior
        self.direction_maps = direction_maps
        self.geometry = geometry
        self.options = options
        self.clock = clock

        self.token = uuid.uuid4().hex
        self.phase = TickPhase.IDLE
        self.now_ms: Optional[int] = None
        self.locked = False

        self._session = None
        self._loaded: Optional[CellState] = None
        self._computed: Optional[CellState] = None
        self._intervals: Dict[str, List[CellInterval]] = {}
        self.stats = {"npcs": 0, "objects": 0, "resources": 0, "skipped": 0}

    def _expect(self, *phases: TickPhase) -> None:
        if self.phase not in phases:
            raise RuntimeError(f"Cell tick in phase {self.phase.value}, "
                               f"expected {[p.value for p in phases]}")

    def acquire_lock(self) -> bool:
        """
        Take the cell lock in its own transaction.

        Returns:
            False when a fresh lock is held by someone else; the tick is then
            over without error

        Raises:
            TickConflictError: Another worker won the race for the lock
        """
        self._expect(TickPhase.IDLE)
        self.phase = TickPhase.LOCKING
        self.now_ms = self.clock()

        try:
            with self.db.get_session() as session:
                queries = CellQueries(session)
                lock = queries.get_lock(self.cell)

                if lock is None:
                    queries.insert_lock(self.cell, self.token, self.now_ms)
                elif self.now_ms - lock.created_ms < self.options.lock_stale_after_ms:
                    logger.info("Cell locked, tick skipped", cell=self.cell,
                                lock_age_ms=self.now_ms - lock.created_ms)
                    self.phase = TickPhase.ABORTED
                    return False
                else:
                    stale_token = lock.token
                    if queries.take_over_lock(self.cell, stale_token, self.token, self.now_ms) == 0:
                        raise TickConflictError(f"Stale lock on {self.cell} taken over concurrently")
                    logger.warning("Stale cell lock taken over", cell=self.cell,
                                   lock_age_ms=self.now_ms - lock.created_ms)
        except IntegrityError as e:
            self.phase = TickPhase.ABORTED
            raise TickConflictError(f"Lock on {self.cell} inserted concurrently") from e
        except TickConflictError:
            self.phase = TickPhase.ABORTED
            raise

        self.locked = True
        return True

    def load(self) -> CellState:
        """Open the tick transaction and read the cell."""
        self._expect(TickPhase.LOCKING)
        if not self.locked:
            raise RuntimeError("Cell lock not held")

        self._session = self.db.open_session()
        queries = CellQueries(self._session)

        expired = queries.expire_intervals(self.cell, self.now_ms)

        cell_id = parse_cell_key(self.cell)
        size = self.options.cell_size
        center = Point((cell_id.cx + 0.5) * size, (cell_id.cy + 0.5) * size)
        nearby = queries.npc_ids_in_cells(cell_keys(neighborhood_cells(center, size)), self.now_ms)

        intervals = [
            CellInterval(npc_id=row.npc_id, cell=row.cell, start_ms=row.start_ms,
                         end_ms=row.end_ms, sequence=row.sequence, expired=row.expired)
            for row in queries.active_intervals(self.cell, self.now_ms)
        ]

        self._loaded = CellState(
            cell=self.cell,
            now_ms=self.now_ms,
            duration_ms=self.duration_ms,
            npcs=[_npc_state(row) for row in queries.npcs_in_cell(self.cell)],
            objects=[_object_state(row) for row in queries.objects_in_cell(self.cell)],
            resources=[resource_state(row) for row in queries.resources_in_cell(self.cell)],
            intervals=intervals,
            nearby_npc_ids=nearby,
        )
        self.phase = TickPhase.LOADED

        logger.debug("Cell loaded", cell=self.cell, npcs=len(self._loaded.npcs),
                     objects=len(self._loaded.objects), resources=len(self._loaded.resources),
                     expired_intervals=expired)
        return self._loaded

    def compute(self) -> CellState:
        """Run the behavior step and plan paths for agents with a new destination."""
        self._expect(TickPhase.LOADED)

        state = self.behavior(copy.deepcopy(self._loaded))

        for npc in state.npcs:
            if not npc.new_destination or npc.destination is None:
                continue

            direction_map = self.direction_maps.get(npc.destination)
            origin = (npc.x, npc.y)
            path = compute_path(direction_map, origin, self.now_ms,
                                self.geometry, self.options.path)

            npc.path = path
            npc.done_walking_ms = path_end_ms(path)
            npc.direction_map = direction_map.render()
            npc.new_destination = False
            self._intervals[npc.id] = decompose_into_cell_intervals(
                npc.id, path, self.options.cell_size, now_ms=self.now_ms, origin=origin
            )

        self._computed = state
        self.phase = TickPhase.COMPUTED
        return state

    def commit(self) -> None:
        """
        Write every change and release the lock in one transaction.

        Raises:
            TickConflictError: A version check failed or the lock was lost;
                nothing was written
        """
        self._expect(TickPhase.COMPUTED)
        queries = CellQueries(self._session)

        try:
            self._write_npcs(queries)
            self._write_objects(queries)
            self._write_resources(queries)

            if queries.release_lock(self.cell, self.token) == 0:
                raise TickConflictError(f"Lock on {self.cell} lost before commit")

            self._session.commit()
        except IntegrityError as e:
            self.abort()
            raise TickConflictError(f"Concurrent insert while committing {self.cell}") from e
        except Exception:
            self.abort()
            raise

        self._session.close()
        self._session = None
        self.locked = False
        self.phase = TickPhase.COMMITTED

        logger.info("Cell tick committed", cell=self.cell, **self.stats)

    def abort(self) -> None:
        """Discard the tick transaction and give the lock back if still ours."""
        if self._session is not None:
            self._session.rollback()
            self._session.close()
            self._session = None

        if self.locked:
            try:
                with self.db.get_session() as session:
                    released = CellQueries(session).release_lock(self.cell, self.token)
                if not released:
                    logger.info("Cell lock already taken over", cell=self.cell)
            except SQLAlchemyError as e:
                # lock expires on its own after lock_stale_after_ms
                logger.error("Failed to release cell lock", cell=self.cell, error=str(e))
            self.locked = False

        self.phase = TickPhase.ABORTED
        logger.info("Cell tick aborted", cell=self.cell)

    def _changed_or_missing(self, queries: CellQueries, model, entity_id: str) -> None:
        """After a write touched no row: raise on a version conflict, skip a vanished row."""
        if queries.row_exists(model, entity_id):
            raise TickConflictError(
                f"{model.__tablename__} {entity_id} changed concurrently"
            )
        logger.warning("Entity vanished before commit, skipped",
                       table=model.__tablename__, id=entity_id, cell=self.cell)
        self.stats["skipped"] += 1

    def _write_npcs(self, queries: CellQueries) -> None:
        before = {npc.id: npc for npc in self._loaded.npcs}
        size = self.options.cell_size

        for npc in self._computed.npcs:
            original = before.get(npc.id)
            if original is None:
                logger.warning("Agent created by behavior step ignored", id=npc.id)
                continue
            if npc == original and npc.id not in self._intervals:
                continue

            values = {
                "x": npc.x,
                "y": npc.y,
                "cell": cell_key((npc.x, npc.y), size),
                "path": [w.to_dict() for w in npc.path],
                "destination_x": npc.destination.x if npc.destination else None,
                "destination_y": npc.destination.y if npc.destination else None,
                "done_walking_ms": npc.done_walking_ms,
                "direction_map": npc.direction_map,
                "state": npc.state,
                "last_update_ms": self.now_ms,
            }
            if queries.update_versioned(Npc, npc.id, original.version, values) == 0:
                self._changed_or_missing(queries, Npc, npc.id)
                continue

            if npc.id in self._intervals:
                queries.replace_intervals(npc.id, self._intervals[npc.id])
            self.stats["npcs"] += 1

    def _write_objects(self, queries: CellQueries) -> None:
        before = {obj.id: obj for obj in self._loaded.objects}
        size = self.options.cell_size

        for obj in self._computed.objects:
            original = before.get(obj.id)
            values = {
                "x": obj.x,
                "y": obj.y,
                "cell": cell_key((obj.x, obj.y), size),
                "object_type": obj.object_type,
                "exists": obj.exists,
                "grabbed_by_npc_id": obj.grabbed_by_npc_id,
                "health": obj.health,
                "state": obj.state,
                "last_update_ms": self.now_ms,
            }

            if original is None:
                if obj.exists:
                    queries.session.add(NetworkObject(id=obj.id, version=1, **values))
                    self.stats["objects"] += 1
                continue
            if obj == original:
                continue

            if not obj.exists:
                written = queries.delete_versioned(NetworkObject, obj.id, original.version)
            else:
                written = queries.update_versioned(NetworkObject, obj.id, original.version, values)

            if written == 0:
                self._changed_or_missing(queries, NetworkObject, obj.id)
                continue
            self.stats["objects"] += 1

    def _write_resources(self, queries: CellQueries) -> None:
        before = {res.spec.id: res for res in self._loaded.resources}
        size = self.options.cell_size

        for res in self._computed.resources:
            original = before.get(res.spec.id)
            if original is None or res == original:
                continue

            values = resource_values(res.spec, size)
            values["last_update_ms"] = self.now_ms
            if queries.update_versioned(Resource, res.spec.id, original.version, values) == 0:
                self._changed_or_missing(queries, Resource, res.spec.id)
                continue
            self.stats["resources"] += 1


class CellTickRunner:
    """
    Runs cell ticks end to end with retries.

    Conflicts restart the tick from the locking phase; after
    ``tick_max_attempts`` the caller gets ``RetryableOperationError``.
    """

    def __init__(self, database: Database, behavior: BehaviorStep,
                 direction_maps: DirectionMapCache,
                 geometry: TileGeometry = TileGeometry(),
                 options: SimulationOptions = SimulationOptions(),
                 clock=current_time_ms):
        self.db = database
        self.behavior = behavior
        self.direction_maps = direction_maps
        self.geometry = geometry
        self.options = options
        self.clock = clock

    def new_tick(self, cell: str, duration_ms: int) -> CellTick:
        return CellTick(self.db, cell, duration_ms, self.behavior, self.direction_maps,
                        self.geometry, self.options, self.clock)

    def run_cell_tick(self, cell: str, duration_ms: int) -> TickOutcome:
        """
        Simulate one cell.

        Args:
            cell: Cell key, e.g. ``cell:0,0``
            duration_ms: Simulated time span

        Returns:
            COMMITTED, or SKIPPED when another worker holds the cell

        Raises:
            ValueError: ``cell`` is not a cell key
            RetryableOperationError: The tick kept conflicting or the store failed
        """
        parse_cell_key(cell)

        try:
            for attempt in Retrying(
                retry=retry_if_exception_type((TickConflictError, OperationalError)),
                stop=stop_after_attempt(self.options.tick_max_attempts),
                wait=wait_random(0, 0.05),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info("Retrying cell tick", cell=cell, attempt=number)
                    return self._attempt(cell, duration_ms)
        except (TickConflictError, SQLAlchemyError) as e:
            logger.error("Cell tick failed", cell=cell, error=str(e))
            raise RetryableOperationError() from e

        raise RuntimeError("Cell tick retry loop exited unexpectedly")

    def _attempt(self, cell: str, duration_ms: int) -> TickOutcome:
        tick = self.new_tick(cell, duration_ms)
        if not tick.acquire_lock():
            return TickOutcome.SKIPPED

        try:
            tick.load()
            tick.compute()
            tick.commit()
        except Exception:
            if tick.phase != TickPhase.ABORTED:
                tick.abort()
            raise
        return TickOutcome.COMMITTED

    def handle_message(self, message: CellTickMessage) -> TickOutcome:
        """Subscriber for ``cell_tick`` jobs."""
        return self.run_cell_tick(message.cell, message.duration_ms)


def fan_out_cell_ticks(database: Database, dispatcher: Dispatcher,
                       duration_ms: int = 60000) -> List[str]:
    """
    Publish one ``cell_tick`` job per cell that needs simulating.

    Those are the cells overlapped by a house with a resident plus every
    cell an agent is currently stored under.

    Returns:
        The cells a job was published for
    """
    with database.get_session() as session:
        cells = CellQueries(session).tick_cells()

    for cell in cells:
        dispatcher.publish(CELL_TICK_TOPIC, CellTickMessage(cell=cell, duration_ms=duration_ms))

    logger.info("Cell ticks dispatched", cells=len(cells), duration_ms=duration_ms)
    return cells
