"""
Job dispatch between the scheduler and its workers.

Jobs are small pydantic messages published on a topic. Delivery is
at-least-once: a subscriber may see the same message twice, and the cell
lock makes a duplicated cell tick a no-op.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger()

CELL_TICK_TOPIC = "cell_tick"
TERRAIN_TILE_TOPIC = "generate_terrain"
DIRECTION_MAP_TOPIC = "generate_direction_map"


class CellTickMessage(BaseModel):
    """Simulate one cell for a span of time."""

    cell: str = Field(..., description="Cell key, e.g. cell:0,0")
    duration_ms: int = Field(60000, ge=0, description="Simulated time span")


class TerrainTileMessage(BaseModel):
    """Generate and store one terrain tile."""

    tile_x: int
    tile_y: int


class DirectionMapMessage(BaseModel):
    """Precompute the direction map of one destination."""

    x: float
    y: float


class Dispatcher(Protocol):
    """Anything that can deliver a message to the subscribers of a topic."""

    def publish(self, topic: str, payload: BaseModel) -> None:
        ...


Handler = Callable[[Any], Any]


class InProcessDispatcher:
    """
    Dispatcher that runs handlers on a local thread pool.

    With ``synchronous=True`` handlers run inline on ``publish`` and their
    errors reach the publisher, which keeps tests deterministic. On the pool
    a failed job is logged and counted in ``failed``; nothing is kept per job.
    """

    def __init__(self, max_workers: int = 4, synchronous: bool = False):
        self.synchronous = synchronous
        self._handlers: Dict[str, List[Handler]] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                                thread_name_prefix="persons-worker")
        self._idle = threading.Condition()
        self._in_flight = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        """Jobs submitted and not finished yet."""
        with self._idle:
            return self._in_flight

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers.setdefault(topic, []).append(handler)

    def publish(self, topic: str, payload: BaseModel) -> None:
        handlers = self._handlers.get(topic, [])
        logger.debug("Message published", topic=topic, subscribers=len(handlers))

        for handler in handlers:
            if self._executor is None:
                self._run(topic, handler, payload)
                continue

            with self._idle:
                self._in_flight += 1
            self._executor.submit(self._job, topic, handler, payload)

    def _run(self, topic: str, handler: Handler, payload: BaseModel):
        try:
            return handler(payload)
        except Exception as e:
            logger.error("Message handler failed", topic=topic, error=str(e))
            raise

    def _job(self, topic: str, handler: Handler, payload: BaseModel) -> None:
        failed = False
        try:
            self._run(topic, handler, payload)
        except Exception:
            # logged in _run
            failed = True
        finally:
            with self._idle:
                self._in_flight -= 1
                if failed:
                    self.failed += 1
                self._idle.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no job is in flight.

        Returns:
            False when ``timeout`` expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
