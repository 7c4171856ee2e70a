"""FastAPI main application."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text

from .. import __version__
from ..config import configure_logging, settings
from ..core.city_map import DEFAULT_CITY_FORMAT, TileGeometry
from ..core.direction_map import DirectionMapCache
from ..core.lots import build_city_map
from ..core.terrain import TerrainOptions, TerrainTilePosition
from ..db.connection import db
from ..db.queries import CellQueries
from ..errors import RetryableOperationError, TerrainGenerationError
from ..sim.behavior import StreetWalkerBehavior
from ..sim.city_builder import CityBuilder
from ..sim.direction_map_store import DirectionMapStore
from ..sim.dispatch import (
    CELL_TICK_TOPIC,
    DIRECTION_MAP_TOPIC,
    TERRAIN_TILE_TOPIC,
    InProcessDispatcher,
)
from ..sim.scheduler import CellTickRunner, SimulationOptions, current_time_ms, fan_out_cell_ticks
from ..sim.terrain_service import TerrainService

# Configure logging
configure_logging(settings)

logger = structlog.get_logger()

# Initialize FastAPI app
app = FastAPI(
    title="Persons Simulation API",
    description="Cell-scoped simulation core of a persistent multiplayer world",
    version=__version__
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# World layout shared by every request
city_geometry = TileGeometry(tile_width=settings.tile_width, tile_height=settings.tile_height)
city_map, _, _ = build_city_map(DEFAULT_CITY_FORMAT, city_geometry)
direction_maps = DirectionMapCache(city_map, geometry=city_geometry,
                                   max_entries=settings.direction_map_cache_size)
simulation_options = SimulationOptions.from_settings(settings)
terrain_options = TerrainOptions(
    tile_size=settings.terrain_tile_size,
    min_points=settings.terrain_min_points,
    max_points=settings.terrain_max_points,
    relaxation_steps=settings.terrain_relaxation_steps,
    max_resources=settings.max_resources_per_tile,
)
dispatcher = InProcessDispatcher(max_workers=settings.dispatcher_workers)


def get_runner() -> CellTickRunner:
    return CellTickRunner(db, StreetWalkerBehavior(city_map, city_geometry), direction_maps,
                          city_geometry, simulation_options)


def get_terrain_service() -> TerrainService:
    return TerrainService(db, dispatcher, terrain_options, settings.cell_size)


def get_direction_map_store() -> DirectionMapStore:
    return DirectionMapStore(db, direction_maps)


def get_city_builder() -> CityBuilder:
    return CityBuilder(db, city_geometry, settings.cell_size)


# Request/Response models
class TickRequest(BaseModel):
    """Request to simulate cells."""

    duration_ms: int = Field(60000, ge=0, le=3600000, description="Simulated time span")


class FanOutResponse(BaseModel):
    """Cells a tick job was published for."""

    cells: List[str]
    dispatched: int


class CellTickResponse(BaseModel):
    """Result of one cell tick."""

    cell: str
    outcome: str


class TerrainLoadRequest(BaseModel):
    """Viewer position around which terrain must exist."""

    x: float
    y: float


class TerrainLoadResponse(BaseModel):
    requested: List[str]


class ResourceInfo(BaseModel):
    """A stored terrain resource."""

    id: str
    x: int
    y: int
    object_type: str
    depleted: bool
    ready_time_ms: int


class HarvestResponse(BaseModel):
    resource_id: str
    spawned: Optional[Dict[str, Any]] = None


class DirectionMapResponse(BaseModel):
    key: str
    reachable: bool
    rendered: str


class NearbyNpcsResponse(BaseModel):
    npc_ids: List[str]
    time_ms: int


class CityResponse(BaseModel):
    """Stored city after a rebuild."""

    houses: int
    objects: int
    rendered: str


class SeedNpcsRequest(BaseModel):
    """Request to replace the population."""

    count: int = Field(50, ge=0, le=10000, description="Number of agents")
    seed: str = Field("npcs", description="Seed of the home assignment")


class SeedNpcsResponse(BaseModel):
    npc_ids: List[str]


# Event handlers
@app.on_event("startup")
async def startup_event():
    """Initialize database and job handlers on startup."""
    logger.info("Starting Persons Simulation API")
    db.initialize()

    dispatcher.subscribe(CELL_TICK_TOPIC, lambda message: get_runner().handle_message(message))
    dispatcher.subscribe(TERRAIN_TILE_TOPIC, lambda message: get_terrain_service().handle_message(message))
    dispatcher.subscribe(DIRECTION_MAP_TOPIC, lambda message: get_direction_map_store().handle_message(message))
    logger.info("API startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down Persons Simulation API")
    dispatcher.shutdown()
    db.dispose()


# API endpoints
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Persons Simulation API",
        "version": __version__,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    try:
        # Test database connection
        with db.get_session() as session:
            session.execute(text("SELECT 1"))

        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(status_code=503, detail="Service unhealthy")


@app.post("/ticks", response_model=FanOutResponse)
def fan_out_ticks(request: TickRequest):
    """
    Publish one tick job per cell with a populated house or an agent.

    Returns immediately; workers run the ticks.
    """
    try:
        cells = fan_out_cell_ticks(db, dispatcher, request.duration_ms)
    except Exception as e:
        logger.error("Tick fan-out failed", error=str(e))
        raise HTTPException(status_code=503, detail=str(RetryableOperationError()))

    return FanOutResponse(cells=cells, dispatched=len(cells))


@app.post("/cells/{cell_key}/tick", response_model=CellTickResponse)
def run_cell_tick(cell_key: str, request: TickRequest):
    """Simulate one cell now and wait for the result."""
    try:
        outcome = get_runner().run_cell_tick(cell_key, request.duration_ms)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RetryableOperationError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return CellTickResponse(cell=cell_key, outcome=outcome.value)


@app.post("/terrain/load", response_model=TerrainLoadResponse)
def load_terrain(request: TerrainLoadRequest):
    """Request generation of the missing terrain tiles around a viewer."""
    try:
        missing = get_terrain_service().request_missing_tiles((request.x, request.y))
    except TerrainGenerationError as e:
        logger.error("Terrain load failed", error=str(e))
        raise HTTPException(status_code=503, detail=str(RetryableOperationError()))

    return TerrainLoadResponse(requested=[position.id for position in missing])


@app.get("/terrain/tiles/{tile_x}/{tile_y}", response_model=List[ResourceInfo])
def get_terrain_tile(tile_x: int, tile_y: int):
    """Stored resources of one terrain tile."""
    resources = get_terrain_service().tile_resources(TerrainTilePosition(tile_x, tile_y))
    if resources is None:
        raise HTTPException(status_code=404, detail="Terrain tile not generated")

    return [
        ResourceInfo(
            id=spec.id,
            x=spec.x,
            y=spec.y,
            object_type=spec.object_type.value,
            depleted=spec.depleted,
            ready_time_ms=spec.ready_time_ms,
        )
        for spec in resources
    ]


@app.post("/terrain/resources/{resource_id}/harvest", response_model=HarvestResponse)
def harvest_resource(resource_id: str):
    """Harvest a resource once; ``spawned`` is null while it is depleted."""
    try:
        spawned = get_terrain_service().harvest_resource(resource_id)
    except RetryableOperationError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if spawned is None:
        return HarvestResponse(resource_id=resource_id)
    return HarvestResponse(
        resource_id=resource_id,
        spawned={"id": spawned.id, "x": spawned.x, "y": spawned.y,
                 "object_type": spawned.object_type.value},
    )


@app.get("/direction-maps", response_model=DirectionMapResponse)
def get_direction_map(x: float = Query(...), y: float = Query(...)):
    """Direction map toward a destination, drawn with arrows."""
    store = get_direction_map_store()
    direction_map = store.generate((x, y))
    return DirectionMapResponse(
        key=store.key_for((x, y)),
        reachable=direction_map.has_destination,
        rendered=direction_map.render(),
    )


@app.get("/npcs/near", response_model=NearbyNpcsResponse)
def get_nearby_npcs(x: float = Query(...), y: float = Query(...),
                    time_ms: Optional[int] = Query(None)):
    """Agents present around a viewer at a moment (now by default)."""
    time_ms = current_time_ms() if time_ms is None else time_ms
    with db.get_session() as session:
        npc_ids = CellQueries(session).npc_ids_near((x, y), settings.cell_size, time_ms)

    return NearbyNpcsResponse(npc_ids=npc_ids, time_ms=time_ms)


@app.post("/generate/city", response_model=CityResponse)
def generate_city():
    """Rebuild the stored houses and lot furniture from the city layout."""
    layout = get_city_builder().build_city(DEFAULT_CITY_FORMAT)
    return CityResponse(houses=layout.houses, objects=layout.objects,
                        rendered=str(layout.tile_map))


@app.post("/generate/npcs", response_model=SeedNpcsResponse)
def generate_npcs(request: SeedNpcsRequest):
    """Replace every agent with a fresh population living in the stored houses."""
    npc_ids = get_city_builder().seed_npcs(request.count, request.seed)
    return SeedNpcsResponse(npc_ids=npc_ids)
