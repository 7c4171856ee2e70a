from pathlib import Path
from typing import Optional

from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings

import os

# Explicitly load .env for local/dev environments only if values are missing from the environment
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_file = BASE_DIR / ".env"

if env_file.exists():
    file_env = dotenv_values(env_file)
    missing_keys = {k: v for k, v in file_env.items() if k not in os.environ}
    for k, v in missing_keys.items():
        os.environ[k] = v


class Settings(BaseSettings):
    """Application settings pulled from environment variables."""

    # Database Configuration
    db_host: str = Field(default="localhost", description="Database host")
    db_port: int = Field(default=5432, description="Database port")
    db_name: str = Field(default="py_persons", description="Database name")
    db_user: str = Field(default="postgres", description="Database user")
    db_password: str = Field(default="password", description="Database password")
    db_url: Optional[str] = Field(default=None, description="Full database URL, overrides the parts above")

    @property
    def database_url(self) -> str:
        """Construct full database URL."""
        if self.db_url:
            return self.db_url
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (e.g., plain, json)")

    # World Grid Configuration
    cell_size: int = Field(default=2000, description="Width and height of a simulation cell")
    terrain_tile_size: int = Field(default=1000, description="Width and height of a terrain tile")
    tile_width: int = Field(default=500, description="World width of one city map tile")
    tile_height: int = Field(default=300, description="World height of one city map tile")

    # Pathfinding Configuration
    path_lead_time_ms: int = Field(default=2000, description="Delay before a new path starts")
    vertical_step_ms: int = Field(default=3000, description="Time to walk one tile up or down")
    horizontal_step_ms: int = Field(default=5000, description="Time to walk one tile left or right")
    path_max_steps: int = Field(default=100, description="Loop guard for the path walker")
    direction_map_cache_size: int = Field(default=64, description="Cached direction maps")

    # Terrain Configuration
    terrain_min_points: int = Field(default=10, description="Min scattered points per terrain tile")
    terrain_max_points: int = Field(default=25, description="Max scattered points per terrain tile")
    terrain_relaxation_steps: int = Field(default=5, description="Lloyd relaxation iterations")
    max_resources_per_tile: int = Field(default=100, description="Resource cap per terrain tile")

    # Simulation Configuration
    lock_stale_after_ms: int = Field(default=60000, description="Age after which a cell lock may be taken over")
    tick_max_attempts: int = Field(default=3, description="Attempts per cell tick before giving up")
    dispatcher_workers: int = Field(default=4, description="Worker threads for in-process dispatch")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "PERSONS_"
        extra = "ignore"


# Instantiate singleton settings object
settings = Settings()
