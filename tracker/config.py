"""
config.py
---------
Runtime settings, read from ``TRACKER_*`` environment variables or a ``.env``
file.
"""

from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TRACKER_", env_file=".env", extra="ignore")

    # Server
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    # browsers on other devices call the API directly
    cors_origins: List[str] = ["*"]

    # Persistence
    data_file: Path = Path("classroom-data.json")
    save_interval: float = Field(default=30.0, gt=0)  # seconds
    seed_sample_class: bool = True

    # Weekly rollover check
    rollover_interval: float = Field(default=3600.0, gt=0)  # seconds

    # Broadcast
    event_queue_size: int = Field(default=1000, ge=1)
