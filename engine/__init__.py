"""
Campaign Orchestrator - Engine Package

Infrastructure shared by the campaign package, the API and the worker:

  - engine.config:  layered YAML configuration (base → env overlay → env vars)
  - engine.logging: JSON log formatter and the campaign event logger
  - engine.db:      SQLite / PostgreSQL backend abstraction
  - engine.retry:   retry with exponential backoff for store failures

Nothing here imports the campaign package.
"""

from engine.db import PersistenceError, create_backend
from engine.config import load_config, get_config_value
from engine.logging import configure_logging, get_logger

__all__ = [
    "PersistenceError",
    "create_backend",
    "load_config",
    "get_config_value",
    "configure_logging",
    "get_logger",
]
