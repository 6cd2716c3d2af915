"""Routers module - FastAPI route handlers"""

from . import config, pipeline, projects

__all__ = ["config", "pipeline", "projects"]
