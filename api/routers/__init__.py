"""
API routers of the ingestion service.

This package contains all FastAPI router modules for different API endpoints.
"""

__all__ = ["checkpoints", "health", "migration", "pipelines", "plugins"]
