"""API module for the Indexing Control Center."""

from .routes import router

__all__ = ["router"]
