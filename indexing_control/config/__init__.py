"""Configuration module for the Indexing Control Center."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
