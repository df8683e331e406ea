"""Configuration package for the marketplace core."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
