"""Configuration package for checkout systems."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
