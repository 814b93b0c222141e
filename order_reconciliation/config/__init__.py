"""Configuration package for the order reconciliation service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
