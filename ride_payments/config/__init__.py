"""Configuration package for ride payments."""
from .settings import ProviderConfig, Settings, get_settings

__all__ = ["ProviderConfig", "Settings", "get_settings"]
