"""Configuration package for the session engine."""
from .matching import MatchingConfig, MatchingConfigLoader, matching_config
from .settings import Settings, settings

__all__ = [
    "MatchingConfig",
    "MatchingConfigLoader",
    "matching_config",
    "Settings",
    "settings",
]
