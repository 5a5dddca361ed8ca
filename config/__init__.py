"""
Configuration management for sherry-sync

Handles loading, validation and live reload of the daemon configuration.
"""

from .loader import ConfigurationLoader, ConfigReloader, diff_definitions
from .defaults import DEFAULT_CONFIG

__all__ = ["ConfigurationLoader", "ConfigReloader", "diff_definitions", "DEFAULT_CONFIG"]
