"""Configuration: application settings and copy target parameters."""

from ami_replication.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
