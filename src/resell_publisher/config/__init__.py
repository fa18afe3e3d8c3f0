"""Configuration module for Resell Publisher."""

from resell_publisher.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
