"""Configuration module for thin cache."""

from .settings import Settings, parse_endpoints, settings

__all__ = ["Settings", "parse_endpoints", "settings"]
