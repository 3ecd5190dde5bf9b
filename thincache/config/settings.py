"""
Thin Cache Configuration Settings

This module contains all configuration constants for the thin cache client
and for the cache node server. Every value can be overridden through the
environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Tuple


def parse_endpoints(raw: str) -> List[Tuple[str, int]]:
    """
    Parse a comma separated list of ``host:port`` endpoints.

    Args:
        raw: String such as ``"127.0.0.1:10800,127.0.0.1:10801"``

    Returns:
        List of (host, port) tuples, in the given order

    Raises:
        ValueError: If an entry has no port or a non-numeric port
    """
    endpoints = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        host, sep, port = entry.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Invalid endpoint {entry!r}, expected host:port")
        endpoints.append((host, int(port)))
    return endpoints


@dataclass
class Settings:
    """Client and node configuration settings."""

    # Network settings
    HOST: str = os.environ.get("THIN_CACHE_HOST", "0.0.0.0")
    PORT: int = int(os.environ.get("THIN_CACHE_PORT", "10800"))
    ENDPOINTS: List[Tuple[str, int]] = field(
        default_factory=lambda: parse_endpoints(
            os.environ.get("THIN_CACHE_ENDPOINTS", "127.0.0.1:10800")
        )
    )

    # Protocol settings
    PROTOCOL_VERSION: Tuple[int, int, int] = (1, 0, 0)
    MAX_FRAME_SIZE: int = int(os.environ.get("THIN_CACHE_MAX_FRAME_SIZE", str(16 * 1024 * 1024)))

    # Affinity settings
    PARTITIONS: int = int(os.environ.get("THIN_CACHE_PARTITIONS", "1024"))

    # Client settings
    CONNECT_TIMEOUT: float = float(os.environ.get("THIN_CACHE_CONNECT_TIMEOUT", "5.0"))
    REQUEST_TIMEOUT: float = float(os.environ.get("THIN_CACHE_REQUEST_TIMEOUT", "10.0"))
    NEAR_CACHE_SIZE: int = int(os.environ.get("THIN_CACHE_NEAR_CACHE_SIZE", "1024"))

    # Logging settings
    DEBUG: bool = os.environ.get("THIN_CACHE_DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.environ.get("THIN_CACHE_LOG_LEVEL", "INFO")


# Global settings instance
settings = Settings()
