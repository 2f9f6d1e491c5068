"""
Error types shared by the client and the configuration layer.
"""


class SpeedTestError(Exception):
    """A single download or upload test could not produce a measurement."""


class ConfigError(ValueError):
    """Invalid client or server configuration."""
