"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .transfer.protocol import DIRECTION_BOTH, DIRECTIONS

ENV_PREFIX = 'ETHSPEED_'


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    return value if value else None


def _env_overrides(types: dict) -> dict:
    """
    Read the ETHSPEED_* variables that are actually set.

    Args:
        types: Field name -> converter, e.g. ``{'port': int}``

    Returns:
        Converted values keyed by field name; unset variables are absent
    """
    load_dotenv()

    overrides = {}
    for field_name, convert in types.items():
        name = field_name.upper()
        value = _env(name)
        if value is None:
            continue
        try:
            overrides[field_name] = convert(value)
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}")
    return overrides


@dataclass
class ServerConfig:
    """
    Speed test server configuration.

    Configuration priority (highest to lowest):
    1. Command-line options
    2. Environment variables (ETHSPEED_*)
    3. Config file (JSON)
    4. Default values
    """
    host: str = '0.0.0.0'
    port: int = 8080

    # Browser UI served at / (optional)
    static_dir: Optional[Path] = None

    log_level: str = 'INFO'

    ENV_TYPES = {'host': str, 'port': int, 'static_dir': Path, 'log_level': str}

    @classmethod
    def from_env(cls) -> 'ServerConfig':
        """Load configuration from environment variables."""
        return cls(**_env_overrides(cls.ENV_TYPES))

    @classmethod
    def from_file(cls, path: Path) -> 'ServerConfig':
        """Load configuration from the ``server`` section of a JSON file."""
        data = _read_section(path, 'server')

        config = cls()
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        if data.get('static_dir'):
            config.static_dir = Path(data['static_dir'])
        config.log_level = data.get('log_level', config.log_level)
        return config

    def validate(self):
        """
        Raises:
            ConfigError: On an invalid setting
        """
        if not self.host:
            raise ConfigError("host cannot be empty")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigError(f"port must be between 1 and 65535, got {self.port!r}")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'static_dir': str(self.static_dir) if self.static_dir else None,
            'log_level': self.log_level,
        }


@dataclass
class ClientConfig:
    """Speed test client configuration (same priority order as ServerConfig)."""
    server: str = 'localhost:8080'
    direction: str = DIRECTION_BOTH
    size: int = 100  # decimal MB per test
    count: int = 1

    # Overall per-request timeout (seconds)
    timeout: float = 300.0

    log_level: str = 'INFO'

    ENV_TYPES = {'server': str, 'direction': str, 'size': int, 'count': int,
                 'log_level': str}

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        """Load configuration from environment variables."""
        return cls(**_env_overrides(cls.ENV_TYPES))

    @classmethod
    def from_file(cls, path: Path) -> 'ClientConfig':
        """Load configuration from the ``client`` section of a JSON file."""
        data = _read_section(path, 'client')

        config = cls()
        config.server = data.get('server', config.server)
        config.direction = data.get('direction', config.direction)
        config.size = data.get('size', config.size)
        config.count = data.get('count', config.count)
        config.timeout = data.get('timeout', config.timeout)
        config.log_level = data.get('log_level', config.log_level)
        return config

    def validate(self):
        """
        Raises:
            ConfigError: On an invalid setting
        """
        if not isinstance(self.count, int) or self.count < 1:
            raise ConfigError(f"count must be at least 1, got {self.count}")
        if not isinstance(self.size, int) or self.size < 1:
            raise ConfigError(f"size must be at least 1 MB, got {self.size}")
        if self.direction not in DIRECTIONS:
            raise ConfigError(
                f"invalid direction '{self.direction}', must be 'down', 'up', or 'both'"
            )
        if not self.server:
            raise ConfigError("server address cannot be empty")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'server': self.server,
            'direction': self.direction,
            'size': self.size,
            'count': self.count,
            'timeout': self.timeout,
            'log_level': self.log_level,
        }


def _read_section(path: Path, section: str) -> dict:
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid config file {path}: {e}")

    return data.get(section, {})


def load_server_config(config_path: Optional[Path] = None) -> ServerConfig:
    """
    Load server configuration from file and environment.

    Environment variables override file settings.
    """
    config = ServerConfig()
    if config_path:
        config = ServerConfig.from_file(config_path)
    return replace(config, **_env_overrides(ServerConfig.ENV_TYPES))


def load_client_config(config_path: Optional[Path] = None) -> ClientConfig:
    """
    Load client configuration from file and environment.

    Environment variables override file settings.
    """
    config = ClientConfig()
    if config_path:
        config = ClientConfig.from_file(config_path)
    return replace(config, **_env_overrides(ClientConfig.ENV_TYPES))


# Example config file template
EXAMPLE_CONFIG = """
{
  "server": {
    "host": "0.0.0.0",
    "port": 8080,
    "static_dir": "./http",
    "log_level": "INFO"
  },
  "client": {
    "server": "localhost:8080",
    "direction": "both",
    "size": 100,
    "count": 3,
    "timeout": 300
  }
}
"""
