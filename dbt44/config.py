"""
Configuration loading and validation for the DBT-44 bridge.

Config file format (YAML):

    device:
      host: 192.168.1.100        # IP or DNS name of the DBT-44
      name: dbt44-device         # identifier set on the unit
      target_port: 9000          # device receives
      feedback_port: 9001        # bridge receives
      ping_interval: 0           # seconds between /ping probes, 0 = off

The device name can be found in the DBT-44 web interface or with the SYNQ
Network Discovery Tool.
"""

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dbt44.osc import DEFAULT_FEEDBACK_PORT, DEFAULT_TARGET_PORT, validate_port


class ConfigError(ValueError):
    """Configuration is missing or invalid."""


@dataclass
class DeviceConfig:
    """Connection settings for one DBT-44."""
    host: str = ''
    device_name: str = ''
    target_port: Optional[int] = DEFAULT_TARGET_PORT
    feedback_port: Optional[int] = DEFAULT_FEEDBACK_PORT
    ping_interval: Optional[float] = None

    @property
    def name(self) -> str:
        """Trimmed device name as used on the wire."""
        return (self.device_name or '').strip()

    def is_complete(self) -> bool:
        """Host, device name and both ports are present."""
        return bool(
            (self.host or '').strip()
            and self.name
            and self.target_port
            and self.feedback_port
        )

    def validate(self) -> None:
        """Raise ConfigError unless a session can be started from this config."""
        validate_config({'device': asdict(self)})

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'DeviceConfig':
        """Build from a parsed config dict (the whole file or its device section)."""
        section = config.get('device', config) or {}
        return cls(
            host=str(section.get('host') or '').strip(),
            device_name=str(section.get('name', section.get('device_name')) or ''),
            target_port=_optional_int(section.get('target_port', DEFAULT_TARGET_PORT)),
            feedback_port=_optional_int(section.get('feedback_port', DEFAULT_FEEDBACK_PORT)),
            ping_interval=_optional_float(section.get('ping_interval')),
        )


def _optional_int(value: Any) -> Optional[int]:
    """Ports may come from YAML or CLI text; blank means missing."""
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid port: {value!r}\nPort must be an integer in range 1-65535")


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid ping_interval: {value!r}\nMust be a number of seconds")


def load_config(path: str) -> DeviceConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to configuration YAML file

    Returns:
        Validated DeviceConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML syntax is invalid
        ConfigError: If configuration is invalid (via validate_config)
    """
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            f"See config.yaml.example for a template."
        )

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"Configuration must be a mapping, got {type(config).__name__}")

    validate_config(config)

    return DeviceConfig.from_dict(config)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate a parsed configuration dict.

    Validates:
    - host present (IP or DNS name)
    - device name present (every OSC URL ends with /<device_name>)
    - target and feedback ports in range 1-65535
    - ping_interval, if given, not negative

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigError: If any validation fails
    """
    device = config.get('device', config) or {}

    host = str(device.get('host') or '').strip()
    if not host:
        raise ConfigError(
            "Configuration missing 'device.host'\n"
            "Must specify the DBT-44 IP address or hostname"
        )

    name = str(device.get('name', device.get('device_name')) or '').strip()
    if not name:
        raise ConfigError(
            "Configuration missing 'device.name'\n"
            "Device name is required (see DBT-44 web interface or "
            "SYNQ Network Discovery Tool)"
        )

    for key, default in (('target_port', DEFAULT_TARGET_PORT),
                         ('feedback_port', DEFAULT_FEEDBACK_PORT)):
        port = _optional_int(device.get(key, default))
        if port is None:
            raise ConfigError(
                f"Configuration missing 'device.{key}'\n"
                f"Must specify: device.{key}: (1-65535)"
            )
        try:
            validate_port(port)
        except ValueError as e:
            raise ConfigError(f"Invalid {key}: {port}\n{e}")

    ping_interval = _optional_float(device.get('ping_interval'))
    if ping_interval is not None and ping_interval < 0:
        raise ConfigError(
            f"Invalid ping_interval: {ping_interval}\n"
            f"Must be 0 (off) or a positive number of seconds"
        )
