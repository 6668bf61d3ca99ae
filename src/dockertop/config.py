"""
Configuration management for dockertop.

This module provides configuration file support with YAML format: the list
of Docker hosts to monitor, engine tunables, key bindings and logging.

Features:
- YAML configuration searched in the working directory, then the home directory
- Default values with user overrides
- Host list with optional per-host external log viewer URL
- Command line hosts replace configured hosts
- Log location and rotation override

Search Order:
  ./config.yaml, ./config.yml, ./.dockertop.yaml, ./.dockertop.yml,
  ~/.config/dockertop/config.yaml, ~/.config/dockertop/config.yml,
  ~/.dockertop.yaml, ~/.dockertop.yml

Example:
  hosts:
    - host: local
    - host: ssh://root@10.0.0.5
      viewer_url: http://10.0.0.5:8080
  engine:
    stats_interval: 2.0

Architecture:
- ConfigManager: Main configuration interface
- Merges user config with defaults
- Provides typed access to settings
- Handles missing/invalid config gracefully
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


def default_config_paths() -> List[Path]:
    home = Path.home()
    return [
        Path("config.yaml"),
        Path("config.yml"),
        Path(".dockertop.yaml"),
        Path(".dockertop.yml"),
        home / ".config" / "dockertop" / "config.yaml",
        home / ".config" / "dockertop" / "config.yml",
        home / ".dockertop.yaml",
        home / ".dockertop.yml",
    ]


@dataclass
class HostConfig:
    """One Docker host to monitor."""
    host: str = "local"
    viewer_url: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "HostConfig":
        if isinstance(value, str):
            return cls(host=value)
        if isinstance(value, dict) and value.get("host"):
            viewer_url = value.get("viewer_url") or value.get("dozzle")
            return cls(host=str(value["host"]), viewer_url=viewer_url)
        raise ValueError(f"Invalid host entry: {value!r}")


@dataclass
class EngineConfig:
    """Timing and sizing of the event engine."""
    channel_capacity: int = 1000
    draw_interval: float = 0.5
    ping_timeout: float = 10.0
    connect_timeout: float = 30.0
    client_timeout: int = 120
    event_retry_delay: float = 1.0
    stats_interval: float = 1.0
    log_tail_lines: int = 1000
    log_batch_size: int = 1000
    older_logs_threshold: int = 10
    fallback_window: float = 300.0
    window_buffer: float = 1.2
    max_widenings: int = 16
    connection_error_ttl: float = 10.0
    action_timeout: int = 10


@dataclass
class KeyBindings:
    """Customizable key bindings."""
    quit: str = "q"
    help: str = "?"
    search: str = "/"
    logs: str = "l"
    show_all: str = "a"
    host_filter: str = "h"
    cycle_sort: str = "s"
    open_viewer: str = "o"


@dataclass
class DockerConfig:
    """Docker-related configuration."""
    tls_cert_path: Optional[str] = None  # None for DOCKER_CERT_PATH or ~/.docker


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None  # None for default
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class AppConfig:
    """Main application configuration."""
    hosts: List[HostConfig] = field(default_factory=lambda: [HostConfig()])
    engine: EngineConfig = field(default_factory=EngineConfig)
    keybindings: KeyBindings = field(default_factory=KeyBindings)
    docker: DockerConfig = field(default_factory=DockerConfig)
    logging: LogConfig = field(default_factory=LogConfig)

    def merge_with_cli_hosts(self, cli_hosts: List[str]) -> "AppConfig":
        """Hosts given on the command line replace the configured ones."""
        if cli_hosts:
            self.hosts = [HostConfig(host=h) for h in cli_hosts]
        return self


class ConfigManager:
    """Configuration manager with YAML file support."""

    def __init__(self, search_paths: Optional[List[Path]] = None):
        self.search_paths = search_paths if search_paths is not None else default_config_paths()
        self.config_file: Optional[Path] = None
        self._config: AppConfig = AppConfig()

    def find_config_file(self) -> Optional[Path]:
        for path in self.search_paths:
            if path.is_file():
                return path
        return None

    def load_config(self, path: Optional[str] = None) -> AppConfig:
        """Load configuration from an explicit path or the first file found."""
        self.config_file = Path(path).expanduser() if path else self.find_config_file()
        if self.config_file is None:
            logger.debug("No configuration file found, using defaults")
            self._config = AppConfig()
            return self._config

        try:
            with open(self.config_file, 'r') as f:
                user_config = yaml.safe_load(f) or {}
            if not isinstance(user_config, dict):
                raise ValueError("top level must be a mapping")
            self._config = self._merge_configs(AppConfig(), user_config)
            logger.debug(f"Loaded configuration from {self.config_file}")
        except (OSError, yaml.YAMLError, ValueError, TypeError) as e:
            logger.error(f"Failed to load config {self.config_file}: {e}, using defaults")
            self._config = AppConfig()
        return self._config

    def _merge_configs(self, default: AppConfig, user: Dict[str, Any]) -> AppConfig:
        """Merge user config with defaults."""
        if user.get('hosts'):
            default.hosts = [HostConfig.from_value(h) for h in user['hosts']]
        if 'engine' in user:
            self._merge_dataclass(default.engine, user['engine'])
        if 'keybindings' in user:
            self._merge_dataclass(default.keybindings, user['keybindings'])
        if 'docker' in user:
            self._merge_dataclass(default.docker, user['docker'])
        if 'logging' in user:
            self._merge_dataclass(default.logging, user['logging'])
        return default

    def _merge_dataclass(self, obj: Any, updates: Dict[str, Any]) -> None:
        """Merge updates into dataclass object, ignoring unknown keys."""
        if not isinstance(updates, dict):
            raise ValueError(f"Expected a mapping for {type(obj).__name__}")
        known = {f.name for f in fields(obj)}
        for key, value in updates.items():
            if key in known:
                setattr(obj, key, value)
            else:
                logger.warning(f"Unknown config key {key!r} in {type(obj).__name__}")

    def get_log_level(self) -> str:
        """Get configured log level."""
        return self._config.logging.level.upper()

    def get_custom_log_path(self) -> Optional[str]:
        """Get custom log file path if configured."""
        return self._config.logging.file_path


# Global config instance
config_manager = ConfigManager()
