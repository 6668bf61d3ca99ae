"""
dockertop - A real-time, multi-host Docker container monitor for the terminal.

This package connects to one or more Docker daemons (local socket, SSH, TCP or
TLS), keeps a live table of containers with CPU/memory/network statistics and
health, streams container logs with backwards pagination, and runs lifecycle
actions (start, stop, restart, remove) without ever blocking the interface.

Architecture:
  Every producer (host connections, Docker event listeners, stats pollers,
  log streamers, action runners) is an asyncio task that reports back through
  one bounded EventChannel. A single consumer applies events to AppState and
  redraws at most twice per second unless an event forces a redraw.

Main Components:
  - main.py: Entry point and event loop (coalescing consumer)
  - events.py: Event types and the bounded EventChannel
  - state.py: AppState state machine (views, sort, filter, selection)
  - monitor.py: HostConnectionManager and ContainerMonitor
  - logs.py: Log streaming and density-based backwards pagination
  - actions.py: Fire-and-forget container actions
  - backend.py: Docker daemon adapter (docker-py)
  - stats.py: CPU/memory/network rate calculation
  - config.py: YAML configuration
  - tui.py: Textual front end

Usage:
  dockertop -H local -H ssh://user@server
  python -m dockertop

Dependencies:
  - docker[ssh]>=7.0.0 (paramiko for ssh:// hosts)
  - textual, rich
  - PyYAML
  - Python 3.10+
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_log_path() -> str:
    """
    Get the log file path following XDG Base Directory spec.

    Returns XDG_DATA_HOME/dockertop/logs/dockertop.log with fallback to /tmp.
    Creates directory if it doesn't exist.
    """
    xdg_data_home = os.environ.get('XDG_DATA_HOME')
    if not xdg_data_home:
        xdg_data_home = Path.home() / '.local' / 'share'
    else:
        xdg_data_home = Path(xdg_data_home)

    log_dir = xdg_data_home / 'dockertop' / 'logs'

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / 'dockertop.log')
    except (PermissionError, OSError):
        return '/tmp/dockertop.log'


def configure_logging(level: str = "INFO", file_path: Optional[str] = None,
                      max_size_mb: int = 10, backup_count: int = 5) -> logging.Handler:
    """
    Route all package logging to a rotating file.

    The terminal belongs to the TUI, so nothing is ever written to stderr.
    Returns the installed handler so callers (and tests) can remove it.
    """
    handler = RotatingFileHandler(
        file_path or get_log_path(),
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(handler)
    return handler
