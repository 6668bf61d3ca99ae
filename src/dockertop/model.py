"""
Data models for dockertop.

This module defines the dataclasses and enums shared by the producers, the
state machine and the renderer:
  - ContainerKey: (host_id, container_id) identity of a container
  - Container: one container row (state, health, creation time, live stats)
  - ContainerStats: latest CPU/memory/network sample
  - SortField / SortDirection / SortState: table ordering
  - ContainerAction: lifecycle actions and which states allow them
  - ViewKind / ViewState: which screen is active
  - LogEntry: one timestamped log line

Container ids are always the 12 character short form used by the Docker CLI,
so the same container reached through a summary, an inspect or an event maps
to the same key.
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

SHORT_ID_LENGTH = 12


def truncate_id(container_id: str) -> str:
    return container_id[:SHORT_ID_LENGTH]


class ContainerState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"
    CREATED = "created"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, text: Optional[str]) -> "ContainerState":
        """Map a daemon state string ("running", "Exited (0) 3 hours ago", ...) to a state."""
        lowered = (text or "").lower()
        for state in cls:
            if state is not cls.UNKNOWN and state.value in lowered:
                return state
        return cls.UNKNOWN


class HealthStatus(enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional["HealthStatus"]:
        lowered = (text or "").lower()
        # "unhealthy" contains "healthy"
        if "unhealthy" in lowered:
            return cls.UNHEALTHY
        if "healthy" in lowered:
            return cls.HEALTHY
        if "starting" in lowered:
            return cls.STARTING
        return None


@dataclass(frozen=True)
class ContainerKey:
    host_id: str
    container_id: str

    def __str__(self) -> str:
        return f"{self.host_id}/{self.container_id}"


@dataclass
class ContainerStats:
    cpu: float = 0.0
    memory: float = 0.0
    network_tx_bytes_per_sec: float = 0.0
    network_rx_bytes_per_sec: float = 0.0


@dataclass
class Container:
    id: str
    name: str
    state: ContainerState
    host_id: str
    health: Optional[HealthStatus] = None
    created: Optional[datetime] = None
    stats: ContainerStats = field(default_factory=ContainerStats)
    viewer_url: Optional[str] = None

    @property
    def key(self) -> ContainerKey:
        return ContainerKey(self.host_id, self.id)

    @property
    def is_running(self) -> bool:
        return self.state is ContainerState.RUNNING


class SortDirection(enum.Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"

    def toggle(self) -> "SortDirection":
        if self is SortDirection.ASCENDING:
            return SortDirection.DESCENDING
        return SortDirection.ASCENDING

    @property
    def symbol(self) -> str:
        return "▲" if self is SortDirection.ASCENDING else "▼"


class SortField(enum.Enum):
    UPTIME = "uptime"
    NAME = "name"
    CPU = "cpu"
    MEMORY = "memory"

    def next(self) -> "SortField":
        members = list(SortField)
        return members[(members.index(self) + 1) % len(members)]

    def default_direction(self) -> SortDirection:
        # Names read A-Z; numbers and uptime read biggest/newest first
        if self is SortField.NAME:
            return SortDirection.ASCENDING
        return SortDirection.DESCENDING

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class SortState:
    field: SortField = SortField.UPTIME
    direction: SortDirection = SortDirection.DESCENDING

    @classmethod
    def for_field(cls, sort_field: SortField) -> "SortState":
        return cls(sort_field, sort_field.default_direction())


class ContainerAction(enum.Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    REMOVE = "remove"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def available_for_state(cls, state: ContainerState) -> List["ContainerAction"]:
        if state is ContainerState.RUNNING:
            return [cls.STOP, cls.RESTART, cls.REMOVE]
        if state is ContainerState.PAUSED:
            return [cls.STOP, cls.REMOVE]
        if state in (ContainerState.EXITED, ContainerState.CREATED, ContainerState.DEAD):
            return [cls.START, cls.REMOVE]
        return []


class ViewKind(enum.Enum):
    CONTAINER_LIST = "container_list"
    LOG_VIEW = "log_view"
    ACTION_MENU = "action_menu"
    SEARCH_MODE = "search_mode"


@dataclass(frozen=True)
class ViewState:
    """Active view; LogView and ActionMenu carry the container they belong to."""
    kind: ViewKind = ViewKind.CONTAINER_LIST
    key: Optional[ContainerKey] = None

    @classmethod
    def container_list(cls) -> "ViewState":
        return cls(ViewKind.CONTAINER_LIST)

    @classmethod
    def log_view(cls, key: ContainerKey) -> "ViewState":
        return cls(ViewKind.LOG_VIEW, key)

    @classmethod
    def action_menu(cls, key: ContainerKey) -> "ViewState":
        return cls(ViewKind.ACTION_MENU, key)

    @classmethod
    def search_mode(cls) -> "ViewState":
        return cls(ViewKind.SEARCH_MODE)


# RFC3339 with up to nanosecond precision, e.g. 2024-05-01T10:20:30.123456789Z
_TIMESTAMP_RE = re.compile(
    r'^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$'
)


def parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    """
    Parse a Docker RFC3339Nano timestamp into an aware UTC datetime.

    Fractions beyond microseconds are truncated. Returns None for anything
    that does not look like a timestamp, including Docker's zero time.
    """
    if not text:
        return None
    match = _TIMESTAMP_RE.match(text.strip())
    if not match:
        return None
    base, fraction, zone = match.groups()
    fraction = (fraction or "")[:6].ljust(6, "0")
    if not zone or zone == "Z":
        zone = "+00:00"
    elif ":" not in zone:
        zone = f"{zone[:3]}:{zone[3:]}"
    try:
        parsed = datetime.fromisoformat(f"{base}.{fraction}{zone}")
    except ValueError:
        return None
    if parsed.year <= 1:
        return None
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    text: str

    @classmethod
    def parse(cls, line: str) -> Optional["LogEntry"]:
        """
        Parse one "<timestamp> <message>" line as produced by `docker logs -t`.

        Returns None when the separator or the timestamp is missing; callers
        skip such lines. An empty message is kept.
        """
        line = line.rstrip("\n").replace("\r", "")
        stamp, sep, text = line.partition(" ")
        if not sep:
            return None
        timestamp = parse_timestamp(stamp)
        if timestamp is None:
            return None
        return cls(timestamp, text)
