"""
Event types and the bounded event channel.

Every producer in dockertop (host connections, Docker event listeners, stats
pollers, log streamers, action runners and the keyboard reader) talks to the
state machine exclusively by sending one of the events below through a single
EventChannel. Only the main loop receives from it.

Event Groups:
  - Container lifecycle: InitialContainerList, ContainerCreated,
    ContainerDestroyed, ContainerStateChanged, ContainerStat,
    ContainerHealthChanged
  - Hosts: HostConnected, HostConnectionError
  - Navigation and views: Quit, Resize, SelectPrevious, SelectNext,
    EnterPressed, ExitView, CancelMenu, ShowLogView, ShowActionMenu,
    ToggleHelp, OpenExternalViewer
  - Logs: LogLine, LogBatchPrepend, RequestOlderLogs, OlderLogsFailed and the
    Scroll* family
  - Sorting and filtering: CycleSortField, SetSortField, ToggleShowAll,
    CycleHostFilter, EnterSearchMode, ExitSearchMode, SearchKeyEvent
  - Actions: SelectActionUp, SelectActionDown, ExecuteAction,
    ActionInProgress, ActionSuccess, ActionError

Backpressure:
  The channel holds at most 1000 events. send() waits for room, try_send()
  drops the event and logs a warning. Producers that must never stall the
  event loop (the keyboard reader) use try_send().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .model import (
    Container,
    ContainerAction,
    ContainerKey,
    ContainerState,
    ContainerStats,
    HealthStatus,
    LogEntry,
    SortField,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class Event:
    """Base class for everything that travels through the channel."""


# --- Container lifecycle ---

@dataclass(frozen=True)
class InitialContainerList(Event):
    host_id: str
    containers: List[Container] = field(default_factory=list)


@dataclass(frozen=True)
class ContainerCreated(Event):
    container: Container


@dataclass(frozen=True)
class ContainerDestroyed(Event):
    key: ContainerKey


@dataclass(frozen=True)
class ContainerStateChanged(Event):
    key: ContainerKey
    state: ContainerState


@dataclass(frozen=True)
class ContainerStat(Event):
    key: ContainerKey
    stats: ContainerStats


@dataclass(frozen=True)
class ContainerHealthChanged(Event):
    key: ContainerKey
    health: HealthStatus


# --- Hosts ---

@dataclass(frozen=True)
class HostConnected(Event):
    backend: Any


@dataclass(frozen=True)
class HostConnectionError(Event):
    host_id: str
    message: str


# --- Navigation and views ---

@dataclass(frozen=True)
class Quit(Event):
    pass


@dataclass(frozen=True)
class Resize(Event):
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class SelectPrevious(Event):
    pass


@dataclass(frozen=True)
class SelectNext(Event):
    pass


@dataclass(frozen=True)
class EnterPressed(Event):
    pass


@dataclass(frozen=True)
class ExitView(Event):
    pass


@dataclass(frozen=True)
class CancelMenu(Event):
    pass


@dataclass(frozen=True)
class ShowLogView(Event):
    pass


@dataclass(frozen=True)
class ShowActionMenu(Event):
    pass


@dataclass(frozen=True)
class ToggleHelp(Event):
    pass


@dataclass(frozen=True)
class OpenExternalViewer(Event):
    pass


# --- Log view ---

@dataclass(frozen=True)
class ScrollUp(Event):
    pass


@dataclass(frozen=True)
class ScrollDown(Event):
    pass


@dataclass(frozen=True)
class ScrollToTop(Event):
    pass


@dataclass(frozen=True)
class ScrollToBottom(Event):
    pass


@dataclass(frozen=True)
class ScrollPageUp(Event):
    pass


@dataclass(frozen=True)
class ScrollPageDown(Event):
    pass


# Log events carry the generation of the LogState that asked for them, so
# results from a closed log view never reach a reopened one.

@dataclass(frozen=True)
class LogLine(Event):
    key: ContainerKey
    entry: LogEntry
    generation: int = 0


@dataclass(frozen=True)
class LogBatchPrepend(Event):
    """Older lines, oldest first, to be placed above what is loaded."""
    key: ContainerKey
    entries: List[LogEntry]
    has_more_history: bool
    generation: int = 0


@dataclass(frozen=True)
class RequestOlderLogs(Event):
    pass


@dataclass(frozen=True)
class OlderLogsFailed(Event):
    key: ContainerKey
    message: str
    generation: int = 0


# --- Sorting and filtering ---

@dataclass(frozen=True)
class CycleSortField(Event):
    pass


@dataclass(frozen=True)
class SetSortField(Event):
    field: SortField


@dataclass(frozen=True)
class ToggleShowAll(Event):
    pass


@dataclass(frozen=True)
class CycleHostFilter(Event):
    pass


@dataclass(frozen=True)
class EnterSearchMode(Event):
    pass


@dataclass(frozen=True)
class ExitSearchMode(Event):
    pass


@dataclass(frozen=True)
class SearchKeyEvent(Event):
    """A key typed while searching; `character` is None for non-printables."""
    key: str
    character: Optional[str] = None


# --- Actions ---

@dataclass(frozen=True)
class SelectActionUp(Event):
    pass


@dataclass(frozen=True)
class SelectActionDown(Event):
    pass


@dataclass(frozen=True)
class ExecuteAction(Event):
    pass


@dataclass(frozen=True)
class ActionInProgress(Event):
    key: ContainerKey
    action: ContainerAction


@dataclass(frozen=True)
class ActionSuccess(Event):
    key: ContainerKey
    action: ContainerAction


@dataclass(frozen=True)
class ActionError(Event):
    key: ContainerKey
    action: ContainerAction
    message: str


_CLOSED = object()


class EventChannel:
    """Bounded multi-producer, single-consumer queue of events."""

    def __init__(self, maxsize: int = DEFAULT_CAPACITY):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, event: Event) -> bool:
        """Enqueue an event, waiting while the channel is full."""
        if self._closed:
            return False
        await self._queue.put(event)
        return True

    def try_send(self, event: Event) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event channel full, dropping {type(event).__name__}")
            return False
        return True

    async def recv(self) -> Optional[Event]:
        """Next event, or None once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def try_recv(self) -> Optional[Event]:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        """Stop accepting events and wake a consumer blocked in recv()."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # The consumer sees `closed` once it has drained the backlog
            pass
