"""
Log streaming and backwards pagination.

Opening the log view for a container starts one live-tail task:
  1. Fetch the most recent `tail_lines` lines once and send them as a single
     LogBatchPrepend (has_more_history is True when the batch came back full).
  2. Follow the live stream from just after the last historical timestamp,
     sending one LogLine per new line.

Scrolling near the top of the buffer starts a pagination task that looks
further back in time. Instead of a fixed window it estimates how chatty the
container is from the most recently loaded batch (paginate_backwards):
  - window = span of that batch x 1.2, or 5 minutes if the span is empty
  - fetch [oldest - window, oldest); a window reaching back past the
    container's creation time is clamped and is the last page
  - a full page keeps the newest `batch_size` entries and reports more history
  - otherwise the window doubles and the fetch is retried

Error Handling:
  - Daemon errors end the tail task (the view can simply be reopened)
  - Pagination errors are reported as OlderLogsFailed so the view can retry
  - Lines without a parseable timestamp are skipped
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from .backend import DOCKER_ERRORS, DockerBackend, close_stream, iter_stream
from .events import EventChannel, LogBatchPrepend, LogLine, OlderLogsFailed
from .model import ContainerKey, LogEntry

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 1000
DEFAULT_BATCH_SIZE = 1000
DEFAULT_WINDOW_BUFFER = 1.2
DEFAULT_FALLBACK_WINDOW = 300.0
# Without a creation time, stop after 300s * 2**16 (about two years)
DEFAULT_MAX_WIDENINGS = 16

FetchWindow = Callable[[datetime, datetime], List[LogEntry]]


def parse_log_lines(lines: Iterable[str]) -> List[LogEntry]:
    entries = []
    for line in lines:
        entry = LogEntry.parse(line)
        if entry is not None:
            entries.append(entry)
    return entries


@dataclass
class LogState:
    """Loaded log buffer and scroll position for the container in LogView."""
    key: ContainerKey
    entries: List[LogEntry] = field(default_factory=list)
    scroll_offset: int = 0
    is_at_bottom: bool = True
    has_more_history: bool = False
    fetching_older: bool = False
    generation: int = 0
    # Bounds of the most recently loaded batch (initial tail or older page)
    batch_oldest: Optional[datetime] = None
    batch_newest: Optional[datetime] = None
    tail_task: Optional[asyncio.Task] = None
    older_task: Optional[asyncio.Task] = None

    @property
    def oldest_timestamp(self) -> Optional[datetime]:
        return self.entries[0].timestamp if self.entries else None

    @property
    def newest_timestamp(self) -> Optional[datetime]:
        return self.entries[-1].timestamp if self.entries else None

    @property
    def total_loaded(self) -> int:
        return len(self.entries)

    def max_offset(self, viewport: int) -> int:
        return max(0, len(self.entries) - max(viewport, 1))

    def prepend(self, entries: List[LogEntry], has_more_history: bool) -> None:
        self.entries[0:0] = entries
        if entries:
            self.batch_oldest = entries[0].timestamp
            self.batch_newest = entries[-1].timestamp
        # Keep the line the user is looking at in place
        self.scroll_offset += len(entries)
        self.has_more_history = has_more_history
        self.fetching_older = False

    def append(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def needs_older(self, threshold: int) -> bool:
        return (
            self.has_more_history
            and not self.fetching_older
            and bool(self.entries)
            and self.scroll_offset <= threshold
        )

    def scroll_by(self, delta: int, viewport: int) -> None:
        top = self.max_offset(viewport)
        if self.is_at_bottom:
            self.scroll_offset = top
        offset = min(max(self.scroll_offset + delta, 0), top)
        self.scroll_offset = offset
        self.is_at_bottom = offset >= top

    def scroll_to_top(self) -> None:
        self.scroll_offset = 0
        self.is_at_bottom = False

    def scroll_to_bottom(self, viewport: int) -> None:
        self.scroll_offset = self.max_offset(viewport)
        self.is_at_bottom = True

    def close(self) -> None:
        for task in (self.tail_task, self.older_task):
            if task is not None and not task.done():
                task.cancel()
        self.tail_task = None
        self.older_task = None


def paginate_backwards(fetch_window: FetchWindow, oldest: datetime, newest: datetime,
                       created: Optional[datetime] = None,
                       batch_size: int = DEFAULT_BATCH_SIZE,
                       window_buffer: float = DEFAULT_WINDOW_BUFFER,
                       fallback_window: float = DEFAULT_FALLBACK_WINDOW,
                       max_widenings: int = DEFAULT_MAX_WIDENINGS) -> Tuple[List[LogEntry], bool]:
    """
    Find the page of log entries preceding `oldest`.

    Args:
        fetch_window: blocking callable returning entries in [start, end)
        oldest: timestamp of the oldest loaded entry; the page ends before it
        newest: newest timestamp of the most recently loaded batch; the span
            from `oldest` to it is the density sample for the first window
        created: container creation time; nothing older can exist
        batch_size: target page size

    Returns:
        (entries oldest first, has_more_history)
    """
    span = (newest - oldest).total_seconds()
    window = span * window_buffer if span > 0 else fallback_window
    widenings = 0

    while True:
        start = oldest - timedelta(seconds=window)
        final = False
        if created is not None and start <= created:
            start = created
            final = True
        elif created is None and widenings >= max_widenings:
            final = True

        logger.debug(f"Fetching logs in window {start.isoformat()} .. {oldest.isoformat()} "
                     f"({window:.0f}s, final={final})")
        entries = [e for e in fetch_window(start, oldest) if e.timestamp < oldest]

        if final:
            return entries, False
        if len(entries) >= batch_size:
            return entries[-batch_size:], True

        window *= 2
        widenings += 1


async def stream_container_logs(backend: DockerBackend, key: ContainerKey,
                                channel: EventChannel,
                                tail_lines: int = DEFAULT_TAIL_LINES,
                                generation: int = 0) -> None:
    """Live-tail task for one container: history batch, then follow mode."""
    container_id = key.container_id
    try:
        lines = await asyncio.to_thread(backend.fetch_logs, container_id, tail_lines)
    except DOCKER_ERRORS as e:
        logger.warning(f"Fetching logs for {key} failed: {e}")
        return

    entries = parse_log_lines(lines)
    await channel.send(LogBatchPrepend(key, entries, len(lines) >= tail_lines, generation))

    last_timestamp = entries[-1].timestamp if entries else None
    if last_timestamp is not None:
        since, tail = last_timestamp.timestamp(), None
    else:
        since, tail = None, 0

    try:
        stream = await asyncio.to_thread(backend.follow_logs, container_id, since, tail)
    except DOCKER_ERRORS as e:
        logger.warning(f"Following logs for {key} failed: {e}")
        return

    buffer = b""
    try:
        async for chunk in iter_stream(stream, name=f"logs:{key}"):
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            buffer += chunk
            *complete, buffer = buffer.split(b"\n")
            for raw in complete:
                entry = LogEntry.parse(raw.decode("utf-8", errors="replace"))
                if entry is None:
                    continue
                # `since` is inclusive; skip what the history batch already had
                if last_timestamp is not None and entry.timestamp <= last_timestamp:
                    continue
                await channel.send(LogLine(key, entry, generation))
    except DOCKER_ERRORS as e:
        logger.warning(f"Log stream for {key} failed: {e}")
    else:
        logger.debug(f"Log stream for {key} ended")
    finally:
        await asyncio.to_thread(close_stream, stream)


async def fetch_older_logs(backend: DockerBackend, key: ContainerKey, channel: EventChannel,
                           oldest: datetime, newest: datetime, created: Optional[datetime],
                           batch_size: int = DEFAULT_BATCH_SIZE,
                           window_buffer: float = DEFAULT_WINDOW_BUFFER,
                           fallback_window: float = DEFAULT_FALLBACK_WINDOW,
                           max_widenings: int = DEFAULT_MAX_WIDENINGS,
                           generation: int = 0) -> None:
    """Pagination task: one LogBatchPrepend, or OlderLogsFailed."""
    def fetch_window(start: datetime, end: datetime) -> List[LogEntry]:
        lines = backend.fetch_logs(key.container_id, since=start.timestamp(), until=end.timestamp())
        return parse_log_lines(lines)

    try:
        entries, has_more = await asyncio.to_thread(
            paginate_backwards, fetch_window, oldest, newest, created,
            batch_size, window_buffer, fallback_window, max_widenings,
        )
    except DOCKER_ERRORS as e:
        logger.warning(f"Fetching older logs for {key} failed: {e}")
        await channel.send(OlderLogsFailed(key, str(e), generation))
        return

    logger.debug(f"Loaded {len(entries)} older log lines for {key} (more={has_more})")
    await channel.send(LogBatchPrepend(key, entries, has_more, generation))


class LogStreamer:
    """Spawns log tasks on behalf of the state machine."""

    def __init__(self, channel: EventChannel, tail_lines: int = DEFAULT_TAIL_LINES,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 window_buffer: float = DEFAULT_WINDOW_BUFFER,
                 fallback_window: float = DEFAULT_FALLBACK_WINDOW,
                 max_widenings: int = DEFAULT_MAX_WIDENINGS):
        self.channel = channel
        self.tail_lines = tail_lines
        self.batch_size = batch_size
        self.window_buffer = window_buffer
        self.fallback_window = fallback_window
        self.max_widenings = max_widenings

    def start_tail(self, backend: DockerBackend, key: ContainerKey,
                   generation: int = 0) -> asyncio.Task:
        return asyncio.create_task(
            stream_container_logs(backend, key, self.channel, self.tail_lines, generation),
            name=f"logs:{key}",
        )

    def fetch_older(self, backend: DockerBackend, key: ContainerKey, oldest: datetime,
                    newest: datetime, created: Optional[datetime],
                    generation: int = 0) -> asyncio.Task:
        return asyncio.create_task(
            fetch_older_logs(
                backend, key, self.channel, oldest, newest, created,
                self.batch_size, self.window_buffer, self.fallback_window, self.max_widenings,
                generation,
            ),
            name=f"older-logs:{key}",
        )
