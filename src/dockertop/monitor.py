"""
Host connections and container lifecycle monitoring.

Architecture:
  - HostConnectionManager: connects every configured host concurrently and
    returns as soon as the first one answers a ping, so one unreachable host
    never delays startup. Slower hosts keep connecting in the background and
    join when ready. Each failure becomes a HostConnectionError event.
  - ContainerMonitor: one per connected host. Sends the initial container
    list, then follows the daemon's container event stream and keeps exactly
    one stats task per running container.
  - stream_container_stats(): the stats task itself (poll, convert, send).

Task Ownership:
  Stats tasks, connection attempts and monitors live in TaskSlots keyed by
  ContainerKey or host id. Stopping a container cancels and forgets its
  stats task before ContainerDestroyed is sent, so a container that is gone
  never gets another stats update from a live task.

Error Handling:
  - Connect/ping failures: per host, reported, never fatal on their own
  - NoHostsConnectedError: every host failed, or none answered in time
  - Event stream failures (read errors or a plain end of stream): wait
    `retry_delay` and subscribe again
  - Stats failures: the stats task ends
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .backend import (
    DEFAULT_CLIENT_TIMEOUT,
    DOCKER_ERRORS,
    DockerBackend,
    NoHostsConnectedError,
    close_stream,
    create_host_id,
    iter_stream,
)
from .events import (
    ContainerCreated,
    ContainerDestroyed,
    ContainerHealthChanged,
    ContainerStat,
    ContainerStateChanged,
    EventChannel,
    HostConnected,
    HostConnectionError,
    InitialContainerList,
)
from .model import ContainerKey, ContainerState, HealthStatus, truncate_id
from .stats import StatsCalculator
from .tasks import TaskSlots

logger = logging.getLogger(__name__)

DEFAULT_STATS_INTERVAL = 1.0
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_PING_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 30.0

MONITORED_EVENTS = ["start", "die", "stop", "health_status", "destroy", "pause", "unpause"]


async def stream_container_stats(backend: DockerBackend, key: ContainerKey,
                                 channel: EventChannel,
                                 interval: float = DEFAULT_STATS_INTERVAL) -> None:
    calculator = StatsCalculator()
    while True:
        try:
            raw = await asyncio.to_thread(backend.container_stats, key.container_id)
        except DOCKER_ERRORS as e:
            logger.debug(f"Stats stream for {key} ended: {e}")
            return
        await channel.send(ContainerStat(key, calculator.calculate(raw)))
        await asyncio.sleep(interval)


def health_from_event(event: Dict[str, Any]) -> Optional[HealthStatus]:
    """Health carried by a health_status event, if any."""
    actor = event.get("Actor") or {}
    attributes = actor.get("Attributes") or {}
    status = attributes.get("health_status") or attributes.get("HealthStatus")
    if status:
        return HealthStatus.parse(status)
    # The daemon reports "health_status: healthy" as the action itself
    action = event.get("Action") or event.get("status") or ""
    _, sep, suffix = action.partition(":")
    if sep:
        return HealthStatus.parse(suffix)
    return None


class ContainerMonitor:
    """Keeps the container table of one host in sync with its daemon."""

    def __init__(self, backend: DockerBackend, channel: EventChannel,
                 stats_interval: float = DEFAULT_STATS_INTERVAL,
                 retry_delay: float = DEFAULT_RETRY_DELAY):
        self.backend = backend
        self.channel = channel
        self.stats_interval = stats_interval
        self.retry_delay = retry_delay
        self.stat_tasks = TaskSlots(f"stats:{backend.host_id}")
        self._stopping = False

    @property
    def host_id(self) -> str:
        return self.backend.host_id

    async def run(self) -> None:
        try:
            await self.fetch_initial_containers()
            await self.monitor_events()
        finally:
            self.shutdown()

    def start_stats(self, key: ContainerKey) -> bool:
        task = self.stat_tasks.start(
            key, stream_container_stats(self.backend, key, self.channel, self.stats_interval)
        )
        return task is not None

    def stop_stats(self, key: ContainerKey) -> bool:
        return self.stat_tasks.cancel(key)

    async def fetch_initial_containers(self) -> None:
        try:
            containers = await asyncio.to_thread(self.backend.list_containers, True)
        except DOCKER_ERRORS as e:
            logger.error(f"Listing containers on {self.host_id} failed: {e}")
            return

        logger.info(f"Found {len(containers)} containers on {self.host_id}")
        if containers:
            await self.channel.send(InitialContainerList(self.host_id, containers))
        for container in containers:
            if container.is_running:
                self.start_stats(container.key)

    async def monitor_events(self) -> None:
        """Follow container events until shutdown, resubscribing after failures."""
        filters = {"type": ["container"], "event": MONITORED_EVENTS}
        while not self._stopping:
            try:
                stream = await asyncio.to_thread(self.backend.events, filters)
            except DOCKER_ERRORS as e:
                logger.warning(f"Subscribing to events on {self.host_id} failed: {e}")
                await asyncio.sleep(self.retry_delay)
                continue

            try:
                async for event in iter_stream(stream, name=f"events:{self.host_id}"):
                    await self.handle_docker_event(event)
            except DOCKER_ERRORS as e:
                logger.warning(f"Event stream on {self.host_id} failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in event stream on {self.host_id}: {e}",
                             exc_info=True)
            finally:
                await asyncio.to_thread(close_stream, stream)

            if self._stopping:
                break
            # docker-py turns dropped connections into a plain end of stream
            logger.info(f"Event stream on {self.host_id} ended, resubscribing")
            await asyncio.sleep(self.retry_delay)

    async def handle_docker_event(self, event: Dict[str, Any]) -> None:
        actor = event.get("Actor") or {}
        full_id = actor.get("ID") or event.get("id") or ""
        if not full_id:
            return
        action = event.get("Action") or event.get("status") or ""
        key = ContainerKey(self.host_id, truncate_id(full_id))
        logger.debug(f"Docker event {action!r} for {key}")

        if action == "start":
            await self.on_start(key, full_id)
        elif action in ("die", "stop"):
            await self.on_stop(key)
        elif action == "destroy":
            await self.on_destroy(key)
        elif action == "pause":
            await self.channel.send(ContainerStateChanged(key, ContainerState.PAUSED))
        elif action == "unpause":
            await self.channel.send(ContainerStateChanged(key, ContainerState.RUNNING))
        elif action.startswith("health_status"):
            await self.on_health_status(key, full_id, event)

    async def on_start(self, key: ContainerKey, full_id: str) -> None:
        if key in self.stat_tasks:
            return
        container = await asyncio.to_thread(self.backend.inspect_container, full_id)
        if container is None:
            return
        await self.channel.send(ContainerCreated(container))
        self.start_stats(key)

    async def on_stop(self, key: ContainerKey) -> None:
        # die and stop both arrive for one shutdown; only the first one counts
        if self.stop_stats(key):
            await self.channel.send(ContainerDestroyed(key))

    async def on_destroy(self, key: ContainerKey) -> None:
        self.stop_stats(key)
        await self.channel.send(ContainerDestroyed(key))

    async def on_health_status(self, key: ContainerKey, full_id: str,
                               event: Dict[str, Any]) -> None:
        health = health_from_event(event)
        if health is None:
            container = await asyncio.to_thread(self.backend.inspect_container, full_id)
            health = container.health if container is not None else None
        if health is not None:
            await self.channel.send(ContainerHealthChanged(key, health))

    def shutdown(self) -> None:
        self._stopping = True
        self.stat_tasks.cancel_all()


MonitorFactory = Callable[[DockerBackend, EventChannel], ContainerMonitor]


class HostConnectionManager:
    """Connects hosts concurrently and owns one ContainerMonitor per connected host."""

    def __init__(self, hosts: List[Any], channel: EventChannel,
                 cert_path: Optional[str] = None,
                 ping_timeout: float = DEFAULT_PING_TIMEOUT,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 client_timeout: int = DEFAULT_CLIENT_TIMEOUT,
                 connector: Optional[Callable[..., DockerBackend]] = None,
                 monitor_factory: Optional[MonitorFactory] = None):
        self.hosts = hosts
        self.channel = channel
        self.cert_path = cert_path
        self.ping_timeout = ping_timeout
        self.connect_timeout = connect_timeout
        self.client_timeout = client_timeout
        self.connector = connector or DockerBackend.connect
        self.monitor_factory = monitor_factory or ContainerMonitor
        self.backends: Dict[str, DockerBackend] = {}
        self.failures: Dict[str, str] = {}
        self.monitors: Dict[str, ContainerMonitor] = {}
        self.connect_tasks = TaskSlots("connect")
        self.monitor_tasks = TaskSlots("monitor")

    async def connect_host(self, spec: str, host_id: str,
                           viewer_url: Optional[str] = None) -> DockerBackend:
        backend = await asyncio.to_thread(
            self.connector, spec, host_id, viewer_url, self.cert_path, self.client_timeout
        )
        try:
            await asyncio.wait_for(asyncio.to_thread(backend.ping), self.ping_timeout)
        except asyncio.TimeoutError:
            backend.close()
            raise
        return backend

    async def _attempt(self, spec: str, host_id: str, viewer_url: Optional[str]) -> None:
        logger.info(f"Connecting to {spec}")
        try:
            backend = await self.connect_host(spec, host_id, viewer_url)
        except asyncio.TimeoutError:
            await self._fail(host_id, f"Ping timed out after {self.ping_timeout:.0f}s")
            return
        except Exception as e:
            await self._fail(host_id, str(e) or type(e).__name__)
            return

        logger.info(f"Connected to {spec} as {host_id}")
        self.backends[host_id] = backend
        self.failures.pop(host_id, None)
        await self.channel.send(HostConnected(backend))
        self.start_monitor(backend)

    async def _fail(self, host_id: str, message: str) -> None:
        logger.error(f"Failed to connect to {host_id}: {message}")
        self.failures[host_id] = message
        await self.channel.send(HostConnectionError(host_id, message))

    def start_monitor(self, backend: DockerBackend) -> ContainerMonitor:
        old = self.monitors.pop(backend.host_id, None)
        if old is not None:
            old.shutdown()
        monitor = self.monitor_factory(backend, self.channel)
        self.monitors[backend.host_id] = monitor
        self.monitor_tasks.replace(backend.host_id, monitor.run())
        return monitor

    async def start(self) -> List[DockerBackend]:
        """
        Connect every host and return once the first one is usable.

        Raises NoHostsConnectedError if all hosts fail, or if none has
        succeeded within `connect_timeout`.
        """
        loop = asyncio.get_running_loop()
        pending = set()
        for host in self.hosts:
            host_id = create_host_id(host.host)
            pending.add(self.connect_tasks.replace(
                host_id, self._attempt(host.host, host_id, host.viewer_url)
            ))

        deadline = loop.time() + self.connect_timeout
        while pending and not self.backends:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            _, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )

        if self.backends:
            return list(self.backends.values())

        self.connect_tasks.cancel_all()
        if pending:
            raise NoHostsConnectedError(
                f"No Docker host connected within {self.connect_timeout:.0f}s"
            )
        details = "; ".join(f"{host}: {msg}" for host, msg in self.failures.items())
        raise NoHostsConnectedError(f"Failed to connect to any Docker host ({details})")

    def shutdown(self) -> None:
        self.connect_tasks.cancel_all()
        for monitor in self.monitors.values():
            monitor.shutdown()
        self.monitor_tasks.cancel_all()

    async def aclose(self) -> None:
        """Cancel all tasks, wait for them and close the clients."""
        for monitor in self.monitors.values():
            monitor.shutdown()
        await self.connect_tasks.wait_closed()
        await self.monitor_tasks.wait_closed()
        for backend in self.backends.values():
            await asyncio.to_thread(backend.close)
