import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import pytest
from docker.errors import APIError, DockerException
from urllib3.exceptions import ProtocolError

from dockertop.actions import execute_container_action
from dockertop.backend import HostSpecError, NoHostsConnectedError
from dockertop.config import HostConfig
from dockertop.events import (
    ActionInProgress,
    ActionSuccess,
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
from dockertop.model import ContainerAction, ContainerKey, ContainerState, HealthStatus
from dockertop.monitor import (
    ContainerMonitor,
    HostConnectionManager,
    health_from_event,
    stream_container_stats,
)

FULL_ID = "abcdef1234567890abcdef"
KEY = ContainerKey("local", "abcdef123456")


def drain(channel):
    events = []
    while True:
        event = channel.try_recv()
        if event is None:
            return events
        events.append(event)


def docker_event(action, attributes=None):
    return {"Type": "container", "Action": action,
            "Actor": {"ID": FULL_ID, "Attributes": attributes or {}}}


async def forever():
    await asyncio.sleep(3600)


@pytest.fixture
def monitor(backend):
    return ContainerMonitor(backend, EventChannel(), stats_interval=0, retry_delay=0)


def test_health_from_event():
    assert health_from_event(docker_event("health_status: healthy")) is HealthStatus.HEALTHY
    assert health_from_event(
        docker_event("health_status", {"health_status": "unhealthy"})) is HealthStatus.UNHEALTHY
    assert health_from_event(docker_event("health_status")) is None


@pytest.mark.asyncio
async def test_initial_list_then_stats_for_running_only(monitor, backend, make_container, mocker):
    running = make_container("run")
    stopped = make_container("stop", state=ContainerState.EXITED)
    backend.list_containers.return_value = [running, stopped]
    start_stats = mocker.patch.object(monitor, "start_stats")

    await monitor.fetch_initial_containers()

    events = drain(monitor.channel)
    assert len(events) == 1
    assert isinstance(events[0], InitialContainerList)
    assert events[0].containers == [running, stopped]
    start_stats.assert_called_once_with(running.key)


@pytest.mark.asyncio
async def test_empty_host_sends_nothing(monitor, backend):
    backend.list_containers.return_value = []
    await monitor.fetch_initial_containers()
    assert drain(monitor.channel) == []


@pytest.mark.asyncio
async def test_start_event_inspects_and_starts_stats(monitor, backend, make_container, mocker):
    container = make_container("abcdef123456")
    backend.inspect_container.return_value = container
    start_stats = mocker.patch.object(monitor, "start_stats")

    await monitor.handle_docker_event(docker_event("start"))

    backend.inspect_container.assert_called_once_with(FULL_ID)
    assert drain(monitor.channel) == [ContainerCreated(container)]
    start_stats.assert_called_once_with(KEY)


@pytest.mark.asyncio
async def test_start_event_for_tracked_container_is_ignored(monitor, backend):
    monitor.stat_tasks.start(KEY, forever())

    await monitor.handle_docker_event(docker_event("start"))

    backend.inspect_container.assert_not_called()
    assert drain(monitor.channel) == []
    monitor.shutdown()


@pytest.mark.asyncio
async def test_die_then_stop_destroys_once(monitor):
    monitor.stat_tasks.start(KEY, forever())

    await monitor.handle_docker_event(docker_event("die"))
    await monitor.handle_docker_event(docker_event("stop"))

    assert drain(monitor.channel) == [ContainerDestroyed(KEY)]
    assert KEY not in monitor.stat_tasks


@pytest.mark.asyncio
async def test_destroy_always_reported(monitor):
    await monitor.handle_docker_event(docker_event("destroy"))
    assert drain(monitor.channel) == [ContainerDestroyed(KEY)]


@pytest.mark.asyncio
async def test_pause_and_unpause(monitor):
    await monitor.handle_docker_event(docker_event("pause"))
    await monitor.handle_docker_event(docker_event("unpause"))
    assert drain(monitor.channel) == [
        ContainerStateChanged(KEY, ContainerState.PAUSED),
        ContainerStateChanged(KEY, ContainerState.RUNNING),
    ]


@pytest.mark.asyncio
async def test_health_event_falls_back_to_inspect(monitor, backend, make_container):
    backend.inspect_container.return_value = make_container(
        "abcdef123456", health=HealthStatus.STARTING)

    await monitor.handle_docker_event(docker_event("health_status"))

    assert drain(monitor.channel) == [ContainerHealthChanged(KEY, HealthStatus.STARTING)]


@pytest.mark.asyncio
async def test_event_without_id_is_ignored(monitor):
    await monitor.handle_docker_event({"Action": "start", "Actor": {}})
    assert drain(monitor.channel) == []


@pytest.mark.asyncio
async def test_event_stream_resubscribes_after_end(monitor, backend):
    calls = []

    def subscribe(filters):
        calls.append(filters)
        if len(calls) == 1:
            return iter([docker_event("destroy")])
        if len(calls) == 2:
            raise APIError("daemon restarting")
        monitor.shutdown()
        return iter([])

    backend.events.side_effect = subscribe

    await asyncio.wait_for(monitor.monitor_events(), 1)

    assert len(calls) == 3
    assert calls[0]["event"][0] == "start"
    assert drain(monitor.channel) == [ContainerDestroyed(KEY)]


class DroppedStream:
    """Yields events, then fails the way urllib3 does when the socket resets."""

    def __init__(self, events):
        self._events = iter(events)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        for event in self._events:
            return event
        raise ProtocolError("Connection broken: ConnectionResetError(104)")

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_event_stream_resubscribes_after_read_error(monitor, backend):
    dropped = DroppedStream([docker_event("destroy")])
    calls = []

    def subscribe(filters):
        calls.append(filters)
        if len(calls) == 1:
            return dropped
        monitor.shutdown()
        return iter([])

    backend.events.side_effect = subscribe

    await asyncio.wait_for(monitor.monitor_events(), 1)

    assert len(calls) == 2
    assert dropped.closed
    assert drain(monitor.channel) == [ContainerDestroyed(KEY)]


class QuietStream:
    def __init__(self):
        self.closed = threading.Event()

    def __iter__(self):
        return self

    def __next__(self):
        self.closed.wait(5)
        raise StopIteration

    def close(self):
        self.closed.set()


@pytest.mark.asyncio
async def test_quiet_hosts_do_not_starve_actions():
    executor = ThreadPoolExecutor(max_workers=2)
    asyncio.get_running_loop().set_default_executor(executor)
    channel = EventChannel()
    monitors, streams = [], []
    for index in range(5):
        quiet = MagicMock()
        quiet.host_id = f"host{index}"
        stream = QuietStream()
        quiet.events.return_value = stream
        streams.append(stream)
        monitors.append(ContainerMonitor(quiet, channel, retry_delay=0))
    tasks = [asyncio.create_task(m.monitor_events()) for m in monitors]
    await asyncio.sleep(0.05)

    target = MagicMock()
    try:
        await asyncio.wait_for(
            execute_container_action(target, KEY, ContainerAction.START, channel), 1
        )
    finally:
        for monitor in monitors:
            monitor.shutdown()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    target.start_container.assert_called_once_with(KEY.container_id)
    assert drain(channel) == [
        ActionInProgress(KEY, ContainerAction.START),
        ActionSuccess(KEY, ContainerAction.START),
    ]
    assert all(stream.closed.is_set() for stream in streams)
    executor.shutdown(wait=False)


@pytest.mark.asyncio
async def test_stats_task_sends_samples_until_error(backend):
    channel = EventChannel()
    backend.container_stats.side_effect = [
        {"cpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 2000, "online_cpus": 2},
         "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
         "memory_stats": {"usage": 50, "limit": 100}},
        DockerException("container gone"),
    ]

    await asyncio.wait_for(stream_container_stats(backend, KEY, channel, interval=0), 1)

    events = drain(channel)
    assert len(events) == 1
    assert isinstance(events[0], ContainerStat)
    assert events[0].stats.cpu == pytest.approx(20.0)
    assert events[0].stats.memory == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_shutdown_cancels_stats_tasks(monitor):
    task = monitor.stat_tasks.start(KEY, forever())
    monitor.shutdown()
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()


# --- Host connections ---

def fake_backend(host_id):
    backend = MagicMock()
    backend.host_id = host_id
    backend.ping.return_value = True
    return backend


def fake_monitor(backend, channel):
    monitor = MagicMock()
    monitor.run = AsyncMock()
    return monitor


@pytest.mark.asyncio
async def test_first_success_wins_and_failures_are_reported():
    channel = EventChannel()
    good = fake_backend("local")

    def connector(spec, host_id, viewer_url, cert_path, timeout):
        if spec == "local":
            return good
        raise HostSpecError(f"Invalid host format: '{spec}'")

    manager = HostConnectionManager(
        [HostConfig("bogus"), HostConfig("local")], channel,
        connector=connector, monitor_factory=fake_monitor,
    )
    backends = await manager.start()
    await asyncio.gather(*manager.connect_tasks._tasks.values(), return_exceptions=True)

    assert backends == [good]
    events = drain(channel)
    assert HostConnected(good) in events
    errors = [e for e in events if isinstance(e, HostConnectionError)]
    assert [e.host_id for e in errors] == ["bogus"]
    assert "local" in manager.monitors

    await manager.aclose()
    good.close.assert_called_once()


@pytest.mark.asyncio
async def test_all_hosts_failing_is_fatal():
    channel = EventChannel()

    def connector(spec, host_id, viewer_url, cert_path, timeout):
        raise DockerException(f"cannot reach {spec}")

    manager = HostConnectionManager(
        [HostConfig("ssh://a"), HostConfig("ssh://b")], channel,
        connector=connector, monitor_factory=fake_monitor,
    )

    with pytest.raises(NoHostsConnectedError) as excinfo:
        await manager.start()

    assert "cannot reach ssh://a" in str(excinfo.value)
    assert "cannot reach ssh://b" in str(excinfo.value)
    assert len(drain(channel)) == 2


@pytest.mark.asyncio
async def test_ping_timeout_is_a_connection_error():
    channel = EventChannel()
    release = threading.Event()
    slow = fake_backend("slow")
    slow.ping.side_effect = lambda: release.wait(2)

    manager = HostConnectionManager(
        [HostConfig("tcp://slow:2375")], channel, ping_timeout=0.05,
        connector=lambda *args: slow, monitor_factory=fake_monitor,
    )
    try:
        with pytest.raises(NoHostsConnectedError):
            await manager.start()
    finally:
        release.set()

    events = drain(channel)
    assert isinstance(events[0], HostConnectionError)
    assert events[0].message.startswith("Ping timed out")
    slow.close.assert_called_once()


@pytest.mark.asyncio
async def test_no_host_within_deadline():
    channel = EventChannel()
    release = threading.Event()

    def connector(spec, *args):
        release.wait(2)
        return fake_backend("late")

    manager = HostConnectionManager(
        [HostConfig("ssh://late")], channel, connect_timeout=0.05,
        connector=connector, monitor_factory=fake_monitor,
    )
    try:
        with pytest.raises(NoHostsConnectedError, match="within"):
            await manager.start()
    finally:
        release.set()
    assert len(manager.connect_tasks) == 0
