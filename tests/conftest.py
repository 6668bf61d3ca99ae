from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from dockertop.model import Container, ContainerState, ContainerStats, LogEntry
from dockertop.state import AppState

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_container():
    def factory(id="c1", name=None, host="local", state=ContainerState.RUNNING,
                created=BASE_TIME, cpu=0.0, memory=0.0, health=None, viewer_url=None):
        return Container(
            id=id,
            name=name or f"name-{id}",
            state=state,
            host_id=host,
            health=health,
            created=created,
            stats=ContainerStats(cpu=cpu, memory=memory),
            viewer_url=viewer_url,
        )
    return factory


@pytest.fixture
def make_entries():
    def factory(count, start=BASE_TIME, step=1.0, prefix="line"):
        return [
            LogEntry(start + timedelta(seconds=i * step), f"{prefix} {i}")
            for i in range(count)
        ]
    return factory


@pytest.fixture
def clock():
    return MagicMock(return_value=100.0)


@pytest.fixture
def app_state(clock):
    return AppState(
        log_streamer=MagicMock(),
        action_executor=MagicMock(),
        url_opener=MagicMock(),
        is_ssh_session=False,
        clock=clock,
    )


@pytest.fixture
def backend():
    mock = MagicMock()
    mock.host_id = "local"
    return mock
