"""
Container lifecycle actions (start, stop, restart, remove).

Actions are fire-and-forget: the state machine hands a request to the
ActionExecutor, which runs it as a background task and reports progress
through the event channel (ActionInProgress, then ActionSuccess or
ActionError). Container state is never changed from here; the lifecycle
monitor picks up the resulting start/die/destroy events from the daemon.
"""

import asyncio
import logging
from typing import Set

from .backend import DEFAULT_ACTION_TIMEOUT, DockerBackend
from .events import ActionError, ActionInProgress, ActionSuccess, EventChannel
from .model import ContainerAction, ContainerKey

logger = logging.getLogger(__name__)


def run_action(backend: DockerBackend, container_id: str, action: ContainerAction,
               timeout: int = DEFAULT_ACTION_TIMEOUT) -> None:
    """Blocking call of the daemon operation behind an action."""
    if action is ContainerAction.START:
        backend.start_container(container_id)
    elif action is ContainerAction.STOP:
        backend.stop_container(container_id, timeout=timeout)
    elif action is ContainerAction.RESTART:
        backend.restart_container(container_id, timeout=timeout)
    elif action is ContainerAction.REMOVE:
        backend.remove_container(container_id)
    else:
        raise ValueError(f"Unsupported action: {action}")


async def execute_container_action(backend: DockerBackend, key: ContainerKey,
                                   action: ContainerAction, channel: EventChannel,
                                   timeout: int = DEFAULT_ACTION_TIMEOUT) -> None:
    await channel.send(ActionInProgress(key, action))
    logger.info(f"Running {action.value} on {key}")
    try:
        await asyncio.to_thread(run_action, backend, key.container_id, action, timeout)
    except Exception as e:
        logger.error(f"Action {action.value} on {key} failed: {e}", exc_info=True)
        await channel.send(ActionError(key, action, f"Failed to {action.value} container: {e}"))
        return
    await channel.send(ActionSuccess(key, action))


class ActionExecutor:
    """Dispatches actions as background tasks and keeps them referenced until done."""

    def __init__(self, channel: EventChannel, timeout: int = DEFAULT_ACTION_TIMEOUT):
        self.channel = channel
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, backend: DockerBackend, key: ContainerKey,
                 action: ContainerAction) -> asyncio.Task:
        task = asyncio.create_task(
            execute_container_action(backend, key, action, self.channel, self.timeout),
            name=f"action:{action.value}:{key}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
