"""
Docker daemon adapter.

This module wraps docker-py for a single connected host. It hides the daemon
payload formats from the rest of dockertop and exposes exactly the operations
the monitor, the log streamer and the action executor need:
  - Connecting to a host spec (local, ssh://, tcp://, tls://)
  - Listing and inspecting containers
  - Subscribing to the container event stream
  - Sampling container statistics
  - Fetching and following logs (always with timestamps)
  - Lifecycle actions (start, stop, restart, remove)

All methods are blocking. Short calls go through asyncio.to_thread; the
long-lived event and log streams are read with iter_stream(), one daemon
thread per stream, so a quiet stream never ties up the default executor.

Key Classes:
  - DockerBackend: one docker.DockerClient bound to one host id

Error Handling:
  - DOCKER_ERRORS is the tuple of exceptions a daemon call can raise
    (API errors, transport errors, broken sockets)
  - docker_safe(): best-effort lookups log the failure and return a default
  - HostSpecError: unknown host spec format
  - NoHostsConnectedError: raised at startup when no host could be reached

Dependencies:
  - docker[ssh]>=7.0.0 (docker-py client, paramiko for ssh://)
  - requests, urllib3 (transport exceptions raised by docker-py)
"""

import asyncio
import functools
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException
from urllib3.exceptions import HTTPError as Urllib3Error

from .model import (
    Container,
    ContainerState,
    HealthStatus,
    parse_timestamp,
    truncate_id,
)

logger = logging.getLogger(__name__)

# urllib3 errors (ProtocolError on a dropped connection) surface unwrapped
# from docker-py streams that read response.raw directly
DOCKER_ERRORS = (DockerException, RequestException, Urllib3Error, OSError)

DEFAULT_CLIENT_TIMEOUT = 120
DEFAULT_ACTION_TIMEOUT = 10

SUPPORTED_SCHEMES = ("ssh://", "tcp://", "tls://", "unix://")


class HostSpecError(ValueError):
    """The host string is not one of local, ssh://, tcp://, tls:// or unix://."""


class NoHostsConnectedError(Exception):
    """No configured host could be reached at startup."""


def docker_safe(default_return: Any = None) -> Callable:
    """
    Decorator for Docker API methods that ensures safe error handling.

    Catches exceptions, logs them, and returns a default value so a single
    failed lookup never takes down the task that asked for it.

    Args:
        default_return: Value to return if exception occurs ([], {}, None, etc.)

    Usage:
        @docker_safe(default_return=None)
        def inspect_container(self, container_id: str) -> Optional[Container]:
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Docker operation failed in {func.__name__}: {e}", exc_info=True)
                return default_return
        return wrapper
    return decorator


def create_host_id(spec: str) -> str:
    """
    Short identifier for a host spec.

    "local" stays "local", URLs collapse to their host name
    ("ssh://root@10.0.0.5:2222" -> "10.0.0.5"), anything else is used as is.
    """
    if spec == "local":
        return "local"
    parsed = urlparse(spec)
    if parsed.scheme and parsed.hostname:
        return parsed.hostname
    return spec


def resolve_cert_path(cert_path: Optional[str] = None) -> Path:
    if cert_path:
        return Path(cert_path).expanduser()
    env_path = os.environ.get("DOCKER_CERT_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".docker"


def create_client(spec: str, cert_path: Optional[str] = None,
                  timeout: int = DEFAULT_CLIENT_TIMEOUT) -> docker.DockerClient:
    """Build (but do not ping) a docker-py client for a host spec."""
    if spec == "local":
        return docker.from_env(timeout=timeout)

    if spec.startswith("tls://"):
        cert_dir = resolve_cert_path(cert_path)
        tls_config = docker.tls.TLSConfig(
            client_cert=(str(cert_dir / "cert.pem"), str(cert_dir / "key.pem")),
            ca_cert=str(cert_dir / "ca.pem"),
            verify=True,
        )
        base_url = "tcp://" + spec[len("tls://"):]
        return docker.DockerClient(base_url=base_url, tls=tls_config, timeout=timeout)

    if spec.startswith(SUPPORTED_SCHEMES):
        return docker.DockerClient(base_url=spec, timeout=timeout)

    raise HostSpecError(
        f"Invalid host format: '{spec}'. Use 'local', 'ssh://user@host[:port]', "
        f"'tcp://host:port' or 'tls://host:port'"
    )


def _created_from_unix(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def container_from_summary(summary: Dict[str, Any], host_id: str,
                           viewer_url: Optional[str] = None) -> Container:
    """Map one entry of GET /containers/json to a Container."""
    container_id = truncate_id(summary.get("Id", ""))
    names = summary.get("Names") or []
    name = names[0].lstrip("/") if names else container_id
    return Container(
        id=container_id,
        name=name,
        state=ContainerState.parse(summary.get("State")),
        health=HealthStatus.parse(summary.get("Status")),
        created=_created_from_unix(summary.get("Created")),
        host_id=host_id,
        viewer_url=viewer_url,
    )


def container_from_inspect(attrs: Dict[str, Any], host_id: str,
                           viewer_url: Optional[str] = None) -> Container:
    """Map GET /containers/{id}/json to a Container."""
    container_id = truncate_id(attrs.get("Id", ""))
    state = attrs.get("State") or {}
    health = state.get("Health") or {}
    name = (attrs.get("Name") or "").lstrip("/") or container_id
    return Container(
        id=container_id,
        name=name,
        state=ContainerState.parse(state.get("Status")),
        health=HealthStatus.parse(health.get("Status")),
        created=parse_timestamp(attrs.get("Created")),
        host_id=host_id,
        viewer_url=viewer_url,
    )


def close_stream(stream: Any) -> None:
    """Close a docker-py stream, unblocking any thread reading from it."""
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except (AttributeError,) + DOCKER_ERRORS as e:
        logger.debug(f"Closing stream failed: {e}")


_STREAM_END = object()


async def iter_stream(stream: Any, name: str = "docker-stream") -> AsyncIterator[Any]:
    """
    Iterate a blocking docker-py stream from the event loop.

    The stream is read on its own daemon thread, so an idle stream never
    holds a worker of the default executor. Items are handed to the loop with
    call_soon_threadsafe; a read error is raised from the iterator after the
    items that preceded it. Close the stream to stop the reader thread.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def deliver(item: Any, error: Optional[BaseException] = None) -> bool:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, (item, error))
        except RuntimeError:
            # Event loop already closed
            return False
        return True

    def reader() -> None:
        try:
            for item in stream:
                if not deliver(item):
                    return
        except Exception as e:
            deliver(_STREAM_END, e)
            return
        deliver(_STREAM_END)

    threading.Thread(target=reader, name=name, daemon=True).start()
    while True:
        item, error = await queue.get()
        if item is _STREAM_END:
            if error is not None:
                raise error
            return
        yield item


def _positive(value: Optional[float]) -> Optional[float]:
    # docker-py rejects since/until values that are not strictly positive
    if value is None or value <= 0:
        return None
    return float(value)


class DockerBackend:
    """One Docker daemon, addressed by its host id."""

    def __init__(self, host_id: str, client: docker.DockerClient,
                 viewer_url: Optional[str] = None, spec: Optional[str] = None):
        self.host_id = host_id
        self.client = client
        self.viewer_url = viewer_url
        self.spec = spec or host_id

    def __repr__(self) -> str:
        return f"DockerBackend(host_id={self.host_id!r}, spec={self.spec!r})"

    @classmethod
    def connect(cls, spec: str, host_id: Optional[str] = None,
                viewer_url: Optional[str] = None, cert_path: Optional[str] = None,
                timeout: int = DEFAULT_CLIENT_TIMEOUT) -> "DockerBackend":
        client = create_client(spec, cert_path=cert_path, timeout=timeout)
        return cls(host_id or create_host_id(spec), client, viewer_url=viewer_url, spec=spec)

    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        try:
            self.client.close()
        except DOCKER_ERRORS as e:
            logger.debug(f"Closing client for {self.host_id} failed: {e}")

    # --- Containers ---

    def list_containers(self, all: bool = True) -> List[Container]:
        summaries = self.client.api.containers(all=all)
        return [container_from_summary(s, self.host_id, self.viewer_url) for s in summaries]

    @docker_safe(default_return=None)
    def inspect_container(self, container_id: str) -> Optional[Container]:
        attrs = self.client.api.inspect_container(container_id)
        return container_from_inspect(attrs, self.host_id, self.viewer_url)

    def events(self, filters: Optional[Dict[str, Any]] = None):
        """
        Subscribe to daemon events.

        Returns docker-py's CancellableStream of decoded event dicts; call
        close() on it to unblock a reader.
        """
        return self.client.events(decode=True, filters=filters or {})

    def container_stats(self, container_id: str) -> Dict[str, Any]:
        """One raw stats sample (includes precpu_stats for the CPU delta)."""
        return self.client.api.stats(container_id, stream=False)

    # --- Logs ---

    def fetch_logs(self, container_id: str, tail: Optional[int] = None,
                   since: Optional[float] = None, until: Optional[float] = None) -> List[str]:
        """
        Timestamped log lines, oldest first.

        `tail` limits the result to the most recent N lines; `since`/`until`
        bound it by unix time (fractional seconds are honoured).
        """
        raw = self.client.api.logs(
            container_id,
            stdout=True,
            stderr=True,
            timestamps=True,
            tail="all" if tail is None else tail,
            since=_positive(since),
            until=_positive(until),
        )
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw.splitlines()

    def follow_logs(self, container_id: str, since: Optional[float] = None,
                    tail: Optional[int] = None) -> Iterator[bytes]:
        """Live log stream as raw byte chunks (not necessarily whole lines)."""
        return self.client.api.logs(
            container_id,
            stdout=True,
            stderr=True,
            timestamps=True,
            stream=True,
            follow=True,
            tail="all" if tail is None else tail,
            since=_positive(since),
        )

    # --- Actions ---

    def start_container(self, container_id: str) -> None:
        self.client.api.start(container_id)

    def stop_container(self, container_id: str, timeout: int = DEFAULT_ACTION_TIMEOUT) -> None:
        self.client.api.stop(container_id, timeout=timeout)

    def restart_container(self, container_id: str, timeout: int = DEFAULT_ACTION_TIMEOUT) -> None:
        self.client.api.restart(container_id, timeout=timeout)

    def remove_container(self, container_id: str) -> None:
        # Force so running containers can be removed; volumes are kept
        self.client.api.remove_container(container_id, v=False, force=True)
