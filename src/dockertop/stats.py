"""
Container resource statistics for dockertop.

This module turns raw Docker stats samples into the percentages and rates
shown in the container table, and aggregates them for the status bar.

Features:
- CPU percentage from the cpu/precpu delta (same formula as `docker stats`)
- Memory percentage excluding page cache
- Network RX/TX bytes per second from consecutive samples
- Status bar totals (running count, CPU and memory sums and averages)

Architecture:
- StatsCalculator: stateful per-container converter (remembers the last
  network counters and when they were read)
- summarize(): aggregation helper for the renderer
"""

import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .model import Container, ContainerStats


def calculate_cpu_percent(raw: Dict[str, Any]) -> float:
    cpu_stats = raw.get('cpu_stats') or {}
    precpu_stats = raw.get('precpu_stats') or {}
    cpu_usage = (cpu_stats.get('cpu_usage') or {}).get('total_usage', 0)
    precpu_usage = (precpu_stats.get('cpu_usage') or {}).get('total_usage', 0)
    system_cpu_usage = cpu_stats.get('system_cpu_usage', 0)
    presystem_cpu_usage = precpu_stats.get('system_cpu_usage', 0)
    online_cpus = cpu_stats.get('online_cpus') or len(
        (cpu_stats.get('cpu_usage') or {}).get('percpu_usage') or []
    ) or 1

    cpu_delta = cpu_usage - precpu_usage
    system_delta = system_cpu_usage - presystem_cpu_usage
    if system_delta > 0 and cpu_delta > 0:
        return (cpu_delta / system_delta) * online_cpus * 100.0
    return 0.0


def calculate_memory_percent(raw: Dict[str, Any]) -> float:
    memory_stats = raw.get('memory_stats') or {}
    usage = memory_stats.get('usage', 0)
    limit = memory_stats.get('limit', 0)
    if not limit:
        return 0.0
    details = memory_stats.get('stats') or {}
    # cgroup v2 reports inactive_file, v1 reports cache
    cache = details.get('inactive_file', details.get('cache', 0))
    used = max(usage - cache, 0)
    return used / limit * 100.0


def network_totals(raw: Dict[str, Any]) -> Tuple[int, int]:
    """Summed (rx_bytes, tx_bytes) over all interfaces."""
    rx = tx = 0
    for iface in (raw.get('networks') or {}).values():
        rx += iface.get('rx_bytes', 0)
        tx += iface.get('tx_bytes', 0)
    return rx, tx


class StatsCalculator:
    """Converts successive raw samples of one container into ContainerStats."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last_network: Optional[Tuple[int, int]] = None
        self._last_time: Optional[float] = None

    def calculate(self, raw: Dict[str, Any]) -> ContainerStats:
        now = self._clock()
        rx, tx = network_totals(raw)
        rx_rate = tx_rate = 0.0

        if self._last_network is not None and self._last_time is not None:
            elapsed = now - self._last_time
            last_rx, last_tx = self._last_network
            # Counters go backwards when a container restarts
            if elapsed > 0 and rx >= last_rx and tx >= last_tx:
                rx_rate = (rx - last_rx) / elapsed
                tx_rate = (tx - last_tx) / elapsed

        self._last_network = (rx, tx)
        self._last_time = now

        return ContainerStats(
            cpu=calculate_cpu_percent(raw),
            memory=calculate_memory_percent(raw),
            network_tx_bytes_per_sec=tx_rate,
            network_rx_bytes_per_sec=rx_rate,
        )


def summarize(containers: Iterable[Container]) -> Dict[str, Any]:
    """Aggregate figures for the status bar."""
    total = 0
    running = 0
    total_cpu = 0.0
    total_memory = 0.0
    for container in containers:
        total += 1
        if container.is_running:
            running += 1
            total_cpu += container.stats.cpu
            total_memory += container.stats.memory

    return {
        'total': total,
        'running': running,
        'stopped': total - running,
        'total_cpu': total_cpu,
        'total_memory': total_memory,
        'avg_cpu': total_cpu / running if running else 0.0,
        'avg_memory': total_memory / running if running else 0.0,
    }
