import pytest

from dockertop.model import ContainerState, ContainerStats
from dockertop.stats import (
    StatsCalculator,
    calculate_cpu_percent,
    calculate_memory_percent,
    network_totals,
    summarize,
)


def sample(rx=0, tx=0):
    return {
        "cpu_stats": {"cpu_usage": {"total_usage": 400, "percpu_usage": [1, 1, 1, 1]},
                      "system_cpu_usage": 10_000},
        "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 8_000},
        "memory_stats": {"usage": 300, "limit": 1000, "stats": {"inactive_file": 100}},
        "networks": {"eth0": {"rx_bytes": rx, "tx_bytes": tx},
                     "eth1": {"rx_bytes": rx, "tx_bytes": tx}},
    }


def test_cpu_percent_uses_percpu_count_when_online_cpus_missing():
    assert calculate_cpu_percent(sample()) == pytest.approx(40.0)


def test_cpu_percent_zero_without_delta():
    assert calculate_cpu_percent({"cpu_stats": {}, "precpu_stats": {}}) == 0.0


def test_memory_percent_excludes_cache():
    assert calculate_memory_percent(sample()) == pytest.approx(20.0)
    assert calculate_memory_percent({"memory_stats": {"usage": 10}}) == 0.0

    cgroup_v1 = {"memory_stats": {"usage": 500, "limit": 1000, "stats": {"cache": 250}}}
    assert calculate_memory_percent(cgroup_v1) == pytest.approx(25.0)


def test_network_totals_sum_interfaces():
    assert network_totals(sample(rx=10, tx=5)) == (20, 10)
    assert network_totals({}) == (0, 0)


def test_network_rates_from_consecutive_samples():
    times = iter([100.0, 102.0, 103.0])
    calculator = StatsCalculator(clock=lambda: next(times))

    first = calculator.calculate(sample(rx=1000, tx=500))
    second = calculator.calculate(sample(rx=3000, tx=1500))
    after_restart = calculator.calculate(sample(rx=10, tx=10))

    assert first.network_rx_bytes_per_sec == 0.0
    assert second.network_rx_bytes_per_sec == pytest.approx(2000.0)
    assert second.network_tx_bytes_per_sec == pytest.approx(1000.0)
    assert after_restart.network_rx_bytes_per_sec == 0.0


def test_summarize(make_container):
    containers = [
        make_container("a", cpu=10.0, memory=20.0),
        make_container("b", cpu=30.0, memory=40.0),
        make_container("c", state=ContainerState.EXITED, cpu=99.0),
    ]

    summary = summarize(containers)

    assert summary["total"] == 3
    assert summary["running"] == 2
    assert summary["stopped"] == 1
    assert summary["total_cpu"] == pytest.approx(40.0)
    assert summary["avg_memory"] == pytest.approx(30.0)


def test_summarize_empty():
    assert summarize([])["avg_cpu"] == 0.0
    assert ContainerStats().cpu == 0.0
