"""Shared fakes for monitor tests."""

import asyncio

import pytest

from probe import Config, LatencyConfig, ThroughputConfig, ThroughputResult
from store import CsvLog


class FakeLatencyProbe:
    """Returns a fixed value, or raises the given exception."""

    def __init__(self, value=12.3, error=None):
        self.value = value
        self.error = error
        self.calls = 0

    async def measure(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.value


class FakeThroughputProbe:
    """Returns a fixed result after `delay` seconds, or raises the given exception."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result or ThroughputResult(upload=1250000.0, download=6250000.0,
                                                 human_upload=10.0, human_download=50.0)
        self.error = error
        self.delay = delay
        self.calls = 0
        self.finished = 0

    async def measure(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        self.finished += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fast_config(tmp_path):
    return Config(
        tick_secs=0.01,
        cycle_ticks=60,
        start_delay_secs=0,
        step_delay_secs=0,
        log_path=str(tmp_path / "netpulse.csv"),
        latency=LatencyConfig(),
        throughput=ThroughputConfig(deadline_secs=0.2),
    )


@pytest.fixture
def csv_log(fast_config):
    return CsvLog(fast_config.log_path)
