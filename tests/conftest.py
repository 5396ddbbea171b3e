"""
Fleet Safety Test Configuration
===============================

Shared fixtures. Time is driven by a manual clock so bond timeouts and
loop rates are deterministic.
"""

import sys
from pathlib import Path
from typing import Callable, List, Sequence

import pytest

# Add repo root for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleet_safety.arbiter import Arbiter
from fleet_safety.channel import BroadcastChannel, SAFETY_TOPIC
from fleet_safety.config import MonitorConfig
from fleet_safety.link import NodeLink


class ManualClock:
    """Clock that only moves when told to; sleep() advances it."""

    def __init__(self, start: float = 1000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.t += seconds

    def advance(self, seconds: float) -> None:
        self.t += seconds


def _pump(channel: BroadcastChannel, seconds: float, step: float = 0.05) -> None:
    """Advance the clock in small steps, spinning the channel each time."""
    steps = int(round(seconds / step))
    for _ in range(steps):
        channel.clock.advance(step)
        channel.spin_once()


class Fleet:
    """Arbiter plus one node-side link per id, all on one channel."""

    def __init__(self, channel: BroadcastChannel, config: MonitorConfig,
                 never_start: Sequence[str] = ()):
        self.channel = channel
        self.config = config
        self.nodes = {
            bond_id: NodeLink(
                channel, bond_id,
                heartbeat_period=config.heartbeat_period,
                heartbeat_timeout=config.heartbeat_timeout,
                connect_timeout=config.connect_timeout,
            )
            for bond_id in config.bond_ids
        }
        for bond_id, node in self.nodes.items():
            if bond_id not in never_start:
                node.start()

        self.arbiter = Arbiter(config, channel)
        self.broadcasts: List[str] = []
        channel.subscribe(SAFETY_TOPIC, self.broadcasts.append)

    def cycle(self):
        """One arbiter cycle followed by one loop period of sleep."""
        result = self.arbiter.step()
        self.channel.sleep(self.config.loop_period)
        return result

    def run_for(self, seconds: float):
        results = []
        cycles = int(round(seconds * self.config.loop_frequency_hz))
        for _ in range(cycles):
            results.append(self.cycle())
        return results


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def channel(clock):
    return BroadcastChannel(clock=clock)


@pytest.fixture
def pump(channel):
    """pump(seconds): advance time while spinning the shared channel."""
    def _run(seconds: float, step: float = 0.05) -> None:
        _pump(channel, seconds, step)
    return _run


@pytest.fixture
def make_config() -> Callable[..., MonitorConfig]:
    def _make(bond_ids: Sequence[str] = ("A", "B", "C"), **kwargs) -> MonitorConfig:
        kwargs.setdefault("connect_timeout", 1.0)
        return MonitorConfig(bond_ids=tuple(bond_ids), **kwargs).validate()
    return _make


@pytest.fixture
def make_fleet(channel, make_config) -> Callable[..., Fleet]:
    def _make(bond_ids: Sequence[str] = ("A", "B", "C"),
              never_start: Sequence[str] = (),
              start: bool = True,
              **kwargs) -> Fleet:
        fleet = Fleet(channel, make_config(bond_ids, **kwargs), never_start=never_start)
        if start:
            fleet.arbiter.start()
        return fleet
    return _make
