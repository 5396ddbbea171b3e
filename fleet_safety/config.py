"""
Monitor Configuration
=====================

Loads and validates the safety monitor configuration from YAML.

Example:

    bond_ids:          # priority order, most senior first
      - land_controller
      - hold_position
      - mission_planner
    heartbeat_period: 0.2
    heartbeat_timeout: 0.5
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from fleet_safety.bond import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HEARTBEAT_PERIOD,
    DEFAULT_HEARTBEAT_TIMEOUT,
)
from fleet_safety.channel import BOND_TOPIC, SAFETY_TOPIC
from fleet_safety.errors import ConfigurationError
from fleet_safety.link import DEFAULT_FORMATION_POLL
from fleet_safety.models.node import FATAL_MESSAGE

# The arbiter must poll at least this many times per heartbeat
MIN_POLLS_PER_HEARTBEAT = 3

FAULT_ACTIONS = ("report", "crash", "stop", "never_start")


@dataclass(frozen=True)
class FaultSpec:
    """A fault injected into a simulated node at a point in time."""
    at: float
    node: str
    action: str


@dataclass(frozen=True)
class SimulationConfig:
    """Simulated fleet run alongside the monitor."""
    enabled: bool = False
    duration: Optional[float] = None
    faults: Tuple[FaultSpec, ...] = ()


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration. Immutable once loaded."""
    bond_ids: Tuple[str, ...] = ()
    heartbeat_period: float = DEFAULT_HEARTBEAT_PERIOD
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    formation_poll_interval: float = DEFAULT_FORMATION_POLL
    loop_frequency_hz: Optional[float] = None
    safety_topic: str = SAFETY_TOPIC
    bond_topic: str = BOND_TOPIC
    log_level: str = "INFO"
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    def __post_init__(self):
        # Default poll rate: three polls per heartbeat (15 Hz at 0.2 s)
        if self.loop_frequency_hz is None and self.heartbeat_period > 0:
            object.__setattr__(
                self, "loop_frequency_hz",
                MIN_POLLS_PER_HEARTBEAT / self.heartbeat_period,
            )

    @property
    def loop_period(self) -> float:
        return 1.0 / self.loop_frequency_hz

    def priority_table(self) -> List[Tuple[int, str]]:
        """(priority, id) pairs, most senior first."""
        return list(enumerate(self.bond_ids))

    def validate(self) -> MonitorConfig:
        """Raise ConfigurationError if the configuration cannot run."""
        if not self.bond_ids:
            raise ConfigurationError("bond_ids list is empty")
        for bond_id in self.bond_ids:
            if not isinstance(bond_id, str) or not bond_id:
                raise ConfigurationError(f"Invalid bond id: {bond_id!r}")
        duplicates = sorted({b for b in self.bond_ids if self.bond_ids.count(b) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate bond ids: {', '.join(duplicates)}")
        if FATAL_MESSAGE in self.bond_ids:
            raise ConfigurationError(f"{FATAL_MESSAGE!r} is reserved and cannot be a bond id")

        if self.heartbeat_period <= 0:
            raise ConfigurationError("heartbeat_period must be positive")
        if self.heartbeat_timeout <= self.heartbeat_period:
            raise ConfigurationError("heartbeat_timeout must exceed heartbeat_period")
        if self.connect_timeout <= 0:
            raise ConfigurationError("connect_timeout must be positive")
        if self.formation_poll_interval <= 0:
            raise ConfigurationError("formation_poll_interval must be positive")
        min_hz = MIN_POLLS_PER_HEARTBEAT / self.heartbeat_period
        if self.loop_frequency_hz is None or self.loop_frequency_hz < min_hz - 1e-9:
            raise ConfigurationError(
                f"loop_frequency_hz ({self.loop_frequency_hz}) must be at least "
                f"{min_hz:.1f} ({MIN_POLLS_PER_HEARTBEAT}x heartbeat rate)"
            )
        if self.safety_topic == self.bond_topic:
            raise ConfigurationError("safety_topic and bond_topic must differ")

        for fault in self.simulation.faults:
            if fault.node not in self.bond_ids:
                raise ConfigurationError(f"Fault targets unknown node: {fault.node}")
            if fault.action not in FAULT_ACTIONS:
                raise ConfigurationError(
                    f"Unknown fault action {fault.action!r} "
                    f"(expected one of {', '.join(FAULT_ACTIONS)})"
                )
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MonitorConfig:
        """Create config from dictionary."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        bond_ids = data.get("bond_ids")
        if bond_ids is None:
            raise ConfigurationError("Can't load bond id list: 'bond_ids' is missing")
        if isinstance(bond_ids, str) or not isinstance(bond_ids, (list, tuple)):
            raise ConfigurationError("'bond_ids' must be a list of node ids")

        known = {f.name for f in dataclasses.fields(cls)} - {"bond_ids", "simulation"}
        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            for key in ("heartbeat_period", "heartbeat_timeout", "connect_timeout",
                        "formation_poll_interval", "loop_frequency_hz"):
                if kwargs.get(key) is not None:
                    kwargs[key] = float(kwargs[key])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid timing value: {e}") from e

        if "log_level" in kwargs:
            kwargs["log_level"] = str(kwargs["log_level"]).upper()

        return cls(
            bond_ids=tuple(bond_ids),
            simulation=_simulation_from_dict(data.get("simulation")),
            **kwargs,
        ).validate()


def _simulation_from_dict(data: Optional[Dict[str, Any]]) -> SimulationConfig:
    if not data:
        return SimulationConfig()
    if not isinstance(data, dict):
        raise ConfigurationError("'simulation' must be a mapping")

    faults = []
    for entry in data.get("faults", []) or []:
        try:
            faults.append(FaultSpec(
                at=float(entry["at"]),
                node=str(entry["node"]),
                action=str(entry["action"]),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid fault entry {entry!r}: {e}") from e

    duration = data.get("duration")
    if duration is not None:
        try:
            duration = float(duration)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid simulation duration {duration!r}: {e}") from e

    return SimulationConfig(
        enabled=bool(data.get("enabled", True)),
        duration=duration,
        faults=tuple(sorted(faults, key=lambda f: f.at)),
    )


def load_config(path: str) -> MonitorConfig:
    """Load configuration from YAML file. A missing file is fatal."""
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    return MonitorConfig.from_dict(data)
